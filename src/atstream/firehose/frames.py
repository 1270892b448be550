"""Frame codec for the subscribeRepos event stream.

A frame is two concatenated CBOR items: a header map ``{"op", "t"}`` and a
body map whose shape is selected by ``t``. Frames with an ``op`` other than
``1`` or ``-1`` are dropped without decoding the body.
"""
from __future__ import annotations

import io
from typing import Any, Optional

import cbor2

from atstream.firehose.errors import (
    MalformedHeaderError,
    PayloadDecodeError,
    UnrecognizedMessageTypeError,
)
from atstream.firehose.models import (
    MESSAGE_TYPES,
    OP_ERROR,
    OP_MESSAGE,
    ErrorMessage,
    FirehoseMessage,
    FrameHeader,
)


def _header_from_item(item: Any) -> FrameHeader:
    if not isinstance(item, dict):
        raise MalformedHeaderError(
            f"Frame header must be a map, got {type(item).__name__}"
        )
    if "op" not in item:
        raise MalformedHeaderError("Frame header has no op field")
    op = item["op"]
    if isinstance(op, bool) or not isinstance(op, int):
        raise MalformedHeaderError(
            f"Frame header op must be an integer, got {type(op).__name__}",
            {"op": repr(op)},
        )
    message_type = item.get("t")
    if op not in (OP_MESSAGE, OP_ERROR):
        # unknown operations are dropped, whatever else the header holds
        return FrameHeader(op=op, t=message_type if isinstance(message_type, str) else None)
    if message_type is not None and not isinstance(message_type, str):
        raise MalformedHeaderError("Frame header t must be a string")
    if op == OP_MESSAGE and message_type is None:
        raise MalformedHeaderError("Message frame header has no t field")
    return FrameHeader(op=op, t=message_type)


def _read_header(decoder: cbor2.CBORDecoder) -> FrameHeader:
    try:
        item = decoder.decode()
    except cbor2.CBORDecodeError as e:
        raise MalformedHeaderError(f"Frame header is not valid CBOR: {e}") from e
    return _header_from_item(item)


def decode_header(frame: bytes) -> FrameHeader:
    """Decode the header of a raw frame.

    Args:
        frame: The complete binary frame as received from the transport

    Returns:
        The decoded header. Check ``header.is_known`` before going further;
        unknown operations are not an error.

    Raises:
        MalformedHeaderError: The header is missing, not CBOR, or has no
            integer ``op``.
    """
    decoder = cbor2.CBORDecoder(io.BytesIO(frame))
    return _read_header(decoder)


def decode_payload(header: FrameHeader, body: Any) -> FirehoseMessage:
    """Decode a frame body into its typed message.

    Dispatch happens once on the header: error frames always become an
    ``ErrorMessage``; message frames look up their class by ``t``.

    Raises:
        UnrecognizedMessageTypeError: ``t`` names no known message type.
        PayloadDecodeError: The body does not match the message type.
    """
    if header.op == OP_ERROR:
        message_cls: type = ErrorMessage
        label = "error"
    else:
        message_cls = MESSAGE_TYPES.get(header.t or "")
        if message_cls is None:
            raise UnrecognizedMessageTypeError(header.t or "")
        label = header.t or ""

    if not isinstance(body, dict):
        raise PayloadDecodeError(label, f"body must be a map, got {type(body).__name__}")

    try:
        return message_cls.from_dict(body)
    except KeyError as e:
        raise PayloadDecodeError(label, f"missing field {e.args[0]!r}") from e
    except (TypeError, ValueError) as e:
        raise PayloadDecodeError(label, str(e)) from e


def decode_frame(frame: bytes) -> Optional[FirehoseMessage]:
    """Decode a raw frame into a typed message.

    Returns:
        The message, or None when the frame carries an unknown operation
        and must be discarded.

    Raises:
        FrameDecodeError: Any header or payload failure.
    """
    decoder = cbor2.CBORDecoder(io.BytesIO(frame))
    header = _read_header(decoder)
    if not header.is_known:
        return None

    label = "error" if header.is_error else (header.t or "")
    # reject unknown types before touching the body
    if not header.is_error and header.t not in MESSAGE_TYPES:
        raise UnrecognizedMessageTypeError(label)
    try:
        body = decoder.decode()
    except cbor2.CBORDecodeError as e:
        raise PayloadDecodeError(label, f"body is not valid CBOR: {e}") from e
    return decode_payload(header, body)


def header_for(message: FirehoseMessage) -> FrameHeader:
    if isinstance(message, ErrorMessage):
        return FrameHeader(op=OP_ERROR)
    return FrameHeader(op=OP_MESSAGE, t=message.message_type)


def encode_frame(message: FirehoseMessage) -> bytes:
    """Encode a message into a binary frame, the inverse of ``decode_frame``."""
    header = header_for(message)
    return cbor2.dumps(header.to_record_dict()) + cbor2.dumps(message.to_record_dict())
