"""Exceptions raised and reported by the firehose client.

Decode and sequence errors are delivered to the consumer as values on the
event stream. Only the ``FatalStreamError`` family ends a stream.
"""
from __future__ import annotations


class FirehoseError(Exception):
    """Base exception for all firehose errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Frame-level errors (recoverable, reported) ---


class FrameDecodeError(FirehoseError):
    """A single frame could not be decoded. The stream continues."""


class MalformedHeaderError(FrameDecodeError):
    """The frame header is missing, not CBOR, or has a non-integer ``op``."""


class UnrecognizedMessageTypeError(FrameDecodeError):
    """A normal frame carried a message type this client does not know."""

    def __init__(self, message_type: str):
        super().__init__(
            f"Unrecognized message type: {message_type}",
            {"message_type": message_type},
        )
        self.message_type = message_type


class PayloadDecodeError(FrameDecodeError):
    """The frame body did not match the shape of its message type."""

    def __init__(self, message_type: str, reason: str):
        super().__init__(
            f"Could not decode {message_type} payload: {reason}",
            {"message_type": message_type, "reason": reason},
        )
        self.message_type = message_type
        self.reason = reason


# --- Sequence-level warning ---


class NonMonotonicSequenceError(FirehoseError):
    """A sequenced message arrived at or below the last accepted sequence."""

    def __init__(self, sequence: int, last_sequence: int):
        super().__init__(
            f"Sequence {sequence} is not after last accepted sequence {last_sequence}",
            {"sequence": sequence, "last_sequence": last_sequence},
        )
        self.sequence = sequence
        self.last_sequence = last_sequence


# --- Connection-level errors ---


class FirehoseConnectionError(FirehoseError):
    """The transport handshake with the relay failed."""


class FirehoseStateError(FirehoseError):
    """A command was issued in a state that does not allow it."""


class FatalStreamError(FirehoseError):
    """The stream cannot continue. No automatic action follows."""


class FutureCursorError(FatalStreamError):
    """The relay rejected a cursor newer than its latest sequence."""

    def __init__(self, message: str | None = None, cursor: int | None = None):
        super().__init__(
            message or "Cursor is in the future",
            {"cursor": cursor},
        )
        self.cursor = cursor


class RetriesExhaustedError(FatalStreamError):
    """Reconnection failed more times than the configured bound."""

    def __init__(self, attempts: int, last_cursor: int | None = None):
        super().__init__(
            f"Gave up reconnecting after {attempts} attempts",
            {"attempts": attempts, "last_cursor": last_cursor},
        )
        self.attempts = attempts
        self.last_cursor = last_cursor
