"""Models for the com.atproto.sync.subscribeRepos event stream.

These models follow the subscribeRepos lexicon and the atproto SDK naming
(``seq``, ``repo``, ``ops``, ``blobs``). Each payload converts to and from
its wire dict; content identifiers travel as DAG-CBOR links (CBOR tag 42)
and timestamps as ISO 8601 strings.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from cbor2 import CBORTag
from multiformats import CID

# Lexicon identifier of the repository event stream
SUBSCRIBE_REPOS_NSID = "com.atproto.sync.subscribeRepos"

DEFAULT_RELAY_URL = "wss://bsky.network"

# DAG-CBOR link tag
CID_LINK_TAG = 42

# Frame header operation codes
OP_MESSAGE = 1
OP_ERROR = -1


# Known #info event names
class InfoName:
    OUTDATED_CURSOR = "OutdatedCursor"


# Known error frame names
class ErrorName:
    FUTURE_CURSOR = "FutureCursor"
    CONSUMER_TOO_SLOW = "ConsumerTooSlow"


class RepoAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


# --- Wire helpers ---


def cid_from_link(value: Any) -> str:
    """Convert a DAG-CBOR link into a base32 CID string."""
    if not isinstance(value, CBORTag) or value.tag != CID_LINK_TAG:
        raise TypeError(f"expected a CID link, got {type(value).__name__}")
    raw = value.value
    if not isinstance(raw, bytes) or not raw or raw[0] != 0:
        raise ValueError("CID link must be a 0x00-prefixed byte string")
    try:
        return str(CID.decode(raw[1:]))
    except (KeyError, ValueError) as e:
        # multiformats raises KeyError subclasses for unknown codecs
        raise ValueError(f"invalid CID link: {e}") from e


def cid_to_link(cid: str) -> CBORTag:
    """Convert a CID string into a DAG-CBOR link."""
    return CBORTag(CID_LINK_TAG, b"\x00" + bytes(CID.decode(cid)))


def as_utc(value: datetime) -> datetime:
    """Take a naive datetime as UTC. Aware values are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: Any) -> datetime:
    """Parse an AT Protocol datetime string. Naive values are taken as UTC."""
    if not isinstance(value, str):
        raise TypeError(f"expected a datetime string, got {type(value).__name__}")
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def format_datetime(value: datetime) -> str:
    """Format a datetime the way the relay does (UTC, milliseconds, ``Z``).

    Sub-millisecond digits are kept when present so nothing is lost.
    """
    timespec = "milliseconds" if value.microsecond % 1000 == 0 else "microseconds"
    text = as_utc(value).astimezone(timezone.utc).isoformat(timespec=timespec)
    return text.replace("+00:00", "Z")


def _field(data: dict, key: str, kind: type | tuple[type, ...]) -> Any:
    """Fetch a required field and check its type."""
    if key not in data:
        raise KeyError(key)
    value = data[key]
    # bool is an int subclass but never a valid sequence or count
    if isinstance(value, bool) and kind is int:
        raise TypeError(f"field {key!r} must be int, got bool")
    if not isinstance(value, kind):
        raise TypeError(f"field {key!r} has unexpected type {type(value).__name__}")
    return value


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"field {key!r} must be a string or null")
    return value


# --- Frame header ---


@dataclass
class FrameHeader:
    """The envelope that prefixes every frame on the wire."""
    op: int
    t: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.op == OP_ERROR

    @property
    def is_known(self) -> bool:
        """Frames with any other op are dropped without an event."""
        return self.op in (OP_MESSAGE, OP_ERROR)

    def to_record_dict(self) -> dict:
        record: dict[str, Any] = {"op": self.op}
        if self.t is not None:
            record["t"] = self.t
        return record


# --- Payloads ---


@dataclass
class RepoOperation:
    """A single record mutation inside a commit."""
    action: RepoAction
    path: str
    cid: Optional[str] = None

    def __post_init__(self) -> None:
        self.action = RepoAction(self.action)
        # creates and updates carry the new record CID, deletes never do
        if self.action is RepoAction.DELETE:
            if self.cid is not None:
                raise ValueError(f"delete of {self.path} must not carry a CID")
        elif self.cid is None:
            raise ValueError(f"{self.action.value} of {self.path} requires a CID")

    @property
    def collection(self) -> str:
        return self.path.split("/", 1)[0]

    @property
    def rkey(self) -> str:
        return self.path.split("/", 1)[1] if "/" in self.path else ""

    def to_record_dict(self) -> dict:
        return {
            "action": self.action.value,
            "path": self.path,
            "cid": cid_to_link(self.cid) if self.cid is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RepoOperation":
        if not isinstance(data, dict):
            raise TypeError(f"repo operation must be a map, got {type(data).__name__}")
        cid = data.get("cid")
        return cls(
            action=RepoAction(_field(data, "action", str)),
            path=_field(data, "path", str),
            cid=cid_from_link(cid) if cid is not None else None,
        )


@dataclass
class CommitMessage:
    """An update of repository state (``#commit``).

    ``blocks`` is the CAR-encoded diff and is kept as opaque bytes.
    """
    message_type: ClassVar[str] = "#commit"

    seq: int
    repo: str
    commit: str
    rev: str
    blocks: bytes
    time: datetime
    ops: list[RepoOperation] = field(default_factory=list)
    blobs: list[str] = field(default_factory=list)
    since: Optional[str] = None
    too_big: bool = False

    def __post_init__(self) -> None:
        self.time = as_utc(self.time)

    def to_record_dict(self) -> dict:
        return {
            "seq": self.seq,
            "tooBig": self.too_big,
            "repo": self.repo,
            "commit": cid_to_link(self.commit),
            "rev": self.rev,
            "since": self.since,
            "blocks": self.blocks,
            "ops": [op.to_record_dict() for op in self.ops],
            "blobs": [cid_to_link(blob) for blob in self.blobs],
            "time": format_datetime(self.time),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommitMessage":
        return cls(
            seq=_field(data, "seq", int),
            too_big=bool(data.get("tooBig", False)),
            repo=_field(data, "repo", str),
            commit=cid_from_link(data["commit"]),
            rev=_field(data, "rev", str),
            since=_optional_str(data, "since"),
            blocks=bytes(_field(data, "blocks", (bytes, bytearray))),
            ops=[RepoOperation.from_dict(op) for op in _field(data, "ops", list)],
            blobs=[cid_from_link(blob) for blob in data.get("blobs") or []],
            time=parse_datetime(_field(data, "time", str)),
        )


@dataclass
class IdentityMessage:
    """An account identity change (``#identity``)."""
    message_type: ClassVar[str] = "#identity"

    seq: int
    did: str
    time: datetime

    def __post_init__(self) -> None:
        self.time = as_utc(self.time)

    def to_record_dict(self) -> dict:
        return {"seq": self.seq, "did": self.did, "time": format_datetime(self.time)}

    @classmethod
    def from_dict(cls, data: dict) -> "IdentityMessage":
        return cls(
            seq=_field(data, "seq", int),
            did=_field(data, "did", str),
            time=parse_datetime(_field(data, "time", str)),
        )


@dataclass
class HandleMessage:
    """An account handle change (``#handle``). Superseded by ``#identity``."""
    message_type: ClassVar[str] = "#handle"

    seq: int
    did: str
    handle: str
    time: datetime

    def __post_init__(self) -> None:
        self.time = as_utc(self.time)

    def to_record_dict(self) -> dict:
        return {
            "seq": self.seq,
            "did": self.did,
            "handle": self.handle,
            "time": format_datetime(self.time),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HandleMessage":
        return cls(
            seq=_field(data, "seq", int),
            did=_field(data, "did", str),
            handle=_field(data, "handle", str),
            time=parse_datetime(_field(data, "time", str)),
        )


@dataclass
class MigrateMessage:
    """An account moving between PDS instances (``#migrate``)."""
    message_type: ClassVar[str] = "#migrate"

    seq: int
    did: str
    time: datetime
    migrate_to: Optional[str] = None

    def __post_init__(self) -> None:
        self.time = as_utc(self.time)

    def to_record_dict(self) -> dict:
        return {
            "seq": self.seq,
            "did": self.did,
            "migrateTo": self.migrate_to,
            "time": format_datetime(self.time),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MigrateMessage":
        return cls(
            seq=_field(data, "seq", int),
            did=_field(data, "did", str),
            migrate_to=_optional_str(data, "migrateTo"),
            time=parse_datetime(_field(data, "time", str)),
        )


@dataclass
class TombstoneMessage:
    """An account deletion (``#tombstone``)."""
    message_type: ClassVar[str] = "#tombstone"

    seq: int
    did: str
    time: datetime

    def __post_init__(self) -> None:
        self.time = as_utc(self.time)

    def to_record_dict(self) -> dict:
        return {"seq": self.seq, "did": self.did, "time": format_datetime(self.time)}

    @classmethod
    def from_dict(cls, data: dict) -> "TombstoneMessage":
        return cls(
            seq=_field(data, "seq", int),
            did=_field(data, "did", str),
            time=parse_datetime(_field(data, "time", str)),
        )


@dataclass
class InfoMessage:
    """An informational notice from the relay (``#info``). Not sequenced."""
    message_type: ClassVar[str] = "#info"

    name: str
    message: Optional[str] = None

    @property
    def is_outdated_cursor(self) -> bool:
        return self.name == InfoName.OUTDATED_CURSOR

    def to_record_dict(self) -> dict:
        record: dict[str, Any] = {"name": self.name}
        if self.message is not None:
            record["message"] = self.message
        return record

    @classmethod
    def from_dict(cls, data: dict) -> "InfoMessage":
        return cls(name=_field(data, "name", str), message=_optional_str(data, "message"))


@dataclass
class ErrorMessage:
    """The body of an error frame (``op == -1``). Not sequenced."""
    message_type: ClassVar[Optional[str]] = None

    error: str
    message: Optional[str] = None

    @property
    def is_future_cursor(self) -> bool:
        return self.error == ErrorName.FUTURE_CURSOR

    def to_record_dict(self) -> dict:
        record: dict[str, Any] = {"error": self.error}
        if self.message is not None:
            record["message"] = self.message
        return record

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorMessage":
        return cls(error=_field(data, "error", str), message=_optional_str(data, "message"))


SequencedMessage = Union[
    CommitMessage, IdentityMessage, HandleMessage, MigrateMessage, TombstoneMessage
]
FirehoseMessage = Union[SequencedMessage, InfoMessage, ErrorMessage]

SEQUENCED_TYPES = (
    CommitMessage,
    IdentityMessage,
    HandleMessage,
    MigrateMessage,
    TombstoneMessage,
)

# Message type tag -> payload class, for op == 1 frames
MESSAGE_TYPES: dict[str, type] = {
    cls.message_type: cls for cls in (*SEQUENCED_TYPES, InfoMessage)
}


def message_sequence(message: FirehoseMessage) -> Optional[int]:
    """Return the stream sequence of a message, or None if it has none."""
    if isinstance(message, SEQUENCED_TYPES):
        return message.seq
    return None


# --- Session state ---


@dataclass
class StreamSession:
    """State of one logical stream, owned by the client.

    Callers only ever see copies of this record.
    """
    relay_url: str
    endpoint: str = SUBSCRIBE_REPOS_NSID
    cursor: Optional[int] = None
    last_sequence: Optional[int] = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
