"""AT Proto firehose package.

Consumes the com.atproto.sync.subscribeRepos event stream: frame decoding,
sequence tracking, and reconnection with gap recovery.
"""

from atstream.firehose.client import FirehoseClient, StreamEvent, build_stream_url
from atstream.firehose.errors import (
    FatalStreamError,
    FirehoseConnectionError,
    FirehoseError,
    FirehoseStateError,
    FrameDecodeError,
    FutureCursorError,
    MalformedHeaderError,
    NonMonotonicSequenceError,
    PayloadDecodeError,
    RetriesExhaustedError,
    UnrecognizedMessageTypeError,
)
from atstream.firehose.frames import decode_frame, decode_header, decode_payload, encode_frame
from atstream.firehose.models import (
    DEFAULT_RELAY_URL,
    SUBSCRIBE_REPOS_NSID,
    CommitMessage,
    ConnectionStatus,
    ErrorMessage,
    ErrorName,
    FirehoseMessage,
    FrameHeader,
    HandleMessage,
    IdentityMessage,
    InfoMessage,
    InfoName,
    MigrateMessage,
    RepoAction,
    RepoOperation,
    StreamSession,
    TombstoneMessage,
)
from atstream.firehose.recovery import GapRecoveryCoordinator, ReconnectPlan, backoff_delay
from atstream.firehose.sequence import SequenceTracker, SequenceVerdict

__all__ = [
    "CommitMessage",
    "ConnectionStatus",
    "DEFAULT_RELAY_URL",
    "ErrorMessage",
    "ErrorName",
    "FatalStreamError",
    "FirehoseClient",
    "FirehoseConnectionError",
    "FirehoseError",
    "FirehoseMessage",
    "FirehoseStateError",
    "FrameDecodeError",
    "FrameHeader",
    "FutureCursorError",
    "GapRecoveryCoordinator",
    "HandleMessage",
    "IdentityMessage",
    "InfoMessage",
    "InfoName",
    "MalformedHeaderError",
    "MigrateMessage",
    "NonMonotonicSequenceError",
    "PayloadDecodeError",
    "ReconnectPlan",
    "RepoAction",
    "RepoOperation",
    "RetriesExhaustedError",
    "SUBSCRIBE_REPOS_NSID",
    "SequenceTracker",
    "SequenceVerdict",
    "StreamEvent",
    "StreamSession",
    "TombstoneMessage",
    "UnrecognizedMessageTypeError",
    "backoff_delay",
    "build_stream_url",
    "decode_frame",
    "decode_header",
    "decode_payload",
    "encode_frame",
]
