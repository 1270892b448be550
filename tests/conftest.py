"""Shared fixtures: message builders and an in-memory relay."""
import asyncio
import logging
from datetime import datetime, timezone

import cbor2
import pytest
from multiformats import CID, multihash
from websockets.exceptions import ConnectionClosedError

from atstream.firehose.frames import encode_frame
from atstream.firehose.models import (
    CommitMessage,
    ErrorMessage,
    InfoMessage,
    RepoOperation,
)

TIMESTAMP = datetime(2024, 5, 8, 12, 30, 15, 123000, tzinfo=timezone.utc)


def make_cid(seed: bytes) -> str:
    return str(CID("base32", 1, "dag-cbor", multihash.digest(seed, "sha2-256")))


def make_commit(seq: int, ops=None, blocks: bytes = b"car-bytes") -> CommitMessage:
    if ops is None:
        ops = [
            RepoOperation(
                action="create",
                path=f"app.bsky.feed.post/{seq}",
                cid=make_cid(f"record-{seq}".encode()),
            )
        ]
    return CommitMessage(
        seq=seq,
        repo="did:plc:alice",
        commit=make_cid(f"commit-{seq}".encode()),
        rev=f"rev{seq}",
        since=f"rev{seq - 1}",
        blocks=blocks,
        ops=ops,
        blobs=[],
        time=TIMESTAMP,
    )


def commit_frame(seq: int) -> bytes:
    return encode_frame(make_commit(seq))


def info_frame(name: str = "OutdatedCursor", message: str = "Requested cursor exceeded limit") -> bytes:
    return encode_frame(InfoMessage(name=name, message=message))


def error_frame(error: str, message: str | None = None) -> bytes:
    return encode_frame(ErrorMessage(error=error, message=message))


def raw_frame(header: dict, body) -> bytes:
    return cbor2.dumps(header) + cbor2.dumps(body)


class FakeConnection:
    """Replays scripted frames, then drops (or stays open with hold_open)."""

    def __init__(self, frames, hold_open: bool = False):
        self.frames = list(frames)
        self.hold_open = hold_open
        self.closed = None

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if self.hold_open and self.closed is None:
            await asyncio.Event().wait()
        raise ConnectionClosedError(None, None)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = (code, reason)

    async def ping(self):
        waiter = asyncio.get_running_loop().create_future()
        waiter.set_result(0.0)
        return waiter


class FakeRelay:
    """Connector that hands out one scripted connection per connect call.

    Script items are FakeConnection instances or exceptions to raise.
    Once the script runs out every connect fails with OSError.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.urls: list[str] = []

    async def connect(self, url: str):
        self.urls.append(url)
        if not self.script:
            raise OSError("relay unavailable")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture(autouse=True)
def enable_log_capture():
    """Enable log propagation for caplog to capture logs during tests."""
    logger = logging.getLogger("atstream")
    original_propagate = logger.propagate
    original_handlers = list(logger.handlers)
    original_level = logger.level
    logger.propagate = True
    yield
    logger.propagate = original_propagate
    logger.handlers = original_handlers
    logger.setLevel(original_level)
