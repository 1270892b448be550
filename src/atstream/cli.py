"""CLI for tailing the AT Proto firehose as JSON lines."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Any, TextIO

from atproto import CAR

from atstream.firehose import (
    CommitMessage,
    FirehoseClient,
    FirehoseConnectionError,
    RepoAction,
    StreamEvent,
)
from atstream.firehose.models import format_datetime
from atstream.logs import configure_logging
from atstream.settings import Settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stream AT Proto repository events as JSON lines"
    )
    parser.add_argument("--relay", help="Relay URL (default: FIREHOSE_RELAY_URL or wss://bsky.network)")
    parser.add_argument("--cursor", type=int, help="Resume after this sequence number")
    parser.add_argument("--limit", type=int, default=0, help="Stop after this many events")
    parser.add_argument("--collection", help="Only show commits touching this collection NSID")
    parser.add_argument(
        "--records",
        action="store_true",
        help="Decode created and updated records from the commit blocks",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def decode_records(commit: CommitMessage) -> dict[str, Any]:
    """Map record path -> record for the creates and updates in a commit."""
    if not commit.blocks:
        return {}
    car = CAR.from_bytes(commit.blocks)
    blocks = {str(cid): block for cid, block in car.blocks.items()}
    records: dict[str, Any] = {}
    for op in commit.ops:
        if op.action is RepoAction.DELETE:
            continue
        record = blocks.get(op.cid)
        if record is not None:
            records[op.path] = record
    return records


def event_to_dict(event: StreamEvent, with_records: bool = False) -> dict[str, Any]:
    message = event.message
    data = dataclasses.asdict(message)
    if "blocks" in data:
        # raw CAR bytes are not useful on a terminal
        data["blocks"] = len(message.blocks)
    if "time" in data:
        data["time"] = format_datetime(message.time)
    if with_records and isinstance(message, CommitMessage):
        data["records"] = decode_records(message)
    if event.verdict is not None:
        data["verdict"] = "accept" if event.verdict.accepted else "reject"
    return {"type": message.message_type or "#error", **data}


def _touches(message: Any, collection: str) -> bool:
    if not isinstance(message, CommitMessage):
        return False
    return any(op.collection == collection for op in message.ops)


async def tail(
    client: FirehoseClient,
    cursor: int | None = None,
    limit: int = 0,
    collection: str | None = None,
    with_records: bool = False,
    out: TextIO | None = None,
) -> int:
    out = out or sys.stdout
    async with client:
        try:
            await client.connect(cursor)
        except FirehoseConnectionError as e:
            print(f"Connection failed: {e}", file=sys.stderr)
            return 1

        count = 0
        async for event in client:
            if event.error is not None:
                print(f"{type(event.error).__name__}: {event.error.message}", file=sys.stderr)
                if event.is_fatal:
                    print(f"Last sequence: {client.last_sequence}", file=sys.stderr)
                    return 1
                continue
            if collection and not _touches(event.message, collection):
                continue
            print(json.dumps(event_to_dict(event, with_records), default=str), file=out, flush=True)
            count += 1
            if limit and count >= limit:
                break

    print(f"Last sequence: {client.last_sequence}", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(level="DEBUG" if args.verbose else None)
    settings = Settings.from_env()
    if args.relay:
        settings.relay_url = args.relay
    cursor = args.cursor if args.cursor is not None else settings.cursor

    client = FirehoseClient.from_settings(settings)
    try:
        return asyncio.run(
            tail(client, cursor, args.limit, args.collection, args.records)
        )
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
