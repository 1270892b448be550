"""Sequence tracking for resumable streams."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from atstream.firehose.errors import NonMonotonicSequenceError


@dataclass(frozen=True)
class SequenceVerdict:
    """Outcome of observing one sequence number.

    A rejected verdict carries the warning; the message it belongs to is
    still delivered.
    """
    sequence: int
    accepted: bool
    warning: Optional[NonMonotonicSequenceError] = None

    @property
    def rejected(self) -> bool:
        return not self.accepted


class SequenceTracker:
    """Tracks the last accepted stream sequence.

    Sequences must strictly increase. A repeat or a step backwards is
    rejected and never moves the cursor.

    Example:
        tracker = SequenceTracker()
        tracker.observe(5).accepted   # True
        tracker.observe(5).accepted   # False
        tracker.current_cursor()      # 5
    """

    def __init__(self, last_sequence: Optional[int] = None):
        self._last = last_sequence

    def observe(self, sequence: int) -> SequenceVerdict:
        if self._last is not None and sequence <= self._last:
            return SequenceVerdict(
                sequence=sequence,
                accepted=False,
                warning=NonMonotonicSequenceError(sequence, self._last),
            )
        self._last = sequence
        return SequenceVerdict(sequence=sequence, accepted=True)

    def current_cursor(self) -> Optional[int]:
        return self._last

    def reset(self, last_sequence: Optional[int] = None) -> None:
        """Re-seed the tracker, e.g. after the relay resets its sequence."""
        self._last = last_sequence
