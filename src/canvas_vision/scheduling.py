"""
scheduling.py - Cooperative settle-delay sequences.

Calibration and template capture need "wait, act, wait, act" flows (give
the projector time to clear an overlay, then grab a frame). Nothing here
sleeps or spawns threads: a sequence is started with a timestamp and the
owner polls it from its own ``update(now)`` tick. Cancelling a sequence
drops every step that has not run yet.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def monotonic_now(now: Optional[float] = None) -> float:
    """Return ``now`` if given, else the monotonic clock."""
    return time.monotonic() if now is None else float(now)


@dataclass
class Step:
    """One named action, run ``delay_s`` seconds after the previous step.

    An action receives the poll timestamp. Returning ``False`` ends the
    sequence early (the phase failed); any other return value continues.
    """

    name: str
    delay_s: float
    action: Callable[[float], Optional[bool]]


class SettleSequence:
    """An ordered, cancellable list of delayed steps.

    Usage:
        seq = SettleSequence("base_image", [Step("capture", 0.5, grab)])
        seq.start(now)
        ...
        seq.poll(now)   # from the owner's tick, runs steps that are due
    """

    def __init__(self, name: str, steps: list[Step]):
        if not steps:
            raise ValueError("A sequence needs at least one step")
        self.name = name
        self._steps = list(steps)
        self._index = 0
        self._due: Optional[float] = None
        self._cancelled = False
        self._aborted = False

    # ---- state -----------------------------------------------------

    @property
    def started(self) -> bool:
        return self._due is not None

    @property
    def pending(self) -> bool:
        """True while steps remain to run."""
        return (
            self.started
            and not self._cancelled
            and not self._aborted
            and self._index < len(self._steps)
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def aborted(self) -> bool:
        """True if a step returned ``False``."""
        return self._aborted

    @property
    def next_step(self) -> Optional[str]:
        if not self.pending:
            return None
        return self._steps[self._index].name

    # ---- control ---------------------------------------------------

    def start(self, now: Optional[float] = None) -> "SettleSequence":
        now = monotonic_now(now)
        self._index = 0
        self._cancelled = False
        self._aborted = False
        self._due = now + self._steps[0].delay_s
        logger.debug("Sequence %r started, first step %r due at %.3f",
                     self.name, self._steps[0].name, self._due)
        return self

    def cancel(self):
        if self.pending:
            logger.debug("Sequence %r cancelled before step %r",
                         self.name, self._steps[self._index].name)
        self._cancelled = True

    def poll(self, now: Optional[float] = None) -> bool:
        """Run every step that is due at ``now``. Returns ``pending``."""
        now = monotonic_now(now)

        while self.pending and now >= self._due:
            step = self._steps[self._index]
            self._index += 1
            logger.debug("Sequence %r running step %r", self.name, step.name)

            if step.action(now) is False:
                self._aborted = True
                logger.debug("Sequence %r stopped after step %r", self.name, step.name)
                break

            if self._index < len(self._steps):
                self._due = now + self._steps[self._index].delay_s

        return self.pending
