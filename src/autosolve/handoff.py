"""File-drop handoff: wait for a human or external assistant to supply the program.

When API generation is unavailable, the problem text is written into the
scratch slot and the program file is polled until its modification time
changes. Waiting is modelled as a cancellable deadline wait that returns a
typed ``WaitOutcome`` instead of a sentinel value.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
import logging
import time

from autosolve.execution import ScratchSlot

logger = logging.getLogger(__name__)


class WaitOutcome(StrEnum):
    """How a deadline wait ended."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


async def wait_for_condition(
    check: Callable[[], bool],
    *,
    timeout_seconds: float,
    poll_seconds: float,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WaitOutcome:
    """Poll *check* every *poll_seconds* until it holds or the deadline passes.

    *check* is evaluated after each sleep, so a condition that already
    holds at call time is still only observed after the first poll.

    Args:
        check: Condition to poll.
        timeout_seconds: Deadline measured from the call.
        poll_seconds: Interval between checks.
        cancel_event: Set to abandon the wait early.
        sleep: Coroutine used between polls.
        clock: Monotonic time source.

    Returns:
        ``READY``, ``TIMED_OUT``, or ``CANCELLED``.
    """
    deadline = clock() + timeout_seconds
    while True:
        if cancel_event is not None and cancel_event.is_set():
            return WaitOutcome.CANCELLED
        remaining = deadline - clock()
        if remaining <= 0:
            return WaitOutcome.TIMED_OUT
        await sleep(min(poll_seconds, remaining))
        if cancel_event is not None and cancel_event.is_set():
            return WaitOutcome.CANCELLED
        if check():
            return WaitOutcome.READY


class FileHandoff:
    """Hands a problem to an external collaborator through the scratch slot.

    Attributes:
        slot: Scratch slot holding the problem and program files.
        timeout_seconds: Deadline for the program file to change.
        poll_seconds: Poll interval.
        cancel_event: Optional event that abandons the wait.
    """

    def __init__(
        self,
        slot: ScratchSlot,
        *,
        timeout_seconds: float = 600.0,
        poll_seconds: float = 5.0,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.slot = slot
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.cancel_event = cancel_event
        self._sleep = sleep

    async def request_solution(self, problem_text: str) -> str | None:
        """Write *problem_text* and wait for the program file to be updated.

        Returns:
            The new program text, or ``None`` if the wait timed out or was
            cancelled.
        """
        self.slot.write_problem(problem_text)
        initial_mtime = self.slot.program_mtime()
        logger.warning(
            "Waiting for solution: problem saved to %s, watching %s",
            self.slot.problem_path,
            self.slot.program_path,
        )

        def _program_updated() -> bool:
            current = self.slot.program_mtime()
            if current is None:
                return False
            return initial_mtime is None or current > initial_mtime

        outcome = await wait_for_condition(
            _program_updated,
            timeout_seconds=self.timeout_seconds,
            poll_seconds=self.poll_seconds,
            cancel_event=self.cancel_event,
            sleep=self._sleep,
        )
        if outcome is not WaitOutcome.READY:
            logger.warning("Handoff ended without a solution (%s)", outcome)
            return None
        logger.info("Solution file updated; reading %s", self.slot.program_path)
        return self.slot.read_program()
