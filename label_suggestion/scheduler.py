"""
Cooperative chunk scheduling.

Long suggestion runs are split into bounded chunks. After each chunk the run
queues its continuation here instead of looping, and the host decides when
to resume it (e.g. once per UI tick, or all at once in a batch job). Nothing
runs in the background: a continuation executes only inside run_once().
"""

import logging
from collections import deque
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ScheduledHandle:
    """A queued continuation; cancel() prevents it from running."""

    def __init__(self, callback: Callable, args: tuple):
        self._callback = callback
        self._args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def _run(self):
        self._callback(*self._args)


class ChunkScheduler:
    """
    FIFO queue of continuations.

    Usage:
        scheduler = ChunkScheduler()
        model = DtwSuggestionModel(references, sample_rate, scheduler=scheduler)
        model.compute_suggestion(...)
        while scheduler.run_once():
            refresh_ui()
    """

    def __init__(self):
        self._queue = deque()

    def call_soon(self, callback: Callable, *args) -> ScheduledHandle:
        """Queue callback(*args) to run after everything already queued."""
        handle = ScheduledHandle(callback, args)
        self._queue.append(handle)
        return handle

    @property
    def pending(self) -> int:
        """Number of queued continuations that are not cancelled."""
        return sum(1 for handle in self._queue if not handle.cancelled)

    def run_once(self) -> bool:
        """
        Run the next live continuation.

        Returns:
            True if a continuation ran, False if the queue was empty
        """
        while self._queue:
            handle = self._queue.popleft()
            if handle.cancelled:
                continue
            handle._run()
            return True
        return False

    def run_until_idle(self, max_steps: Optional[int] = None) -> int:
        """
        Run continuations until the queue is empty.

        Args:
            max_steps: Optional cap on the number of continuations to run

        Returns:
            Number of continuations that ran
        """
        steps = 0
        while max_steps is None or steps < max_steps:
            if not self.run_once():
                break
            steps += 1
        logger.debug(f"Scheduler ran {steps} continuations ({self.pending} still pending)")
        return steps
