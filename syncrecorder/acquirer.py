import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Union

from .errors import AcquisitionError, CycleFailed
from .frame import Frame, FrameSet

logger = logging.getLogger(__name__)

Outcome = Union[Frame, AcquisitionError]


class SynchronizedAcquirer:
    """Pulls one frame from every source per cycle, all or nothing.

    Sources are polled in configuration order. With ``concurrent=True`` the
    retrievals run on one worker thread per source and are joined before the
    FrameSet is assembled, so a cycle costs the slowest source instead of the
    sum of all of them. Results are still reported in configuration order.
    """

    def __init__(self, sources: Sequence, concurrent: bool = False):
        if not sources:
            raise ValueError("At least one source is required")
        self.sources = list(sources)
        self.concurrent = concurrent and len(self.sources) > 1
        self.cycle = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.concurrent:
            self._executor = ThreadPoolExecutor(
                max_workers=len(self.sources),
                thread_name_prefix="retrieve"
            )

    def next(self, timeout: float) -> FrameSet:
        """Assemble the FrameSet of the current cycle.

        Waits at most ``timeout`` seconds for the whole cycle. Raises
        CycleFailed naming every failing source. The cycle index advances
        either way.
        """
        cycle = self.cycle
        self.cycle += 1

        if self._executor is not None:
            outcomes = self._retrieve_concurrent(timeout)
        else:
            outcomes = self._retrieve_sequential(timeout)

        failures = [o for o in outcomes if isinstance(o, AcquisitionError)]
        frames = [o for o in outcomes if isinstance(o, Frame)]
        if failures:
            for frame in frames:
                frame.release()
            for failure in failures:
                failure.cycle = cycle
            raise CycleFailed(cycle, failures)

        for frame in frames:
            frame.cycle = cycle
        logger.debug(f"Cycle {cycle}: {[f.sequence for f in frames]}")
        return FrameSet(cycle, tuple(frames))

    def _retrieve_sequential(self, timeout: float) -> List[Outcome]:
        # One deadline for the whole cycle, not one timeout per source
        deadline = time.monotonic() + timeout
        outcomes: List[Outcome] = []
        try:
            for source in self.sources:
                remaining = max(0.0, deadline - time.monotonic())
                outcomes.append(self._retrieve_one(source, remaining))
        except BaseException:
            _release_frames(outcomes)
            raise
        return outcomes

    def _retrieve_concurrent(self, timeout: float) -> List[Outcome]:
        futures = [self._executor.submit(self._retrieve_one, source, timeout) for source in self.sources]
        outcomes: List[Outcome] = []
        error: Optional[BaseException] = None
        # Join every retrieval before deciding so no frame is left unreleased.
        for future in futures:
            try:
                outcomes.append(future.result())
            except Exception as e:
                if error is None:
                    error = e
        if error is not None:
            _release_frames(outcomes)
            raise error
        return outcomes

    @staticmethod
    def _retrieve_one(source, timeout: float) -> Outcome:
        try:
            return source.retrieve(timeout)
        except AcquisitionError as e:
            return e

    def interrupt(self) -> None:
        """Wake every pending retrieve so the current cycle fails fast."""
        for source in self.sources:
            source.interrupt()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def _release_frames(outcomes: List[Outcome]) -> None:
    for outcome in outcomes:
        if isinstance(outcome, Frame):
            outcome.release()
