import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .acquirer import SynchronizedAcquirer
from .converter import FrameConverter
from .errors import (
    CycleFailed,
    FatalRuntimeError,
    GrabFailed,
    InvalidState,
    PipelineError,
    SinkWriteError,
    is_fatal,
)
from .frame import FrameSet
from .sinks import Sink
from .utils import should_stop

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class PipelineStats:
    cycles: int = 0
    delivered: int = 0
    failed: int = 0
    source_failures: Counter = field(default_factory=Counter)
    disabled_sinks: List[str] = field(default_factory=list)
    sink_drops: Dict[str, int] = field(default_factory=dict)

    def summary(self) -> str:
        failures = ", ".join(f"{s}={n}" for s, n in sorted(self.source_failures.items())) or "none"
        drops = ", ".join(f"{s}={n}" for s, n in sorted(self.sink_drops.items())) or "none"
        return (f"{self.cycles} cycle(s), {self.delivered} delivered, {self.failed} failed "
                f"(per source: {failures}), sink drops: {drops}")


class PipelineController:
    """Owns the acquisition loop, the error policy and orderly shutdown.

    ``start`` opens every source and sink, ``run`` repeats ``step`` until a
    stop is requested or a fatal error occurs, then drains: every source is
    stopped and closed and every sink finalized exactly once. ``stop`` may be
    called from any thread; it wakes a pending retrieve and the loop drains
    at the top of the next cycle, so shutdown takes at most one retrieve
    timeout.
    """

    def __init__(self, sources: Sequence, sinks: Sequence[Sink] = (), converter: Optional[FrameConverter] = None,
                 timeout: float = 5.0, concurrent: bool = False, max_cycles: Optional[int] = None,
                 duration: Optional[float] = None):
        if not sources:
            raise ValueError("At least one source is required")
        self.sources = list(sources)
        self.sinks = list(sinks)
        self.active_sinks: List[Sink] = []
        self.converter = converter or FrameConverter()
        self.timeout = timeout
        self.concurrent = concurrent
        self.max_cycles = max_cycles
        self.duration = duration
        self.state = PipelineState.IDLE
        self.stats = PipelineStats()
        self.error: Optional[BaseException] = None
        self._acquirer: Optional[SynchronizedAcquirer] = None
        self._stop_requested = threading.Event()
        self._loop_active = False
        self._lock = threading.RLock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    @property
    def cycle(self) -> int:
        return self._acquirer.cycle if self._acquirer else 0

    def add_sink(self, sink: Sink) -> None:
        if self.state is not PipelineState.IDLE:
            raise InvalidState("Sinks can only be added before start")
        self.sinks.append(sink)

    def start(self) -> None:
        with self._lock:
            if self.state is not PipelineState.IDLE:
                raise InvalidState(f"Cannot start pipeline in state {self.state.value}")
            try:
                for source in self.sources:
                    source.open()
                for source in self.sources:
                    source.start_acquisition()
                for sink in self.sinks:
                    sink.open(self.sources)
                    self.active_sinks.append(sink)
            except Exception as e:
                logger.error(f"Pipeline start failed: {e}")
                self.error = e
                self._drain()
                raise
            self._acquirer = SynchronizedAcquirer(self.sources, concurrent=self.concurrent)
            self.state = PipelineState.RUNNING
        logger.info(f"Pipeline running with {len(self.sources)} source(s) "
                    f"{[s.label for s in self.sources]} and sinks {[s.name for s in self.sinks]}")

    def run(self) -> PipelineStats:
        if self.state is PipelineState.IDLE:
            self.start()
        with self._lock:
            runnable = self.state is PipelineState.RUNNING and not self._stop_requested.is_set()
            self._loop_active = runnable
        if not runnable:
            self._drain()
            return self.stats

        if self.duration:
            logger.info(f"Capturing for {self.duration} seconds...")
        else:
            logger.info("Capturing continuously. Press Ctrl+C to stop...")

        start_time = time.time()
        try:
            while not self._stop_requested.is_set():
                if self.max_cycles is not None and self.stats.cycles >= self.max_cycles:
                    break
                if should_stop(start_time, self.duration):
                    break
                self.step()
        except KeyboardInterrupt:
            logger.info("Received interrupt signal")
        except Exception as e:
            logger.error(f"Fatal error at cycle {self.cycle - 1}: {e}")
            if isinstance(e, PipelineError) and is_fatal(e):
                self.error = e
                raise
            self.error = FatalRuntimeError(f"{type(e).__name__}: {e}")
            raise self.error from e
        finally:
            with self._lock:
                self._loop_active = False
            self._drain()
        return self.stats

    def step(self) -> Optional[FrameSet]:
        """Run one cycle. Returns the delivered FrameSet or None if the cycle failed."""
        if self.state is not PipelineState.RUNNING:
            raise InvalidState(f"Cannot step pipeline in state {self.state.value}")
        self.stats.cycles += 1
        try:
            frame_set = self._acquirer.next(self.timeout)
        except CycleFailed as e:
            if self._stop_requested.is_set():
                logger.debug(f"Cycle {e.cycle} interrupted by stop")
                return None
            self._report_cycle_failure(e)
            return None

        try:
            converted = FrameSet(frame_set.cycle, tuple(self.converter.convert(f) for f in frame_set))
            self._fan_out(converted)
        finally:
            frame_set.release()
        self.stats.delivered += 1
        return converted

    def _report_cycle_failure(self, failed: CycleFailed) -> None:
        self.stats.failed += 1
        for failure in failed.failures:
            self.stats.source_failures[failure.source] += 1
            extra = {"source": failure.source, "cycle": failed.cycle}
            if isinstance(failure, GrabFailed):
                extra["error_code"] = failure.code
                logger.warning(f"Cycle {failed.cycle}: source {failure.source} grab failed "
                               f"(0x{failure.code & 0xFFFFFFFF:x} {failure.description})", extra=extra)
            else:
                logger.warning(f"Cycle {failed.cycle}: {failure}", extra=extra)

    def _fan_out(self, frame_set: FrameSet) -> None:
        for sink in list(self.active_sinks):
            try:
                sink.accept(frame_set)
                if sink.dropped:
                    self.stats.sink_drops[sink.name] = sink.dropped
            except SinkWriteError as e:
                logger.error(f"Cycle {frame_set.cycle}: {e}; disabling sink {sink.name}",
                             extra={"sink": sink.name, "source": e.source, "cycle": frame_set.cycle})
                self.active_sinks.remove(sink)
                self.stats.disabled_sinks.append(sink.name)

    def stop(self) -> None:
        """Request shutdown. Drains immediately unless a loop is running."""
        with self._lock:
            if self.state is PipelineState.STOPPED:
                return
            self._stop_requested.set()
            if self._loop_active:
                logger.info("Stop requested")
                self._acquirer.interrupt()
                return
        self._drain()

    def _drain(self) -> None:
        with self._lock:
            if self.state in (PipelineState.DRAINING, PipelineState.STOPPED):
                return
            self.state = PipelineState.DRAINING
        logger.info("Stopping all sources...")

        for source in self.sources:
            try:
                source.stop_acquisition()
                source.close()
            except Exception as e:
                logger.error(f"Failed to close source {source.label}: {e}")
        if self._acquirer is not None:
            self._acquirer.close()
        for sink in self.sinks:
            try:
                sink.finalize()
            except Exception as e:
                logger.error(f"Failed to finalize sink {sink.name}: {e}")
        self.active_sinks = []

        with self._lock:
            self.state = PipelineState.STOPPED
        logger.info(f"Pipeline stopped: {self.stats.summary()}")
