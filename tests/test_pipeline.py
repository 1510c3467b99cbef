from __future__ import annotations

import logging
import threading
import time

import pytest

from conftest import FakeRenderer, ScriptedSource, WriterFactory

from syncrecorder.converter import CONVERSIONS, FrameConverter
from syncrecorder.devices import MockBackend, runtime
from syncrecorder.errors import DeviceUnavailable, FatalRuntimeError, UnsupportedFormat
from syncrecorder.frame import PixelFormat
from syncrecorder.pipeline import PipelineController, PipelineState
from syncrecorder.sinks import DisplaySink, RecordingSink, Sink
from syncrecorder.source import create_sources


class CollectingSink(Sink):
    name = "collector"

    def __init__(self, on_cycle=None):
        super().__init__()
        self.cycles = []
        self.opened_with = None
        self.on_cycle = on_cycle

    def open(self, sources):
        self.opened_with = [s.label for s in sources]

    def consume(self, frames, cycle):
        self.cycles.append(cycle)
        if self.on_cycle is not None:
            self.on_cycle(cycle)


def three_sources(**failures):
    return [ScriptedSource(label, failures=failures.get(label)) for label in "ABC"]


def test_run_delivers_frame_sets_in_cycle_order() -> None:
    sources = three_sources()
    collector = CollectingSink()
    pipeline = PipelineController(sources, [collector], max_cycles=10)

    stats = pipeline.run()

    assert collector.opened_with == ["A", "B", "C"]
    assert collector.cycles == list(range(10))
    assert stats.delivered == 10
    assert pipeline.state is PipelineState.STOPPED
    assert collector.finalize_count == 1
    assert all(s.close_count == 1 for s in sources)
    # Every raw buffer went back to its pool, never more than one in flight
    assert all(s.pool.in_flight == 0 and s.max_in_flight == 1 for s in sources)


def test_timeout_on_one_source_skips_only_that_cycle(caplog) -> None:
    sources = three_sources(B={42: "timeout"})
    collector = CollectingSink()
    pipeline = PipelineController(sources, [collector], timeout=5.0, max_cycles=44)

    with caplog.at_level(logging.WARNING, logger="syncrecorder.pipeline"):
        stats = pipeline.run()

    assert 42 not in collector.cycles
    assert collector.cycles[-1] == 43
    assert stats.delivered == 43
    assert stats.failed == 1
    assert stats.source_failures == {"B": 1}
    record = next(r for r in caplog.records if "Cycle 42" in r.getMessage())
    assert (record.source, record.cycle) == ("B", 42)


def test_grab_failure_is_logged_with_error_code(caplog) -> None:
    sources = three_sources(C={1: "grab"})
    pipeline = PipelineController(sources, [], max_cycles=3)

    with caplog.at_level(logging.WARNING, logger="syncrecorder.pipeline"):
        stats = pipeline.run()

    assert stats.delivered == 2
    record = next(r for r in caplog.records if "grab failed" in r.getMessage())
    assert record.error_code == 0xE1000014
    assert "0xe1000014" in record.getMessage()


def test_busy_display_does_not_affect_recording(tmp_path, writer_factory: WriterFactory) -> None:
    renderer = FakeRenderer(delay=0.03)
    display = DisplaySink(renderer, render_budget=0.02)
    recording = RecordingSink(tmp_path, writer_factory=writer_factory)
    pipeline = PipelineController(three_sources(), [display, recording])
    pipeline.start()

    for _ in range(3):
        pipeline.step()
    pipeline.stop()

    assert display.dropped == 1
    assert [[f[2] for f in w.frames] for w in writer_factory.writers] == [[0, 1, 2]] * 3
    assert pipeline.stats.sink_drops == {"display": 1}
    assert "display=1" in pipeline.stats.summary()


def test_sink_write_error_disables_only_that_sink(tmp_path) -> None:
    factory = WriterFactory(fail_on={2})
    recording = RecordingSink(tmp_path, writer_factory=factory)
    collector = CollectingSink()
    pipeline = PipelineController(three_sources(), [recording, collector], max_cycles=5)

    stats = pipeline.run()

    assert stats.disabled_sinks == ["recording"]
    assert collector.cycles == [0, 1, 2, 3, 4]
    assert [len(w.frames) for w in factory.writers] == [1, 1, 1]
    assert recording.finalize_count == 1
    assert all(w.close_count == 1 for w in factory.writers)


def test_stop_is_idempotent() -> None:
    sources = three_sources()
    sinks = [CollectingSink(), CollectingSink()]
    pipeline = PipelineController(sources, sinks)
    pipeline.start()
    pipeline.step()

    pipeline.stop()
    pipeline.stop()

    assert pipeline.state is PipelineState.STOPPED
    assert [s.finalize_count for s in sinks] == [1, 1]
    assert [s.close_count for s in sources] == [1, 1, 1]


def test_stop_from_another_thread_ends_loop_at_next_cycle() -> None:
    pipeline = None

    def request_stop(cycle):
        if cycle == 5:
            stopper = threading.Thread(target=pipeline.stop)
            stopper.start()
            stopper.join(1)

    collector = CollectingSink(on_cycle=request_stop)
    pipeline = PipelineController(three_sources(), [collector])
    worker = threading.Thread(target=pipeline.run)
    worker.start()
    worker.join(5)

    assert not worker.is_alive()
    assert pipeline.state is PipelineState.STOPPED
    assert collector.finalize_count == 1
    assert collector.cycles == [0, 1, 2, 3, 4, 5]


def test_unsupported_format_drains_and_raises() -> None:
    table = {k: v for k, v in CONVERSIONS.items() if k[0] is not PixelFormat.YUV422_UYVY}
    sources = [ScriptedSource("A"), ScriptedSource("B", pixel_format=PixelFormat.YUV422_UYVY)]
    collector = CollectingSink()
    pipeline = PipelineController(sources, [collector], converter=FrameConverter(conversions=table))

    with pytest.raises(UnsupportedFormat):
        pipeline.run()

    assert pipeline.state is PipelineState.STOPPED
    assert collector.finalize_count == 1
    assert all(s.close_count == 1 and s.pool.in_flight == 0 for s in sources)


def test_unclassified_error_becomes_fatal_runtime_error() -> None:
    sources = three_sources(A={3: RuntimeError("driver crashed")})
    pipeline = PipelineController(sources, [CollectingSink()])

    with pytest.raises(FatalRuntimeError) as excinfo:
        pipeline.run()

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert pipeline.error is excinfo.value
    assert pipeline.state is PipelineState.STOPPED


def test_start_failure_closes_opened_sources() -> None:
    sources = [ScriptedSource("A"), ScriptedSource("B", open_error=DeviceUnavailable("B", "unplugged"))]
    collector = CollectingSink()
    pipeline = PipelineController(sources, [collector])

    with pytest.raises(DeviceUnavailable):
        pipeline.start()

    assert pipeline.state is PipelineState.STOPPED
    assert sources[0].close_count == 1
    assert collector.finalize_count == 1


def test_context_manager_stops_pipeline() -> None:
    sources = three_sources()
    collector = CollectingSink()
    with PipelineController(sources, [collector]) as pipeline:
        pipeline.start()
        pipeline.step()

    assert pipeline.state is PipelineState.STOPPED
    assert collector.finalize_count == 1


def test_mock_cameras_end_to_end(writer_factory: WriterFactory, tmp_path) -> None:
    backend = MockBackend(count=2, width=32, height=24, fps=200, pixel_format=PixelFormat.BAYER_RG8)
    recording = RecordingSink(tmp_path, writer_factory=writer_factory)
    with runtime(backend):
        sources = create_sources(backend, count=2)
        with PipelineController(sources, [recording], timeout=2.0, concurrent=True, max_cycles=5) as pipeline:
            stats = pipeline.run()
    assert not backend.initialized

    assert stats.delivered == 5
    for writer in writer_factory.writers:
        assert [f[2] for f in writer.frames] == [0, 1, 2, 3, 4]
        assert all(f[3] == (24, 32, 3) for f in writer.frames)
        sequences = [f[1] for f in writer.frames]
        assert sequences == sorted(set(sequences))


@pytest.mark.parametrize("concurrent", [False, True])
def test_stop_interrupts_pending_retrieve(queue_backend, concurrent: bool) -> None:
    sources = create_sources(queue_backend, count=3)
    pipeline = PipelineController(sources, [CollectingSink()], timeout=1.0, concurrent=concurrent)
    worker = threading.Thread(target=pipeline.run)
    worker.start()
    time.sleep(0.05)

    started = time.monotonic()
    pipeline.stop()
    worker.join(5)
    elapsed = time.monotonic() - started

    assert not worker.is_alive()
    assert elapsed < 0.5
    assert pipeline.state is PipelineState.STOPPED
    assert pipeline.stats.failed == 0
    assert all(device.closed for device in queue_backend.devices.values())


def test_failing_cycle_waits_one_timeout_in_total(queue_backend) -> None:
    sources = create_sources(queue_backend, count=3)
    pipeline = PipelineController(sources, [], timeout=0.2, max_cycles=1)

    started = time.monotonic()
    stats = pipeline.run()

    assert time.monotonic() - started < 0.5
    assert stats.failed == 1
    assert stats.source_failures == {"A": 1, "B": 1, "C": 1}
