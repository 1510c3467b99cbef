from __future__ import annotations

import threading
import time
from types import SimpleNamespace

import av
import numpy as np
import pytest
from PIL import Image

from conftest import FakeRenderer, WriterFactory, make_frame

from syncrecorder.errors import SinkWriteError
from syncrecorder.frame import FrameSet, PixelFormat
from syncrecorder.sinks import (
    AvVideoWriter,
    DisplaySink,
    RecordingSink,
    SnapshotSink,
    quality_to_crf,
)

SOURCES = [SimpleNamespace(label="A", width=8, height=6), SimpleNamespace(label="B", width=8, height=6)]


def frame_set(cycle: int, labels: str = "AB") -> FrameSet:
    frames = tuple(
        make_frame(label, sequence=cycle + 1, width=8, height=6, cycle=cycle, fill=cycle % 256)
        .derive(np.full((6, 8, 3), cycle % 256, dtype=np.uint8), PixelFormat.BGR8)
        for label in labels
    )
    return FrameSet(cycle, frames)


def test_display_renders_each_source_scaled() -> None:
    renderer = FakeRenderer()
    sink = DisplaySink(renderer, scale=0.5, render_budget=1.0)
    sink.open(SOURCES)

    sink.accept(frame_set(0))
    sink.finalize()

    assert renderer.shown == [("A", (3, 4, 3)), ("B", (3, 4, 3))]
    assert sink.dropped == 0
    assert renderer.closed == 1


def test_display_uses_only_the_calling_thread() -> None:
    renderer = FakeRenderer()
    sink = DisplaySink(renderer, render_budget=1.0)
    sink.open(SOURCES)

    for cycle in range(3):
        sink.accept(frame_set(cycle))
    sink.finalize()

    assert renderer.threads == {threading.get_ident()}


def test_display_drops_next_frame_set_after_slow_render() -> None:
    renderer = FakeRenderer(delay=0.05)
    sink = DisplaySink(renderer, render_budget=0.02)
    sink.open(SOURCES)

    sink.accept(frame_set(0))
    started = time.monotonic()
    sink.accept(frame_set(1))
    assert time.monotonic() - started < 0.02
    sink.accept(frame_set(2))
    sink.finalize()

    assert sink.dropped == 1
    assert sink.rendered == 2
    assert sink.delivered == 2
    assert len(renderer.shown) == 4


def test_display_quit_key_calls_on_quit() -> None:
    calls = []
    renderer = FakeRenderer(keys=["x", "q"])
    sink = DisplaySink(renderer, render_budget=1.0, on_quit=lambda: calls.append("quit"))
    sink.open(SOURCES)

    sink.accept(frame_set(0))
    assert calls == []
    sink.accept(frame_set(1))
    sink.accept(frame_set(2))
    sink.finalize()

    assert calls == ["quit"]


def test_display_render_error_raises_sink_write_error() -> None:
    class BrokenRenderer(FakeRenderer):
        def show(self, window_id, image):
            raise RuntimeError("no display")

    sink = DisplaySink(BrokenRenderer(), render_budget=1.0)
    sink.open(SOURCES)

    with pytest.raises(SinkWriteError) as excinfo:
        sink.accept(frame_set(0))
    assert "no display" in str(excinfo.value)
    assert sink.delivered == 0
    sink.finalize()


def test_recording_counts_only_written_frame_sets_as_delivered(tmp_path) -> None:
    class SlowWriter:
        def open(self, *args):
            pass

        def append(self, frame):
            time.sleep(0.01)

        def close(self):
            pass

    sink = RecordingSink(tmp_path, frame_rate=1000, writer_factory=SlowWriter)
    sink.open(SOURCES[:1])
    for cycle in range(4):
        sink.accept(frame_set(cycle, "A"))

    assert (sink.delivered, sink.dropped, sink.written) == (2, 2, 2)


def test_recording_opens_one_output_per_source(tmp_path, writer_factory: WriterFactory) -> None:
    sink = RecordingSink(tmp_path / "out", frame_rate=20, quality=90, writer_factory=writer_factory)
    sink.open(SOURCES)

    assert [w.path.name for w in writer_factory.writers] == ["A.mp4", "B.mp4"]
    assert writer_factory.writers[0].params == (8, 6, PixelFormat.BGR8, 20, 90)
    assert (tmp_path / "out").is_dir()


def test_recording_appends_each_frame_once(tmp_path, writer_factory: WriterFactory) -> None:
    sink = RecordingSink(tmp_path, writer_factory=writer_factory)
    sink.open(SOURCES)
    for cycle in range(3):
        sink.accept(frame_set(cycle))
    sink.finalize()
    sink.finalize()

    for writer, label in zip(writer_factory.writers, "AB"):
        assert [(f[0], f[2]) for f in writer.frames] == [(label, 0), (label, 1), (label, 2)]
        assert writer.close_count == 1
    assert sink.finalize_count == 1
    assert sink.written == 3


def test_recording_accepts_single_frame(tmp_path, writer_factory: WriterFactory) -> None:
    sink = RecordingSink(tmp_path, writer_factory=writer_factory)
    sink.open(SOURCES)
    sink.accept(frame_set(4)[1])

    assert writer_factory.writers[0].frames == []
    assert [f[0] for f in writer_factory.writers[1].frames] == ["B"]


def test_recording_write_failure_raises_sink_write_error(tmp_path) -> None:
    factory = WriterFactory(fail_on={1})
    sink = RecordingSink(tmp_path, writer_factory=factory)
    sink.open(SOURCES)

    with pytest.raises(SinkWriteError) as excinfo:
        sink.accept(frame_set(0))
    assert excinfo.value.source == "A"
    assert "No space left" in str(excinfo.value)
    assert not excinfo.value.fatal


def test_recording_drops_next_frame_set_when_behind(tmp_path) -> None:
    class SlowWriter:
        def __init__(self):
            self.frames = []

        def open(self, *args):
            pass

        def append(self, frame):
            time.sleep(0.01)
            self.frames.append(frame.cycle)

        def close(self):
            pass

    writers = []

    def factory():
        writers.append(SlowWriter())
        return writers[-1]

    sink = RecordingSink(tmp_path, frame_rate=1000, writer_factory=factory)
    sink.open(SOURCES[:1])
    for cycle in range(4):
        sink.accept(frame_set(cycle, "A"))

    assert writers[0].frames == [0, 2]
    assert sink.dropped == 2


def test_recording_open_failure_raises(tmp_path) -> None:
    class FailingWriter:
        def open(self, *args):
            raise OSError("read-only file system")

        def close(self):
            pass

    sink = RecordingSink(tmp_path, writer_factory=FailingWriter)
    with pytest.raises(SinkWriteError):
        sink.open(SOURCES)


def test_av_video_writer_produces_playable_file(tmp_path) -> None:
    path = tmp_path / "A.mp4"
    writer = AvVideoWriter("mpeg4")
    writer.open(path, 64, 48, PixelFormat.BGR8, 20, 90)
    for value in range(5):
        frame = make_frame("A", sequence=value, width=64, height=48)
        writer.append(frame.derive(np.full((48, 64, 3), value * 40, dtype=np.uint8), PixelFormat.BGR8))
    writer.close()
    writer.close()

    with av.open(str(path)) as container:
        decoded = list(container.decode(video=0))
    assert len(decoded) == 5
    assert (decoded[0].width, decoded[0].height) == (64, 48)


def test_quality_maps_to_crf() -> None:
    assert quality_to_crf(100) == 0
    assert quality_to_crf(0) == 51
    assert quality_to_crf(90) == 5


def test_snapshots_save_every_nth_cycle(tmp_path) -> None:
    sink = SnapshotSink(tmp_path, every=2)
    sink.open(SOURCES)
    for cycle in range(5):
        sink.accept(frame_set(cycle))
    sink.finalize()

    files_a = sorted((tmp_path / "camera_A").glob("*.jpg"))
    assert len(files_a) == 3
    assert len(list((tmp_path / "camera_B").glob("*.jpg"))) == 3
    with Image.open(files_a[0]) as image:
        assert image.size == (8, 6)
