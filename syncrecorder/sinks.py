"""
Frame consumers.

A sink receives every delivered FrameSet after conversion, in cycle order,
and never keeps frame data beyond the call. ``DisplaySink`` shows each source
in its own window, ``RecordingSink`` encodes one video file per source and
``SnapshotSink`` saves periodic JPEG stills.
"""

import logging
import time
from datetime import datetime
from fractions import Fraction
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

import av
import cv2
import numpy as np
from PIL import Image

from .errors import SinkWriteError
from .frame import Frame, FrameSet, PixelFormat
from .utils import safe_name

logger = logging.getLogger(__name__)

AV_INPUT_FORMATS = {
    PixelFormat.BGR8: "bgr24",
    PixelFormat.RGB8: "rgb24",
}


class Sink:
    """Base class: ``open`` at start, ``accept`` per cycle, ``finalize`` once."""

    name = "sink"

    def __init__(self, name: Optional[str] = None):
        if name:
            self.name = name
        self.delivered = 0
        self.dropped = 0
        self.finalize_count = 0
        self._finalized = False

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"

    @property
    def finalized(self) -> bool:
        return self._finalized

    def open(self, sources: Sequence) -> None:
        """Prepare outputs for the given sources (objects with label/width/height)."""

    def accept(self, item) -> None:
        """Consume a FrameSet or a single converted Frame."""
        if isinstance(item, FrameSet):
            frames, cycle = tuple(item), item.cycle
        else:
            frames, cycle = (item,), item.cycle
        if self.consume(frames, cycle) is not False:
            self.delivered += 1

    def consume(self, frames: Tuple[Frame, ...], cycle: Optional[int]) -> Optional[bool]:
        """Handle one FrameSet. Returns False if it was dropped."""
        raise NotImplementedError

    def finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        self.finalize_count += 1
        self.close()

    def close(self) -> None:
        pass


class OpenCvRenderer:
    """Render collaborator backed by OpenCV HighGUI"""

    def show(self, window_id: str, image: np.ndarray) -> None:
        cv2.imshow(window_id, image)

    def poll_key(self) -> Optional[str]:
        key = cv2.waitKey(1)
        if key < 0:
            return None
        return chr(key & 0xFF)

    def close(self) -> None:
        cv2.destroyAllWindows()


class DisplaySink(Sink):
    """Shows the newest FrameSet, one window per source.

    Rendering runs on the thread that calls ``accept``, because HighGUI
    windows and key polling must stay on one thread. If rendering a FrameSet
    takes longer than ``render_budget`` seconds the display counts as busy
    and the next FrameSet is dropped instead of queued.
    """

    name = "display"

    def __init__(self, renderer=None, scale: float = 0.5, render_budget: float = 0.010,
                 quit_key: Optional[str] = "q", on_quit: Optional[Callable[[], None]] = None,
                 name: Optional[str] = None):
        super().__init__(name)
        self.renderer = renderer if renderer is not None else OpenCvRenderer()
        self.scale = scale
        self.render_budget = render_budget
        self.quit_key = quit_key
        self.on_quit = on_quit
        self.rendered = 0
        self._busy = False

    def consume(self, frames, cycle):
        if self._busy:
            self._busy = False
            self.dropped += 1
            logger.debug(f"Display busy, dropped cycle {cycle}")
            return False
        started = time.monotonic()
        try:
            for frame in frames:
                self.renderer.show(frame.source, self._resize(frame.buffer))
            key = self.renderer.poll_key()
        except Exception as e:
            raise SinkWriteError(self.name, f"render failed: {e}") from e
        self.rendered += 1
        self._busy = time.monotonic() - started > self.render_budget
        if key is not None and key == self.quit_key:
            logger.info(f"Quit key '{key}' pressed")
            if self.on_quit is not None:
                self.on_quit()
        return True

    def _resize(self, image: np.ndarray) -> np.ndarray:
        if self.scale == 1.0:
            return image
        return cv2.resize(image, None, fx=self.scale, fy=self.scale, interpolation=cv2.INTER_AREA)

    def close(self):
        self.renderer.close()
        logger.info(f"Display: {self.rendered} rendered, {self.dropped} dropped")


def quality_to_crf(quality: int) -> int:
    """Map 0-100 quality to the x264/x265 CRF scale (51 worst, 0 lossless)"""
    return round(51 * (100 - quality) / 100)


def quality_to_bit_rate(quality: int, width: int, height: int, frame_rate: float) -> int:
    bits_per_pixel = 0.05 + 0.25 * quality / 100
    return int(width * height * frame_rate * bits_per_pixel)


class AvVideoWriter:
    """Recording collaborator: one PyAV output container with one video stream"""

    def __init__(self, codec: str = "mpeg4"):
        self.codec = codec
        self.container = None
        self.stream = None
        self.frame_count = 0
        self._input_format = "bgr24"

    def open(self, path, width: int, height: int, pixel_format: PixelFormat, frame_rate: float, quality: int):
        self._input_format = AV_INPUT_FORMATS[pixel_format]
        self.container = av.open(str(path), mode="w")
        try:
            stream = self.container.add_stream(self.codec, rate=Fraction(frame_rate).limit_denominator(1001))
            stream.width = width
            stream.height = height
            stream.pix_fmt = "yuv420p"
            if self.codec in ("libx264", "libx265"):
                stream.options = {"crf": str(quality_to_crf(quality))}
            else:
                stream.bit_rate = quality_to_bit_rate(quality, width, height, frame_rate)
        except Exception:
            self.container.close()
            self.container = None
            raise
        self.stream = stream

    def append(self, frame: Frame) -> None:
        video_frame = av.VideoFrame.from_ndarray(frame.buffer, format=self._input_format)
        for packet in self.stream.encode(video_frame):
            self.container.mux(packet)
        self.frame_count += 1

    def close(self) -> None:
        if self.container is None:
            return
        try:
            # Flush
            for packet in self.stream.encode():
                self.container.mux(packet)
        finally:
            self.container.close()
            self.container = None


class RecordingSink(Sink):
    """Appends each source's frames to ``{label}.{container}`` in ``output_dir``.

    Writes are synchronous. If appending one FrameSet takes longer than a
    frame period the next FrameSet is dropped so acquisition stays live.
    """

    name = "recording"

    def __init__(self, output_dir, frame_rate: float = 20, quality: int = 90, container: str = "mp4",
                 codec: str = "mpeg4", pixel_format: PixelFormat = PixelFormat.BGR8,
                 writer_factory: Optional[Callable[[], object]] = None, drop_when_behind: bool = True,
                 name: Optional[str] = None):
        super().__init__(name)
        self.output_dir = Path(output_dir)
        self.frame_rate = frame_rate
        self.quality = quality
        self.container = container
        self.codec = codec
        self.pixel_format = pixel_format
        self.writer_factory = writer_factory or (lambda: AvVideoWriter(codec))
        self.drop_when_behind = drop_when_behind
        self.paths: Dict[str, Path] = {}
        self.written = 0
        self._writers: Dict[str, object] = {}
        self._behind = False

    @property
    def frame_period(self) -> float:
        return 1.0 / self.frame_rate

    def open(self, sources):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for source in sources:
            path = self.output_dir / f"{safe_name(source.label)}.{self.container}"
            writer = self.writer_factory()
            try:
                writer.open(path, source.width, source.height, self.pixel_format, self.frame_rate, self.quality)
            except Exception as e:
                self.close()
                raise SinkWriteError(self.name, f"cannot open {path}: {e}", source.label) from e
            self._writers[source.label] = writer
            self.paths[source.label] = path
            logger.info(f"Recording source {source.label} to {path} ({self.frame_rate} fps, quality {self.quality})")

    def consume(self, frames, cycle):
        if self.drop_when_behind and self._behind:
            self._behind = False
            self.dropped += 1
            logger.debug(f"Recording behind, dropped cycle {cycle}")
            return False
        started = time.monotonic()
        for frame in frames:
            writer = self._writers.get(frame.source)
            if writer is None:
                raise SinkWriteError(self.name, "no open output", frame.source)
            try:
                writer.append(frame)
            except Exception as e:
                raise SinkWriteError(self.name, str(e), frame.source) from e
        self.written += 1
        self._behind = time.monotonic() - started > self.frame_period
        return True

    def close(self):
        failed = []
        for label, writer in self._writers.items():
            try:
                writer.close()
            except Exception as e:
                logger.error(f"Failed to close recording for source {label}: {e}")
                failed.append(label)
        self._writers.clear()
        logger.info(f"Recording: {self.written} frame set(s) written, {self.dropped} dropped")
        if failed:
            raise SinkWriteError(self.name, f"failed to close output for {', '.join(failed)}")


class SnapshotSink(Sink):
    """Saves every ``every``-th FrameSet as one JPEG per source using Pillow"""

    name = "snapshots"

    def __init__(self, output_dir, every: int = 30, quality: int = 95,
                 pixel_format: PixelFormat = PixelFormat.BGR8, name: Optional[str] = None):
        super().__init__(name)
        self.output_dir = Path(output_dir)
        self.every = max(1, int(every))
        self.quality = quality
        self.pixel_format = pixel_format
        self.frame_count = 0
        self._dirs: Dict[str, Path] = {}

    def open(self, sources):
        for source in sources:
            self._directory(source.label)

    def _directory(self, label: str) -> Path:
        directory = self._dirs.get(label)
        if directory is None:
            directory = self.output_dir / f"camera_{safe_name(label)}"
            directory.mkdir(parents=True, exist_ok=True)
            self._dirs[label] = directory
        return directory

    def consume(self, frames, cycle):
        if cycle is not None and cycle % self.every:
            return
        for frame in frames:
            try:
                self.save_frame(frame)
            except OSError as e:
                raise SinkWriteError(self.name, str(e), frame.source) from e
        self.frame_count += 1

    def save_frame(self, frame: Frame) -> str:
        """Save frame with timestamp using Pillow"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")[:-3]
        label = safe_name(frame.source)
        filepath = self._directory(frame.source) / f"camera_{label}_{timestamp}_{self.frame_count:06d}.jpg"
        pixels = frame.buffer[..., ::-1] if self.pixel_format is PixelFormat.BGR8 else frame.buffer
        image = Image.fromarray(np.ascontiguousarray(pixels))
        image.save(str(filepath), 'JPEG', quality=self.quality, optimize=True)
        logger.debug(f"Saved snapshot: {filepath}")
        return str(filepath)
