"""Frame data model: pixel formats, single frames and synchronized frame sets."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Tuple

import numpy as np


class PixelFormat(Enum):
    """Pixel encodings; value is (name, bytes per pixel, channels)"""

    MONO8 = ("mono8", 1, 1)
    BAYER_RG8 = ("bayer_rg8", 1, 1)
    BAYER_BG8 = ("bayer_bg8", 1, 1)
    BAYER_GB8 = ("bayer_gb8", 1, 1)
    BAYER_GR8 = ("bayer_gr8", 1, 1)
    YUV422_YUYV = ("yuyv422", 2, 2)
    YUV422_UYVY = ("uyvy422", 2, 2)
    RGB8 = ("rgb8", 3, 3)
    BGR8 = ("bgr8", 3, 3)
    RGBA8 = ("rgba8", 4, 4)
    BGRA8 = ("bgra8", 4, 4)

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def bytes_per_pixel(self) -> int:
        return self.value[1]

    @property
    def channels(self) -> int:
        return self.value[2]

    def frame_size(self, width: int, height: int) -> int:
        return width * height * self.bytes_per_pixel

    @classmethod
    def parse(cls, name) -> "PixelFormat":
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower()
        for fmt in cls:
            if fmt.label == key or fmt.name.lower() == key:
                return fmt
        raise ValueError(f"Unknown pixel format: {name}")


def channel_count(pixel_format: PixelFormat) -> int:
    return pixel_format.channels


@dataclass(eq=False)
class Frame:
    """One image from one source. ``buffer`` is a uint8 numpy array."""

    source: str
    width: int
    height: int
    pixel_format: PixelFormat
    buffer: Optional[np.ndarray]
    sequence: int
    timestamp: float = field(default_factory=time.monotonic)
    success: bool = True
    error_code: Optional[int] = None
    error_description: Optional[str] = None
    cycle: Optional[int] = None
    _pool: object = field(default=None, repr=False, compare=False)

    @property
    def nbytes(self) -> int:
        return 0 if self.buffer is None else int(self.buffer.nbytes)

    @property
    def released(self) -> bool:
        return self._pool is None

    def release(self) -> None:
        """Return the buffer to the owning pool. Safe to call more than once."""
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.release(self)

    def derive(self, buffer: np.ndarray, pixel_format: PixelFormat) -> "Frame":
        """New frame with the same identity but a different buffer, not pool-owned."""
        return Frame(
            source=self.source,
            width=self.width,
            height=self.height,
            pixel_format=pixel_format,
            buffer=buffer,
            sequence=self.sequence,
            timestamp=self.timestamp,
            success=self.success,
            error_code=self.error_code,
            error_description=self.error_description,
            cycle=self.cycle,
        )


@dataclass(frozen=True)
class FrameSet:
    """Exactly one successful frame per configured source, all from one cycle."""

    cycle: int
    frames: Tuple[Frame, ...]

    def __post_init__(self):
        if not self.frames:
            raise ValueError("FrameSet needs at least one frame")
        for frame in self.frames:
            if frame.cycle != self.cycle:
                raise ValueError(f"Frame from source {frame.source} belongs to cycle {frame.cycle}, not {self.cycle}")
            if not frame.success:
                raise ValueError(f"Frame from source {frame.source} is a failed grab")

    def __iter__(self) -> Iterator[Frame]:
        return iter(self.frames)

    def __len__(self) -> int:
        return len(self.frames)

    def __getitem__(self, index) -> Frame:
        return self.frames[index]

    @property
    def sources(self) -> Tuple[str, ...]:
        return tuple(frame.source for frame in self.frames)

    def frame_for(self, source: str) -> Frame:
        for frame in self.frames:
            if frame.source == source:
                return frame
        raise KeyError(source)

    def release(self) -> None:
        for frame in self.frames:
            frame.release()
