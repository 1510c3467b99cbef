"""
Device collaborators: enumeration, attachment and raw frame grabbing.

``AvBackend`` talks to real capture devices through PyAV (v4l2 on Linux,
DirectShow on Windows, AVFoundation on macOS). ``MockBackend`` produces
synthetic frames so the pipeline can run without hardware.
"""

import errno
import logging
import os
import platform
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

import av
import numpy as np

from .errors import InvalidState
from .frame import PixelFormat
from .utils import (
    IS_JETSON,
    IS_LINUX,
    IS_WINDOWS,
    _maintain_fps,
    get_camera_device_path,
    get_platform_backend,
)

logger = logging.getLogger(__name__)

WINDOWS_CAMERA_NAMES = [
    "Integrated Webcam",
    "USB2.0 HD UVC WebCam",
    "USB Camera",
    "Webcam",
    "Camera",
]

# Decoded formats handed over untouched; anything else is decoded to bgr24.
AV_PASSTHROUGH = {
    "gray": PixelFormat.MONO8,
    "rgb24": PixelFormat.RGB8,
    "bgr24": PixelFormat.BGR8,
    "yuyv422": PixelFormat.YUV422_YUYV,
}


@dataclass(frozen=True)
class DeviceDescriptor:
    device_id: object
    name: str
    serial: Optional[str] = None


@dataclass
class GrabResult:
    buffer: Optional[np.ndarray]
    width: int
    height: int
    pixel_format: PixelFormat
    success: bool = True
    error_code: Optional[int] = None
    error_description: Optional[str] = None
    timestamp: Optional[float] = None

    @classmethod
    def failure(cls, code: int, description: str, width: int = 0, height: int = 0,
                pixel_format: PixelFormat = PixelFormat.MONO8) -> "GrabResult":
        return cls(None, width, height, pixel_format, success=False,
                   error_code=code, error_description=description)


class DeviceBackend:
    """Process-wide device runtime with an initialize/terminate bracket.

    ``attach`` returns a device exposing ``open()``, ``grab()``, ``close()``,
    ``width``, ``height`` and ``serial``. ``grab`` blocks until the next frame
    and returns a GrabResult, or None if nothing arrived within the device's
    own polling interval.
    """

    name = "base"

    def __init__(self):
        self.initialized = False

    def initialize(self) -> None:
        self.initialized = True

    def terminate(self) -> None:
        self.initialized = False

    def enumerate(self) -> List[DeviceDescriptor]:
        raise NotImplementedError

    def attach(self, descriptor: DeviceDescriptor):
        raise NotImplementedError

    def _require_initialized(self):
        if not self.initialized:
            raise InvalidState(f"{self.name} runtime is not initialized")


@contextmanager
def runtime(backend: DeviceBackend):
    """Initialize the device runtime for the duration of the block."""
    backend.initialize()
    logger.debug(f"{backend.name} runtime initialized")
    try:
        yield backend
    finally:
        backend.terminate()
        logger.debug(f"{backend.name} runtime terminated")


class AvDevice:
    """One capture device opened through PyAV"""

    def __init__(self, descriptor: DeviceDescriptor, fps: int = 30, video_size: Optional[str] = None):
        self.descriptor = descriptor
        self.fps = fps
        self.video_size = video_size
        self.container = None
        self.video_stream = None
        self.width = 0
        self.height = 0
        self._frames = None

    @property
    def serial(self) -> str:
        return self.descriptor.serial or str(self.descriptor.name)

    def _format_options(self, input_format: str) -> Dict[str, str]:
        options = {'framerate': str(self.fps)}
        if self.video_size:
            options['video_size'] = self.video_size
        return options

    def _option_attempts(self, input_format: str) -> List[Dict[str, str]]:
        base_options = self._format_options(input_format)
        if input_format != 'dshow':
            return [base_options]
        # Many dshow devices fail if you force size/framerate. Try progressively.
        return [
            base_options,
            {},
            {'framerate': base_options['framerate']},
            {'video_size': '640x480'},
            {'video_size': '1280x720'},
            {'video_size': '1920x1080'},
        ]

    def open(self) -> None:
        input_format = get_platform_backend()
        device_path = get_camera_device_path(self.descriptor.device_id)
        last_error: Optional[Exception] = None
        for opts in self._option_attempts(input_format):
            try:
                logger.debug(f"Opening with {input_format} URL: {device_path}, options: {opts}")
                self.container = av.open(device_path, format=input_format, options=opts)
                self.video_stream = self.container.streams.video[0]
                self.video_stream.thread_type = 'AUTO'
                self.width = self.video_stream.codec_context.width
                self.height = self.video_stream.codec_context.height
                self._frames = self.container.decode(self.video_stream)
                logger.info(f"Device {self.descriptor.name} opened with format {input_format} and options {opts}")
                return
            except Exception as e:
                last_error = e
                if self.container:
                    try:
                        self.container.close()
                    finally:
                        self.container = None
        raise OSError(f"Failed to open {device_path} with format {input_format}: {last_error}")

    def grab(self) -> GrabResult:
        if self._frames is None:
            return GrabResult.failure(errno.EBADF, "Device is not open")
        try:
            frame = next(self._frames)
        except StopIteration:
            return GrabResult.failure(errno.ENODATA, "End of stream", self.width, self.height)
        except av.error.FFmpegError as e:
            return GrabResult.failure(e.errno or -1, e.strerror or str(e), self.width, self.height)

        pixel_format = AV_PASSTHROUGH.get(frame.format.name)
        if pixel_format is None:
            array = frame.to_ndarray(format="bgr24")
            pixel_format = PixelFormat.BGR8
        else:
            array = frame.to_ndarray()
        return GrabResult(
            buffer=np.ascontiguousarray(array).reshape(-1),
            width=frame.width,
            height=frame.height,
            pixel_format=pixel_format,
            timestamp=time.monotonic(),
        )

    def close(self) -> None:
        self._frames = None
        if self.container:
            self.container.close()
            self.container = None


class AvBackend(DeviceBackend):
    name = "av"

    def __init__(self, fps: int = 30, video_size: Optional[str] = None):
        super().__init__()
        self.fps = fps
        self.video_size = video_size
        self._previous_log_level = None

    def initialize(self) -> None:
        self._previous_log_level = av.logging.get_level()
        av.logging.set_level(av.logging.ERROR)
        logger.info(f"Platform: {platform.system()}, Jetson: {IS_JETSON}, backend: {get_platform_backend()}")
        super().initialize()

    def terminate(self) -> None:
        av.logging.set_level(self._previous_log_level)
        super().terminate()

    def enumerate(self) -> List[DeviceDescriptor]:
        self._require_initialized()
        if IS_WINDOWS:
            return [DeviceDescriptor(name, name) for name in list_windows_cameras()]
        if IS_LINUX:
            return [DeviceDescriptor(i, f"/dev/video{i}") for i in list_linux_cameras()]
        # macOS (avfoundation): no reliable enumeration without the FFmpeg CLI.
        return []

    def attach(self, descriptor: DeviceDescriptor) -> AvDevice:
        self._require_initialized()
        return AvDevice(descriptor, fps=self.fps, video_size=self.video_size)


def _probe(device_path: str, input_format: str) -> bool:
    try:
        container = av.open(device_path, format=input_format)
    except av.error.FFmpegError as e:
        logger.debug(f"Probe of {device_path} failed: {e}")
        return False
    try:
        return bool(container.streams.video)
    finally:
        container.close()


def list_linux_cameras(max_index: int = 10) -> List[int]:
    """Indices of /dev/video* nodes that open with a video stream"""
    return [
        i for i in range(max_index)
        if os.path.exists(f"/dev/video{i}") and _probe(f"/dev/video{i}", 'v4l2')
    ]


def list_windows_cameras() -> List[str]:
    """Best-effort probe; DirectShow device enumeration isn't exposed directly via PyAV."""
    return [name for name in WINDOWS_CAMERA_NAMES if _probe(get_camera_device_path(name), 'dshow')]


class MockDevice:
    """Synthetic device producing random frames at a fixed rate"""

    def __init__(self, descriptor: DeviceDescriptor, width: int, height: int,
                 fps: float, pixel_format: PixelFormat):
        self.descriptor = descriptor
        self.width = width
        self.height = height
        self.fps = fps
        self.pixel_format = pixel_format
        self.is_open = False
        self._last_grab = 0.0

    @property
    def serial(self) -> str:
        return self.descriptor.serial

    def open(self) -> None:
        self.is_open = True

    def grab(self) -> GrabResult:
        if not self.is_open:
            return GrabResult.failure(errno.EBADF, "Device is not open")
        if self.fps:
            _maintain_fps(self._last_grab, 1.0 / self.fps)
        self._last_grab = time.time()
        # Generate random bytes using os.urandom
        data = os.urandom(self.pixel_format.frame_size(self.width, self.height))
        return GrabResult(
            buffer=np.frombuffer(data, dtype=np.uint8),
            width=self.width,
            height=self.height,
            pixel_format=self.pixel_format,
            timestamp=time.monotonic(),
        )

    def close(self) -> None:
        self.is_open = False


class MockBackend(DeviceBackend):
    name = "mock"

    def __init__(self, count: int = 1, width: int = 640, height: int = 480, fps: float = 30,
                 pixel_format: PixelFormat = PixelFormat.BAYER_RG8):
        super().__init__()
        self.count = count
        self.width = width
        self.height = height
        self.fps = fps
        self.pixel_format = pixel_format

    def enumerate(self) -> List[DeviceDescriptor]:
        self._require_initialized()
        return [DeviceDescriptor(i, f"mock{i}", f"MOCK{i:04d}") for i in range(self.count)]

    def attach(self, descriptor: DeviceDescriptor) -> MockDevice:
        self._require_initialized()
        return MockDevice(descriptor, self.width, self.height, self.fps, self.pixel_format)
