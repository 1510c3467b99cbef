"""
Synchronized multi-camera capture package
Acquires frames from several cameras in lock-step, converts them to one pixel
format and fans each synchronized frame set out to display and recording sinks.
Uses PyAV for capture and encoding, OpenCV for conversion and display, and
Pillow for still images.
"""

from .acquirer import SynchronizedAcquirer
from .converter import FrameConverter
from .devices import AvBackend, MockBackend, runtime
from .errors import (
    AcquisitionTimeout,
    CycleFailed,
    DeviceUnavailable,
    FatalRuntimeError,
    GrabFailed,
    NoDevicesFound,
    PipelineError,
    SinkWriteError,
    UnsupportedFormat,
)
from .frame import Frame, FrameSet, PixelFormat
from .pipeline import PipelineController, PipelineState
from .sinks import DisplaySink, RecordingSink, Sink, SnapshotSink
from .source import SourceHandle, SourceState, create_sources
from . import utils
from .utils import IS_WINDOWS, IS_LINUX, IS_JETSON

__all__ = [
    "SynchronizedAcquirer",
    "FrameConverter",
    "AvBackend",
    "MockBackend",
    "runtime",
    "AcquisitionTimeout",
    "CycleFailed",
    "DeviceUnavailable",
    "FatalRuntimeError",
    "GrabFailed",
    "NoDevicesFound",
    "PipelineError",
    "SinkWriteError",
    "UnsupportedFormat",
    "Frame",
    "FrameSet",
    "PixelFormat",
    "PipelineController",
    "PipelineState",
    "DisplaySink",
    "RecordingSink",
    "Sink",
    "SnapshotSink",
    "SourceHandle",
    "SourceState",
    "create_sources",
    "utils",
    "IS_WINDOWS",
    "IS_LINUX",
    "IS_JETSON",
]
