from __future__ import annotations

import queue
import threading
import time
from typing import Dict, List, Optional

import numpy as np
import pytest

from syncrecorder.devices import DeviceBackend, DeviceDescriptor, GrabResult
from syncrecorder.errors import AcquisitionTimeout, GrabFailed
from syncrecorder.frame import Frame, PixelFormat
from syncrecorder.pool import LatestImagePool


def make_frame(source: str = "A", sequence: int = 1, width: int = 8, height: int = 6,
               pixel_format: PixelFormat = PixelFormat.BGR8, fill: int = 0, cycle: Optional[int] = None) -> Frame:
    buffer = np.full(pixel_format.frame_size(width, height), fill, dtype=np.uint8)
    return Frame(source, width, height, pixel_format, buffer, sequence, cycle=cycle)


class ScriptedSource:
    """Stand-in for SourceHandle whose failures are scripted per retrieve call."""

    def __init__(self, label: str, failures: Optional[Dict[int, object]] = None, width: int = 8,
                 height: int = 6, pixel_format: PixelFormat = PixelFormat.BGR8, pool_capacity: int = 4,
                 open_error: Optional[Exception] = None):
        self.label = label
        self.width = width
        self.height = height
        self.pixel_format = pixel_format
        self.failures = failures or {}
        self.open_error = open_error
        self.pool = LatestImagePool(pool_capacity)
        self.calls = 0
        self.sequence = 0
        self.open_count = 0
        self.stop_count = 0
        self.close_count = 0
        self.state = "closed"
        self.max_in_flight = 0

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.open_count += 1
        self.state = "open"

    def start_acquisition(self):
        self.state = "acquiring"

    def stop_acquisition(self):
        if self.state == "acquiring":
            self.stop_count += 1
            self.state = "stopped"

    def interrupt(self):
        self.pool.close()

    def close(self):
        if self.state == "closed":
            return
        self.stop_acquisition()
        self.close_count += 1
        self.state = "closed"

    def retrieve(self, timeout):
        call = self.calls
        self.calls += 1
        failure = self.failures.get(call)
        if failure == "timeout":
            raise AcquisitionTimeout(self.label, timeout)
        if failure == "grab":
            raise GrabFailed(self.label, 0xE1000014, "Buffer incomplete")
        if isinstance(failure, BaseException):
            raise failure
        self.sequence += 1
        frame = make_frame(self.label, self.sequence, self.width, self.height, self.pixel_format,
                           fill=self.sequence % 256)
        if not self.pool.put(frame):
            raise AcquisitionTimeout(self.label, timeout)
        frame = self.pool.get(0)
        self.max_in_flight = max(self.max_in_flight, self.pool.in_flight)
        return frame


class FakeRenderer:
    def __init__(self, keys: Optional[List[str]] = None, delay: float = 0.0):
        self.shown: List[tuple] = []
        self.keys = list(keys or [])
        self.delay = delay
        self.threads = set()
        self.closed = 0

    def show(self, window_id, image):
        self.threads.add(threading.get_ident())
        if self.delay:
            time.sleep(self.delay)
        self.shown.append((window_id, image.shape))

    def poll_key(self):
        self.threads.add(threading.get_ident())
        return self.keys.pop(0) if self.keys else None

    def close(self):
        self.threads.add(threading.get_ident())
        self.closed += 1


class FakeWriter:
    def __init__(self, fail_on: Optional[set] = None):
        self.fail_on = fail_on or set()
        self.path = None
        self.params = None
        self.frames: List[tuple] = []
        self.appends = 0
        self.close_count = 0

    def open(self, path, width, height, pixel_format, frame_rate, quality):
        self.path = path
        self.params = (width, height, pixel_format, frame_rate, quality)

    def append(self, frame):
        self.appends += 1
        if self.appends in self.fail_on:
            raise OSError(28, "No space left on device")
        self.frames.append((frame.source, frame.sequence, frame.cycle, frame.buffer.shape))

    def close(self):
        self.close_count += 1


class WriterFactory:
    def __init__(self, fail_on: Optional[set] = None):
        self.fail_on = fail_on
        self.writers: List[FakeWriter] = []

    def __call__(self):
        writer = FakeWriter(self.fail_on)
        self.writers.append(writer)
        return writer


class QueueDevice:
    """Device whose grab results are pushed by the test."""

    def __init__(self, descriptor, width=8, height=6, open_error=None):
        self.descriptor = descriptor
        self.width = width
        self.height = height
        self.serial = descriptor.serial
        self.results = queue.Queue()
        self.open_error = open_error
        self.closed = False

    def open(self):
        if self.open_error is not None:
            raise self.open_error

    def push(self, count=1, pixel_format=PixelFormat.MONO8):
        for _ in range(count):
            buffer = np.zeros(pixel_format.frame_size(self.width, self.height), dtype=np.uint8)
            self.results.put(GrabResult(buffer, self.width, self.height, pixel_format))

    def push_failure(self, code, description):
        self.results.put(GrabResult.failure(code, description, self.width, self.height))

    def grab(self):
        try:
            return self.results.get(timeout=0.01)
        except queue.Empty:
            return None

    def close(self):
        self.closed = True


class QueueBackend(DeviceBackend):
    name = "queue"

    def __init__(self, count=3, open_error=None):
        super().__init__()
        self.count = count
        self.open_error = open_error
        self.devices: Dict[object, QueueDevice] = {}

    def enumerate(self):
        self._require_initialized()
        return [DeviceDescriptor(i, f"queue{i}", f"SN{i:04d}") for i in range(self.count)]

    def attach(self, descriptor):
        self._require_initialized()
        device = QueueDevice(descriptor, open_error=self.open_error)
        self.devices[descriptor.device_id] = device
        return device


@pytest.fixture
def queue_backend():
    backend = QueueBackend()
    backend.initialize()
    yield backend
    backend.terminate()


@pytest.fixture
def writer_factory():
    return WriterFactory()
