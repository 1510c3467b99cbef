import logging
import threading
from enum import Enum
from typing import List, Optional, Sequence

from .devices import DeviceBackend, DeviceDescriptor, GrabResult
from .errors import (
    AcquisitionTimeout,
    ConfigError,
    DeviceUnavailable,
    GrabFailed,
    InvalidState,
    NoDevicesFound,
    PipelineError,
)
from .frame import Frame
from .pool import LatestImagePool
from .utils import default_label

logger = logging.getLogger(__name__)


class SourceState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    ACQUIRING = "acquiring"
    STOPPED = "stopped"


class SourceHandle:
    """Acquisition lifecycle and buffer pool of one device.

    While acquiring, a grab thread pulls results from the device and queues
    them in a ``LatestImagePool``; ``retrieve`` hands them out in order. The
    device is never closed while the grab thread is inside ``grab()``.
    """

    def __init__(self, backend: DeviceBackend, descriptor: DeviceDescriptor, label: str,
                 pool_capacity: int = 4, join_timeout: float = 2.0, error_backoff: float = 0.05):
        self.backend = backend
        self.descriptor = descriptor
        self.label = label
        self.pool = LatestImagePool(pool_capacity)
        self.join_timeout = join_timeout
        self.error_backoff = error_backoff
        self.state = SourceState.CLOSED
        self.device = None
        self.close_count = 0
        self._sequence = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._device_lock = threading.Lock()
        self._grabbing = False
        self._orphan = None

    def __repr__(self):
        return f"SourceHandle({self.label!r}, state={self.state.value})"

    @property
    def width(self) -> int:
        return self.device.width if self.device else 0

    @property
    def height(self) -> int:
        return self.device.height if self.device else 0

    @property
    def dropped(self) -> int:
        return self.pool.dropped

    def open(self) -> None:
        if self.state is not SourceState.CLOSED:
            raise InvalidState(f"Source {self.label} cannot open from state {self.state.value}")
        try:
            device = self.backend.attach(self.descriptor)
            device.open()
        except PipelineError:
            raise
        except Exception as e:
            raise DeviceUnavailable(self.label, str(e)) from e
        self.device = device
        self.state = SourceState.OPEN
        logger.info(f"Using device {self.label}: {device.serial} ({self.width}x{self.height})")

    def start_acquisition(self) -> None:
        if self.state is SourceState.ACQUIRING:
            return
        if self.state not in (SourceState.OPEN, SourceState.STOPPED):
            raise InvalidState(f"Source {self.label} cannot start from state {self.state.value}")
        if self._grabbing:
            raise InvalidState(f"Source {self.label} grab thread is still inside grab()")
        self._stop_event = threading.Event()
        self.pool.reopen()
        self._grabbing = True
        self._thread = threading.Thread(
            target=self._grab_loop,
            args=(self.device, self._stop_event),
            name=f"grab-{self.label}",
            daemon=True
        )
        self.state = SourceState.ACQUIRING
        self._thread.start()
        logger.debug(f"Source {self.label} acquiring")

    def stop_acquisition(self) -> None:
        if self.state is not SourceState.ACQUIRING:
            return
        self.state = SourceState.STOPPED
        self._stop_event.set()
        self.pool.close()
        if self._thread is not None:
            self._thread.join(timeout=self.join_timeout)
            if self._thread.is_alive():
                logger.warning(f"Grab thread for source {self.label} did not exit within {self.join_timeout}s")
            self._thread = None
        logger.debug(f"Source {self.label} stopped")

    def interrupt(self) -> None:
        """Wake a pending ``retrieve``; it fails with AcquisitionTimeout."""
        self.pool.close()

    def close(self) -> None:
        if self.state is SourceState.CLOSED:
            return
        self.stop_acquisition()
        device, self.device = self.device, None
        deferred = False
        with self._device_lock:
            if self._grabbing:
                # grab() still running, the grab thread closes the device when it returns
                self._orphan, device, deferred = device, None, True
        try:
            if deferred:
                logger.warning(f"Source {self.label}: device close deferred until grab() returns")
            elif device is not None:
                device.close()
        finally:
            self.state = SourceState.CLOSED
            self.close_count += 1
            logger.info(f"Source {self.label} closed ({self.pool.dropped} frame(s) dropped by pool)")

    def retrieve(self, timeout: float) -> Frame:
        """Next grabbed frame, waiting at most ``timeout`` seconds."""
        if self.state is not SourceState.ACQUIRING:
            raise InvalidState(f"Source {self.label} is not acquiring")
        frame = self.pool.get(timeout)
        if frame is None:
            raise AcquisitionTimeout(self.label, timeout)
        if not frame.success:
            frame.release()
            code = frame.error_code if frame.error_code is not None else -1
            raise GrabFailed(self.label, code, frame.error_description or "")
        return frame

    def _grab_loop(self, device, stop_event: threading.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    result = device.grab()
                except Exception as e:
                    if stop_event.is_set():
                        break
                    result = GrabResult.failure(-1, f"{type(e).__name__}: {e}")
                    stop_event.wait(self.error_backoff)
                if stop_event.is_set():
                    break
                if result is None:
                    continue
                self._publish(result)
        finally:
            with self._device_lock:
                self._grabbing = False
                orphan, self._orphan = self._orphan, None
            if orphan is not None:
                try:
                    orphan.close()
                except Exception as e:
                    logger.error(f"Failed to close device of source {self.label}: {e}")
                else:
                    logger.info(f"Source {self.label}: deferred device close done")

    def _publish(self, result: GrabResult) -> None:
        self._sequence += 1
        frame = Frame(
            source=self.label,
            width=result.width,
            height=result.height,
            pixel_format=result.pixel_format,
            buffer=result.buffer,
            sequence=self._sequence,
            success=result.success,
            error_code=result.error_code,
            error_description=result.error_description,
        )
        if result.timestamp is not None:
            frame.timestamp = result.timestamp
        if not self.pool.put(frame):
            logger.debug(f"Source {self.label}: frame {frame.sequence} dropped, pool saturated")


def _select(descriptors: List[DeviceDescriptor], device_ids: Sequence) -> List[DeviceDescriptor]:
    lookup = {}
    for descriptor in descriptors:
        lookup.setdefault(str(descriptor.device_id), descriptor)
        lookup.setdefault(str(descriptor.name), descriptor)
        if descriptor.serial:
            lookup.setdefault(str(descriptor.serial), descriptor)
    missing = [str(i) for i in device_ids if str(i) not in lookup]
    if missing:
        raise NoDevicesFound(len(device_ids), len(descriptors), f"not found: {', '.join(missing)}")
    return [lookup[str(i)] for i in device_ids]


def create_sources(backend: DeviceBackend, device_ids: Optional[Sequence] = None,
                   count: Optional[int] = None, labels: Optional[Sequence[str]] = None,
                   pool_capacity: int = 4) -> List[SourceHandle]:
    """Enumerate devices once and build one closed SourceHandle per configured source.

    With explicit ``device_ids`` the matching devices are used in that order,
    otherwise the first ``count`` enumerated devices.
    """
    wanted = len(device_ids) if device_ids else (count or 1)
    if labels and len(labels) != wanted:
        raise ConfigError(f"{len(labels)} label(s) given for {wanted} source(s)")
    labels = [str(label) for label in labels] if labels else [default_label(i) for i in range(wanted)]
    if len(set(labels)) != len(labels):
        raise ConfigError(f"Source labels must be unique: {labels}")

    descriptors = backend.enumerate()
    logger.info(f"Found {len(descriptors)} device(s): {[d.name for d in descriptors]}")
    if len(descriptors) < wanted:
        raise NoDevicesFound(wanted, len(descriptors))

    selected = _select(descriptors, device_ids) if device_ids else descriptors[:wanted]
    return [
        SourceHandle(backend, descriptor, label, pool_capacity)
        for descriptor, label in zip(selected, labels)
    ]
