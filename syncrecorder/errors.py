"""
Error taxonomy for the acquisition pipeline.

Every error carries a ``fatal`` flag. Recoverable errors are reported and the
pipeline keeps running; fatal ones drain the pipeline and reach the caller.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors"""

    fatal = True


class ConfigError(PipelineError):
    """Invalid configuration value"""


class InvalidState(PipelineError):
    """Operation not allowed in the current lifecycle state"""


class NoDevicesFound(PipelineError):
    """Enumeration yielded no devices or fewer than configured"""

    def __init__(self, wanted: int, found: int, detail: str = ""):
        self.wanted = wanted
        self.found = found
        message = f"Need {wanted} device(s), found {found}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DeviceUnavailable(PipelineError):
    """A device could not be attached or opened"""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Device for source {source} unavailable: {reason}")


class AcquisitionError(PipelineError):
    """A single source failed to deliver a frame for one cycle"""

    fatal = False

    def __init__(self, source: str, message: str, cycle: Optional[int] = None):
        self.source = source
        self.cycle = cycle
        super().__init__(message)


class AcquisitionTimeout(AcquisitionError):
    def __init__(self, source: str, timeout: float, cycle: Optional[int] = None):
        self.timeout = timeout
        super().__init__(source, f"No frame from source {source} within {timeout:.3f}s", cycle)

    def __repr__(self):
        return f"AcquisitionTimeout(source={self.source!r}, cycle={self.cycle})"


class GrabFailed(AcquisitionError):
    def __init__(self, source: str, code: int, description: str, cycle: Optional[int] = None):
        self.code = code
        self.description = description
        super().__init__(source, f"Grab failed on source {source}: 0x{code & 0xFFFFFFFF:x} {description}", cycle)

    def __repr__(self):
        return f"GrabFailed(source={self.source!r}, code=0x{self.code & 0xFFFFFFFF:x}, cycle={self.cycle})"


class CycleFailed(PipelineError):
    """At least one source failed during a cycle; no FrameSet was produced."""

    fatal = False

    def __init__(self, cycle: int, failures: List[AcquisitionError]):
        self.cycle = cycle
        self.failures = list(failures)
        sources = ", ".join(self.failing_sources)
        super().__init__(f"Cycle {cycle} failed for source(s): {sources}")

    @property
    def failing_sources(self) -> List[str]:
        return [failure.source for failure in self.failures]


class UnsupportedFormat(PipelineError):
    def __init__(self, source: str, pixel_format, target):
        self.source = source
        self.pixel_format = pixel_format
        self.target = target
        super().__init__(f"No conversion from {pixel_format} to {target} for source {source}")


class SinkWriteError(PipelineError):
    """A sink failed to consume a frame; the sink gets disabled."""

    fatal = False

    def __init__(self, sink: str, reason: str, source: Optional[str] = None):
        self.sink = sink
        self.source = source
        self.reason = reason
        where = f" (source {source})" if source is not None else ""
        super().__init__(f"Sink {sink} write failed{where}: {reason}")


class FatalRuntimeError(PipelineError):
    """Unclassified failure escaping the acquisition loop"""


def is_fatal(exc: BaseException) -> bool:
    """Unknown exception types are treated as fatal."""
    return getattr(exc, "fatal", True)
