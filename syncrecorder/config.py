import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ConfigError
from .frame import PixelFormat
from .utils import get_setting, load_config

logger = logging.getLogger(__name__)

BACKENDS = ("av", "mock")

DISPLAY_DEFAULTS = {"enabled": True, "scale": 0.5, "render_budget_ms": 10, "quit_key": "q"}
RECORDING_DEFAULTS = {"enabled": True, "output_dir": "./recordings", "frame_rate": 20, "quality": 90,
                      "container": "mp4", "codec": "mpeg4"}
SNAPSHOT_DEFAULTS = {"enabled": False, "output_dir": "./frames", "every": 30, "quality": 95}
MOCK_DEFAULTS = {"width": 640, "height": 480, "fps": 30, "pixel_format": "bayer_rg8"}


def _section(config_data: dict, name: str, defaults: dict) -> dict:
    section = config_data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return {**defaults, **section}


def _optional(value, kind):
    return None if value is None else kind(value)


@dataclass
class PipelineConfig:
    backend: str = "av"
    cameras: Optional[List] = None
    count: int = 1
    labels: Optional[List[str]] = None
    pool_capacity: int = 4
    timeout_ms: int = 5000
    target_format: PixelFormat = PixelFormat.BGR8
    concurrent: bool = False
    max_cycles: Optional[int] = None
    duration: Optional[float] = None
    fps: int = 30
    display: Dict = field(default_factory=lambda: dict(DISPLAY_DEFAULTS))
    recording: Dict = field(default_factory=lambda: dict(RECORDING_DEFAULTS))
    snapshots: Dict = field(default_factory=lambda: dict(SNAPSHOT_DEFAULTS))
    mock: Dict = field(default_factory=lambda: dict(MOCK_DEFAULTS))

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def source_count(self) -> int:
        return len(self.cameras) if self.cameras else self.count

    @classmethod
    def from_dict(cls, config_data: Optional[dict]) -> "PipelineConfig":
        config_data = config_data or {}
        try:
            target = PixelFormat.parse(config_data.get("target_format") or "bgr8")
            config = cls(
                backend=str(config_data.get("backend", "av")),
                cameras=config_data.get("cameras"),
                count=int(config_data.get("count", 1)),
                labels=config_data.get("labels"),
                pool_capacity=int(config_data.get("pool_capacity", 4)),
                timeout_ms=int(config_data.get("timeout_ms", 5000)),
                target_format=target,
                concurrent=bool(config_data.get("concurrent", False)),
                max_cycles=_optional(config_data.get("max_cycles"), int),
                duration=_optional(config_data.get("duration"), float),
                fps=int(config_data.get("fps", 30)),
                display=_section(config_data, "display", DISPLAY_DEFAULTS),
                recording=_section(config_data, "recording", RECORDING_DEFAULTS),
                snapshots=_section(config_data, "snapshots", SNAPSHOT_DEFAULTS),
                mock=_section(config_data, "mock", MOCK_DEFAULTS),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def load(cls, path: Optional[str]) -> "PipelineConfig":
        return cls.from_dict(load_config(path) if path else {})

    def apply_args(self, args) -> "PipelineConfig":
        """CLI values win over config values."""
        self.backend = get_setting(getattr(args, "backend", None), self.backend, "av")
        self.cameras = get_setting(getattr(args, "cameras", None), self.cameras, None)
        self.count = int(get_setting(getattr(args, "count", None), self.count, 1))
        self.labels = get_setting(getattr(args, "labels", None), self.labels, None)
        self.fps = int(get_setting(getattr(args, "fps", None), self.fps, 30))
        self.timeout_ms = int(get_setting(getattr(args, "timeout_ms", None), self.timeout_ms, 5000))
        self.duration = get_setting(getattr(args, "duration", None), self.duration, None)
        self.max_cycles = get_setting(getattr(args, "max_cycles", None), self.max_cycles, None)
        self.recording["output_dir"] = get_setting(getattr(args, "output", None),
                                                   self.recording.get("output_dir"), "./recordings")
        if getattr(args, "concurrent", False):
            self.concurrent = True
        if getattr(args, "no_display", False):
            self.display["enabled"] = False
        if getattr(args, "no_record", False):
            self.recording["enabled"] = False
        if getattr(args, "snapshots", False):
            self.snapshots["enabled"] = True
        self.validate()
        return self

    def validate(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(f"Unknown backend '{self.backend}', expected one of {BACKENDS}")
        if self.source_count < 1:
            raise ConfigError("At least one source is required")
        if self.pool_capacity < 1:
            raise ConfigError("pool_capacity must be at least 1")
        if self.timeout_ms <= 0:
            raise ConfigError("timeout_ms must be positive")
        if self.target_format not in (PixelFormat.BGR8, PixelFormat.RGB8):
            raise ConfigError(f"target_format must be bgr8 or rgb8, not {self.target_format.label}")
        if not 0 <= int(self.recording["quality"]) <= 100:
            raise ConfigError("recording.quality must be within 0-100")
        if float(self.recording["frame_rate"]) <= 0:
            raise ConfigError("recording.frame_rate must be positive")
        if float(self.display["scale"]) <= 0:
            raise ConfigError("display.scale must be positive")
        if self.max_cycles is not None and int(self.max_cycles) < 0:
            raise ConfigError("max_cycles must not be negative")
        try:
            PixelFormat.parse(self.mock["pixel_format"])
        except ValueError as e:
            raise ConfigError(str(e)) from e
