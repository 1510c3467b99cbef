import os
import platform
import string
import time
from typing import Optional

import yaml

# Platform detection
IS_WINDOWS = platform.system() == "Windows"
IS_LINUX = platform.system() == "Linux"
IS_JETSON = os.path.exists("/etc/nv_tegra_release") if IS_LINUX else False


def _maintain_fps(loop_start_time: float, frame_interval: float) -> None:
    elapsed = time.time() - loop_start_time
    if elapsed < frame_interval:
        time.sleep(frame_interval - elapsed)


def should_stop(start_time: float, duration: Optional[float]) -> bool:
    return duration is not None and (time.time() - start_time) >= duration


def get_setting(cli_value, config_value, default):
    return cli_value if cli_value is not None else (config_value if config_value is not None else default)


def load_config(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}


def default_label(index: int) -> str:
    """A, B, C, ... then cam26, cam27, ..."""
    if index < len(string.ascii_uppercase):
        return string.ascii_uppercase[index]
    return f"cam{index}"


def safe_name(value) -> str:
    return str(value).replace(" ", "_").replace(":", "_").replace("/", "_")


def get_camera_device_path(camera_id) -> str:
    """Get the appropriate camera device path based on the platform"""
    if IS_WINDOWS:
        return f"video={camera_id}"
    if isinstance(camera_id, str) and camera_id.startswith("/dev/"):
        return camera_id
    return f"/dev/video{camera_id}"


def get_platform_backend() -> str:
    """Return the single appropriate AV input backend for the current platform."""
    if IS_WINDOWS:
        return 'dshow'
    elif IS_LINUX:
        return 'v4l2'
    else:
        # macOS or others
        return 'avfoundation'
