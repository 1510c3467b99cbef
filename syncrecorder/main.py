import argparse
import logging
import platform
import sys
from pathlib import Path
from typing import List, Optional

from .config import PipelineConfig
from .converter import FrameConverter
from .devices import AvBackend, DeviceBackend, MockBackend, runtime
from .errors import PipelineError
from .frame import PixelFormat
from .pipeline import PipelineController
from .sinks import DisplaySink, RecordingSink, Sink, SnapshotSink
from .source import create_sources
from .utils import IS_JETSON, IS_LINUX

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Synchronized multi-camera display and recording")
    parser.add_argument("--config", type=str, default="./config.yaml",
                        help="Path to YAML config (default: ./config.yaml)")
    parser.add_argument("--backend", choices=["av", "mock"], default=None,
                        help="Device backend (overrides config)")
    parser.add_argument("--cameras", nargs="+", default=None,
                        help="Camera IDs or names to capture from, in order (overrides config)")
    parser.add_argument("--count", type=int, default=None,
                        help="Number of sources when no camera IDs are given")
    parser.add_argument("--labels", nargs="+", default=None,
                        help="Source labels used for windows and file names (default: A B C ...)")
    parser.add_argument("--output", type=str, default=None,
                        help="Output directory for recordings (overrides config)")
    parser.add_argument("--fps", type=int, default=None,
                        help="Capture frame rate requested from the devices")
    parser.add_argument("--timeout-ms", type=int, default=None,
                        help="Per-cycle retrieve timeout in milliseconds (default: 5000)")
    parser.add_argument("--duration", type=float, default=None,
                        help="Capture duration in seconds (default: continuous)")
    parser.add_argument("--max-cycles", type=int, default=None,
                        help="Stop after this many cycles")
    parser.add_argument("--concurrent", action="store_true",
                        help="Retrieve from all sources in parallel each cycle")
    parser.add_argument("--no-display", action="store_true", help="Disable the live display")
    parser.add_argument("--no-record", action="store_true", help="Disable video recording")
    parser.add_argument("--snapshots", action="store_true", help="Save periodic JPEG snapshots")
    parser.add_argument("--list-cameras", action="store_true",
                        help="List available cameras and exit")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def build_backend(config: PipelineConfig) -> DeviceBackend:
    if config.backend == "mock":
        mock = config.mock
        return MockBackend(
            count=config.source_count,
            width=int(mock["width"]),
            height=int(mock["height"]),
            fps=float(mock["fps"]),
            pixel_format=PixelFormat.parse(mock["pixel_format"]),
        )
    return AvBackend(fps=config.fps)


def build_sinks(config: PipelineConfig) -> List[Sink]:
    sinks: List[Sink] = []
    display = config.display
    if display["enabled"]:
        sinks.append(DisplaySink(
            scale=float(display["scale"]),
            render_budget=float(display["render_budget_ms"]) / 1000.0,
            quit_key=display.get("quit_key"),
        ))
    recording = config.recording
    if recording["enabled"]:
        sinks.append(RecordingSink(
            recording["output_dir"],
            frame_rate=float(recording["frame_rate"]),
            quality=int(recording["quality"]),
            container=recording["container"],
            codec=recording["codec"],
            pixel_format=config.target_format,
        ))
    snapshots = config.snapshots
    if snapshots["enabled"]:
        sinks.append(SnapshotSink(
            snapshots["output_dir"],
            every=int(snapshots["every"]),
            quality=int(snapshots["quality"]),
            pixel_format=config.target_format,
        ))
    return sinks


def list_cameras(backend: DeviceBackend) -> None:
    print(f"Platform: {platform.system()}")
    print(f"Jetson detected: {IS_JETSON}")
    print("Scanning for available cameras...")
    with runtime(backend):
        descriptors = backend.enumerate()
    if descriptors:
        print(f"Found {len(descriptors)} available cameras:")
        for descriptor in descriptors:
            print(f"  {descriptor.device_id}: {descriptor.name} {descriptor.serial or ''}".rstrip())
    else:
        print("No cameras found")


def run_pipeline(config: PipelineConfig, backend: Optional[DeviceBackend] = None) -> int:
    """Run until stopped. Returns the process exit code."""
    backend = backend or build_backend(config)
    try:
        with runtime(backend):
            sources = create_sources(
                backend,
                device_ids=config.cameras,
                count=config.count,
                labels=config.labels,
                pool_capacity=config.pool_capacity,
            )
            sinks = build_sinks(config)
            pipeline = PipelineController(
                sources,
                sinks,
                converter=FrameConverter(config.target_format),
                timeout=config.timeout,
                concurrent=config.concurrent,
                max_cycles=config.max_cycles,
                duration=config.duration,
            )
            for sink in sinks:
                if isinstance(sink, DisplaySink):
                    sink.on_quit = pipeline.stop
            with pipeline:
                pipeline.run()
    except PipelineError as e:
        logger.error(f"Pipeline aborted: {e}")
        return 1
    except Exception:
        logger.exception("Unrecoverable error")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")

    config_path = Path(args.config) if args.config else None
    try:
        if config_path is not None and config_path.exists():
            config = PipelineConfig.load(args.config)
            logger.info(f"Loaded config from {config_path}")
        else:
            logger.info("Config file not found; using CLI values or defaults")
            config = PipelineConfig()
        config.apply_args(args)
    except PipelineError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    # Only coerce to int on Linux. On Windows/macOS, keep strings to support backend requirements.
    if IS_LINUX and config.cameras:
        try:
            config.cameras = [int(cam) for cam in config.cameras]
        except (ValueError, TypeError):
            pass

    if args.list_cameras:
        list_cameras(build_backend(config))
        return 0

    logger.info("Starting synchronized capture")
    logger.info(f"Backend: {config.backend}, sources: {config.cameras or config.count}")
    logger.info(f"Timeout: {config.timeout_ms} ms, pool capacity: {config.pool_capacity}")
    return run_pipeline(config)


if __name__ == "__main__":
    sys.exit(main())
