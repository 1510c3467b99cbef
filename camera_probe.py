#!/usr/bin/env python3
"""
Camera Probe Script
Tests camera connectivity through the capture backend and reports frame rates.
"""

import argparse
import time
from pathlib import Path

import cv2

from syncrecorder.converter import FrameConverter
from syncrecorder.devices import AvBackend, MockBackend, runtime
from syncrecorder.errors import PipelineError
from syncrecorder.source import SourceHandle
from syncrecorder.utils import default_label


def probe_camera(backend, descriptor, label: str, duration: int = 5) -> bool:
    """Test if a camera is accessible and working"""
    print(f"Testing camera {descriptor.name}...")
    source = SourceHandle(backend, descriptor, label)
    try:
        source.open()
        source.start_acquisition()
        print(f"  ✓ Camera {descriptor.name} opened ({source.width}x{source.height})")

        frame = source.retrieve(timeout=5.0)
        try:
            converted = FrameConverter().convert(frame)
            test_dir = Path("test_frames")
            test_dir.mkdir(exist_ok=True)
            test_file = test_dir / f"test_camera_{label}.jpg"
            cv2.imwrite(str(test_file), converted.buffer)
            print(f"  ✓ Captured {frame.pixel_format.label} frame, saved to {test_file}")
        finally:
            frame.release()

        start_time = time.time()
        frame_count = 0
        while time.time() - start_time < duration:
            try:
                frame = source.retrieve(timeout=1.0)
            except PipelineError as e:
                print(f"  ✗ {e}")
                continue
            frame.release()
            frame_count += 1

        actual_fps = frame_count / duration
        print(f"  ✓ Retrieved {frame_count} frames in {duration}s ({actual_fps:.1f} FPS), "
              f"{source.dropped} dropped by the pool")
        return True
    except PipelineError as e:
        print(f"  ✗ Error testing camera {descriptor.name}: {e}")
        return False
    finally:
        source.close()


def main():
    parser = argparse.ArgumentParser(description="Test camera connectivity")
    parser.add_argument("--mock", type=int, default=0,
                       help="Test this many synthetic cameras instead of real devices")
    parser.add_argument("--duration", type=int, default=5,
                       help="Test duration in seconds (default: 5)")

    args = parser.parse_args()

    print("=== Camera Probe Tool ===\n")

    backend = MockBackend(count=args.mock) if args.mock else AvBackend()
    with runtime(backend):
        print("1. Scanning for available cameras...")
        available = backend.enumerate()
        print(f"\nFound {len(available)} available cameras: {[d.name for d in available]}")

        if available:
            print("\n2. Testing available cameras...")
            for index, descriptor in enumerate(available):
                probe_camera(backend, descriptor, default_label(index), args.duration)
                print()

    print("Probe completed!")


if __name__ == "__main__":
    main()
