import logging
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .errors import UnsupportedFormat
from .frame import Frame, PixelFormat

logger = logging.getLogger(__name__)

# (source format, target format) -> OpenCV color conversion code, None means copy.
# OpenCV names Bayer patterns after the second row, hence RGGB -> BayerBG.
CONVERSIONS: Dict[Tuple[PixelFormat, PixelFormat], Optional[int]] = {
    (PixelFormat.BGR8, PixelFormat.BGR8): None,
    (PixelFormat.RGB8, PixelFormat.BGR8): cv2.COLOR_RGB2BGR,
    (PixelFormat.BGRA8, PixelFormat.BGR8): cv2.COLOR_BGRA2BGR,
    (PixelFormat.RGBA8, PixelFormat.BGR8): cv2.COLOR_RGBA2BGR,
    (PixelFormat.MONO8, PixelFormat.BGR8): cv2.COLOR_GRAY2BGR,
    (PixelFormat.BAYER_RG8, PixelFormat.BGR8): cv2.COLOR_BayerBG2BGR,
    (PixelFormat.BAYER_BG8, PixelFormat.BGR8): cv2.COLOR_BayerRG2BGR,
    (PixelFormat.BAYER_GB8, PixelFormat.BGR8): cv2.COLOR_BayerGR2BGR,
    (PixelFormat.BAYER_GR8, PixelFormat.BGR8): cv2.COLOR_BayerGB2BGR,
    (PixelFormat.YUV422_YUYV, PixelFormat.BGR8): cv2.COLOR_YUV2BGR_YUYV,
    (PixelFormat.YUV422_UYVY, PixelFormat.BGR8): cv2.COLOR_YUV2BGR_UYVY,

    (PixelFormat.RGB8, PixelFormat.RGB8): None,
    (PixelFormat.BGR8, PixelFormat.RGB8): cv2.COLOR_BGR2RGB,
    (PixelFormat.BGRA8, PixelFormat.RGB8): cv2.COLOR_BGRA2RGB,
    (PixelFormat.RGBA8, PixelFormat.RGB8): cv2.COLOR_RGBA2RGB,
    (PixelFormat.MONO8, PixelFormat.RGB8): cv2.COLOR_GRAY2RGB,
    (PixelFormat.BAYER_RG8, PixelFormat.RGB8): cv2.COLOR_BayerBG2RGB,
    (PixelFormat.BAYER_BG8, PixelFormat.RGB8): cv2.COLOR_BayerRG2RGB,
    (PixelFormat.BAYER_GB8, PixelFormat.RGB8): cv2.COLOR_BayerGR2RGB,
    (PixelFormat.BAYER_GR8, PixelFormat.RGB8): cv2.COLOR_BayerGB2RGB,
    (PixelFormat.YUV422_YUYV, PixelFormat.RGB8): cv2.COLOR_YUV2RGB_YUYV,
    (PixelFormat.YUV422_UYVY, PixelFormat.RGB8): cv2.COLOR_YUV2RGB_UYVY,
}

CANONICAL_FORMATS = (PixelFormat.BGR8, PixelFormat.RGB8)


def raw_view(frame: Frame) -> np.ndarray:
    """Shape the flat raw buffer of a frame as an image array"""
    fmt = frame.pixel_format
    expected = fmt.frame_size(frame.width, frame.height)
    buffer = np.asarray(frame.buffer, dtype=np.uint8)
    if buffer.size != expected:
        raise ValueError(
            f"Frame {frame.sequence} from source {frame.source}: {buffer.size} bytes, "
            f"expected {expected} for {frame.width}x{frame.height} {fmt.label}"
        )
    if fmt.bytes_per_pixel == 1:
        return buffer.reshape(frame.height, frame.width)
    return buffer.reshape(frame.height, frame.width, fmt.bytes_per_pixel)


class FrameConverter:
    """Converts raw frames to one canonical pixel format.

    Output buffers are kept per source and reused, so a converted frame is
    valid until the next conversion for the same source.
    """

    def __init__(self, target: PixelFormat = PixelFormat.BGR8, conversions=None, reuse_buffers: bool = True):
        if target not in CANONICAL_FORMATS:
            raise ValueError(f"Unsupported target format: {target.label}")
        self.target = target
        self.conversions = CONVERSIONS if conversions is None else conversions
        self.reuse_buffers = reuse_buffers
        self._buffers: Dict[str, np.ndarray] = {}

    def supports(self, pixel_format: PixelFormat) -> bool:
        return (pixel_format, self.target) in self.conversions

    def convert(self, frame: Frame) -> Frame:
        key = (frame.pixel_format, self.target)
        if key not in self.conversions:
            raise UnsupportedFormat(frame.source, frame.pixel_format.label, self.target.label)
        code = self.conversions[key]
        src = raw_view(frame)
        dst = self._output_buffer(frame)
        if code is None:
            np.copyto(dst, src)
        else:
            dst = cv2.cvtColor(src, code, dst=dst)
        return frame.derive(dst, self.target)

    def _output_buffer(self, frame: Frame) -> np.ndarray:
        shape = (frame.height, frame.width, self.target.channels)
        if not self.reuse_buffers:
            return np.empty(shape, dtype=np.uint8)
        buffer = self._buffers.get(frame.source)
        if buffer is None or buffer.shape != shape:
            buffer = np.empty(shape, dtype=np.uint8)
            self._buffers[frame.source] = buffer
            logger.debug(f"Allocated {shape} conversion buffer for source {frame.source}")
        return buffer
