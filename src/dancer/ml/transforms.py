"""Image transform stage: decode raw planes, rotate, mirror.

All buffers are HxWx4 RGBA uint8 numpy arrays wrapped in ``PixelBuffer``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from dancer.ml.errors import InvalidFrameError
from dancer.ml.frames import VALID_ROTATIONS, PixelFormat

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from dancer.ml.frames import ImagePlane, RawImage

logger = logging.getLogger(__name__)

RGBA_CHANNELS = 4

_ROTATE_CODES: dict[int, int] = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


@dataclass(frozen=True)
class PixelBuffer:
    """Decoded RGBA bitmap with explicit dimensions."""

    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != RGBA_CHANNELS:
            raise ValueError(f"Expected HxWx4 RGBA pixels, got shape {self.pixels.shape}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(image: RawImage) -> PixelBuffer:
    """Decode a raw image's planes into an RGBA pixel buffer.

    Raises:
        InvalidFrameError: If the planes are missing or malformed, or the
            format is not supported.
    """
    if not image.planes:
        raise InvalidFrameError("Image has no planes")

    if image.pixel_format is PixelFormat.RGBA_8888:
        pixels = _decode_rgba(image.planes[0], image.width, image.height)
    elif image.pixel_format is PixelFormat.YUV_420_888:
        pixels = _decode_yuv_420(image.planes, image.width, image.height)
    elif image.pixel_format is PixelFormat.JPEG:
        # rotation_degrees already describes the orientation of camera frames.
        pixels = decode_encoded(image.planes[0].data, apply_orientation=False)
    else:
        raise InvalidFrameError(f"Unsupported pixel format: {image.pixel_format}")
    return PixelBuffer(pixels)


def decode_encoded(data: bytes, *, apply_orientation: bool = True) -> NDArray[np.uint8]:
    """Decode compressed image bytes (JPEG, PNG, ...) to RGBA.

    With ``apply_orientation`` the EXIF orientation tag, if any, is applied;
    otherwise pixels come back in stored order.
    """
    if not data:
        raise InvalidFrameError("Encoded image is empty")
    flags = cv2.IMREAD_COLOR
    if not apply_orientation:
        flags |= cv2.IMREAD_IGNORE_ORIENTATION
    bgr = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), flags)
    if bgr is None:
        raise InvalidFrameError("Could not decode image bytes")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGBA)


def _strided_rows(plane: ImagePlane, rows: int, cols: int) -> NDArray[np.uint8]:
    """Return a dense ``rows x cols x pixel_stride`` view of a plane.

    The last row of a camera buffer is often shorter than ``row_stride``;
    missing bytes are zero-padded and any excess is truncated.
    """
    pixel_stride = plane.pixel_stride
    row_stride = plane.row_stride
    if pixel_stride <= 0 or row_stride < cols * pixel_stride:
        raise InvalidFrameError(
            f"Malformed plane: row_stride={row_stride}, pixel_stride={pixel_stride}, width={cols}"
        )

    expected = row_stride * rows
    # Interleaved chroma planes end on the last sample, not the last stride.
    minimum = row_stride * (rows - 1) + (cols - 1) * pixel_stride + 1
    raw = np.frombuffer(plane.data, dtype=np.uint8)
    if raw.size < minimum:
        raise InvalidFrameError(f"Plane holds {raw.size} bytes, needs at least {minimum}")
    if raw.size < expected:
        raw = np.concatenate([raw, np.zeros(expected - raw.size, dtype=np.uint8)])
    elif raw.size > expected:
        raw = raw[:expected]

    return raw.reshape(rows, row_stride)[:, : cols * pixel_stride].reshape(rows, cols, pixel_stride)


def _decode_rgba(plane: ImagePlane, width: int, height: int) -> NDArray[np.uint8]:
    if plane.pixel_stride != RGBA_CHANNELS:
        raise InvalidFrameError(f"RGBA_8888 needs pixel_stride 4, got {plane.pixel_stride}")
    return np.ascontiguousarray(_strided_rows(plane, height, width))


def _decode_yuv_420(planes: tuple[ImagePlane, ...], width: int, height: int) -> NDArray[np.uint8]:
    if len(planes) < 3:
        raise InvalidFrameError(f"YUV_420_888 needs 3 planes, got {len(planes)}")

    y_plane, u_plane, v_plane = planes[:3]
    chroma_w = (width + 1) // 2
    chroma_h = (height + 1) // 2

    y = _strided_rows(y_plane, height, width)[:, :, 0]
    u = _strided_rows(u_plane, chroma_h, chroma_w)[:, :, 0]
    v = _strided_rows(v_plane, chroma_h, chroma_w)[:, :, 0]

    u_full = cv2.resize(u, (width, height), interpolation=cv2.INTER_NEAREST)
    v_full = cv2.resize(v, (width, height), interpolation=cv2.INTER_NEAREST)
    # Camera YUV is full-range BT.601, which is what OpenCV calls YCrCb.
    ycrcb = np.dstack([y, v_full, u_full])
    rgb = cv2.cvtColor(ycrcb, cv2.COLOR_YCrCb2RGB)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2RGBA)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


def rotate(buffer: PixelBuffer, degrees: int) -> PixelBuffer:
    """Rotate clockwise by exactly 0, 90, 180 or 270 degrees."""
    if degrees not in VALID_ROTATIONS:
        raise ValueError(f"Rotation must be one of 0, 90, 180, 270, got {degrees}")
    if degrees == 0:
        return buffer
    return PixelBuffer(cv2.rotate(buffer.pixels, _ROTATE_CODES[degrees]))


def mirror_horizontal(buffer: PixelBuffer) -> PixelBuffer:
    """Flip about the vertical center line."""
    return PixelBuffer(cv2.flip(buffer.pixels, 1))


class ImageTransformer:
    """Decode, rotate, and optionally mirror a raw image."""

    def apply(self, image: RawImage, *, mirror: bool = False) -> PixelBuffer:
        buffer = rotate(decode(image), image.rotation_degrees)
        if mirror:
            buffer = mirror_horizontal(buffer)
        logger.debug(
            "Transformed %sx%s %s frame (rotation=%s, mirror=%s) to %sx%s",
            image.width,
            image.height,
            image.pixel_format,
            image.rotation_degrees,
            mirror,
            buffer.width,
            buffer.height,
        )
        return buffer
