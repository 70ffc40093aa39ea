"""Camera frame adapter.

Converts platform camera frames (anything shaped like a CameraX ``ImageProxy``)
into the framework-agnostic ``RawImage`` used by the rest of the pipeline.
Plane buffers of a native frame are only valid while the frame is open, so
every plane is copied here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from dancer.ml.errors import InvalidFrameError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

VALID_ROTATIONS: frozenset[int] = frozenset({0, 90, 180, 270})


class PixelFormat(StrEnum):
    YUV_420_888 = "yuv_420_888"
    RGBA_8888 = "rgba_8888"
    JPEG = "jpeg"
    UNKNOWN = "unknown"


# android.graphics.ImageFormat / PixelFormat constants
ANDROID_FORMAT_CODES: dict[int, PixelFormat] = {
    0x23: PixelFormat.YUV_420_888,
    0x100: PixelFormat.JPEG,
    0x1: PixelFormat.RGBA_8888,
}


@dataclass(frozen=True)
class ImagePlane:
    """One plane of pixel data with its stride information."""

    data: bytes
    row_stride: int
    pixel_stride: int


@dataclass(frozen=True)
class RawImage:
    """Immutable snapshot of a captured frame."""

    width: int
    height: int
    rotation_degrees: int
    pixel_format: PixelFormat
    timestamp: int
    planes: tuple[ImagePlane, ...]

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {self.width}x{self.height}")
        if self.rotation_degrees not in VALID_ROTATIONS:
            raise ValueError(f"Rotation must be one of 0, 90, 180, 270, got {self.rotation_degrees}")


# ---------------------------------------------------------------------------
# Native frame protocol
# ---------------------------------------------------------------------------


class NativePlane(Protocol):
    @property
    def buffer(self) -> Any: ...

    @property
    def row_stride(self) -> int: ...

    @property
    def pixel_stride(self) -> int: ...


class NativeImage(Protocol):
    @property
    def planes(self) -> Sequence[NativePlane]: ...


class NativeFrame(Protocol):
    """Protocol for platform camera frames."""

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...

    @property
    def format(self) -> int | PixelFormat: ...

    @property
    def rotation_degrees(self) -> int: ...

    @property
    def timestamp(self) -> int: ...

    @property
    def image(self) -> NativeImage | None: ...


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ImageFrameAdapter:
    """Converts native camera frames into ``RawImage`` values."""

    def to_domain(self, frame: NativeFrame) -> RawImage:
        """Snapshot a native frame.

        Raises:
            InvalidFrameError: If the frame carries no image payload.
        """
        image = frame.image
        if image is None:
            raise InvalidFrameError("Frame does not contain an image")

        return RawImage(
            width=frame.width,
            height=frame.height,
            rotation_degrees=frame.rotation_degrees,
            pixel_format=convert_format(frame.format),
            timestamp=frame.timestamp,
            planes=tuple(
                ImagePlane(
                    data=copy_buffer(plane.buffer),
                    row_stride=plane.row_stride,
                    pixel_stride=plane.pixel_stride,
                )
                for plane in image.planes
            ),
        )


def convert_format(native_format: int | PixelFormat) -> PixelFormat:
    if isinstance(native_format, PixelFormat):
        return native_format
    pixel_format = ANDROID_FORMAT_CODES.get(native_format, PixelFormat.UNKNOWN)
    if pixel_format is PixelFormat.UNKNOWN:
        logger.debug("Unknown native image format 0x%x", native_format)
    return pixel_format


def copy_buffer(buffer: Any) -> bytes:
    """Return an owned copy of a plane buffer.

    Accepts any buffer-protocol object, or a file-like object which is
    rewound and read in full.
    """
    if hasattr(buffer, "seek") and hasattr(buffer, "read"):
        buffer.seek(0)
        return bytes(buffer.read())
    return bytes(memoryview(buffer))
