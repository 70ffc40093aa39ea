"""Tensor preprocessing: bilinear resize and value normalization."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from dancer.ml.transforms import PixelBuffer
    from dancer.store.configuration import PipelineConfiguration

INPUT_CHANNELS = 3

DEFAULT_MEAN: float = 0.0
DEFAULT_STD: float = 255.0


class TensorPreprocessor:
    """Turns an RGBA pixel buffer into the model's float32 input tensor.

    Output shape is ``(target_height, target_width, 3)``; the alpha channel is
    dropped and each value becomes ``(value - mean) / std``. The defaults map
    0-255 channel values into [0, 1].
    """

    def __init__(
        self,
        target_width: int,
        target_height: int,
        mean: float = DEFAULT_MEAN,
        std: float = DEFAULT_STD,
    ) -> None:
        if target_width <= 0 or target_height <= 0:
            raise ValueError(f"Target size must be positive, got {target_width}x{target_height}")
        if std == 0:
            raise ValueError("Normalization std must be non-zero")
        self._target_width = target_width
        self._target_height = target_height
        self._mean = np.float32(mean)
        self._std = np.float32(std)

    @classmethod
    def from_configuration(cls, config: PipelineConfiguration) -> TensorPreprocessor:
        return cls(
            target_width=config.target_width,
            target_height=config.target_height,
            mean=config.mean,
            std=config.std,
        )

    @property
    def output_shape(self) -> tuple[int, int, int]:
        return (self._target_height, self._target_width, INPUT_CHANNELS)

    def preprocess(self, buffer: PixelBuffer) -> NDArray[np.float32]:
        rgb = np.ascontiguousarray(buffer.pixels[:, :, :INPUT_CHANNELS])
        if (buffer.width, buffer.height) != (self._target_width, self._target_height):
            rgb = cv2.resize(
                rgb,
                (self._target_width, self._target_height),
                interpolation=cv2.INTER_LINEAR,
            )
        tensor = (rgb.astype(np.float32) - self._mean) / self._std
        return np.ascontiguousarray(tensor, dtype=np.float32)
