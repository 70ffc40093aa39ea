"""Postprocessing: softmax over logits, label pairing, ranking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from dancer.ml.errors import ShapeMismatchError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from dancer.ml.labels import LabelMap, MoveLabel


@dataclass(frozen=True)
class Prediction:
    """Probability of a single move."""

    label: MoveLabel
    probability: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError(f"Probability must be within [0, 1], got {self.probability}")


def softmax(logits: ArrayLike) -> NDArray[np.float64]:
    """Numerically stable softmax of a 1-D logits vector."""
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    if values.size == 0:
        raise ValueError("Cannot apply softmax to an empty vector")
    exps = np.exp(values - values.max())
    return exps / exps.sum()


def postprocess(logits: ArrayLike, label_map: LabelMap) -> list[Prediction]:
    """Convert raw logits into predictions sorted by probability (descending).

    Output index ``i`` belongs to ``label_map.labels[i]``; ties keep label order.
    """
    probabilities = softmax(logits)
    if probabilities.size != len(label_map):
        raise ShapeMismatchError(f"Model emitted {probabilities.size} logits for {len(label_map)} labels")

    predictions = [
        Prediction(label=label, probability=float(np.clip(probability, 0.0, 1.0)))
        for label, probability in zip(label_map.labels, probabilities, strict=True)
    ]
    return sorted(predictions, key=lambda p: p.probability, reverse=True)
