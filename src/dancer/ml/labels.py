"""Dance move catalog and the model-output index mapping."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from dancer.ml.errors import ShapeMismatchError


class MoveLabel(StrEnum):
    DAB_LEFT = "dab_left"
    DAB_RIGHT = "dab_right"
    LOTTERY_1 = "lottery_1"
    LOTTERY_2_RIGHT = "lottery_2_right"
    LOTTERY_2_LEFT = "lottery_2_left"
    SAY_SO_1_LEFT = "say_so_1_left"
    SAY_SO_1_RIGHT = "say_so_1_right"
    SAY_SO_2 = "say_so_2"
    WAP_1_LEFT = "wap_1_left"
    WAP_1_RIGHT = "wap_1_right"
    WAP_2 = "wap_2"
    WAP_3_LEFT = "wap_3_left"
    WAP_3_RIGHT = "wap_3_right"
    WAP_4_LEFT = "wap_4_left"
    WAP_4_RIGHT = "wap_4_right"

    @property
    def display_name(self) -> str:
        return DISPLAY_NAMES[self]


DISPLAY_NAMES: dict[MoveLabel, str] = {
    MoveLabel.DAB_LEFT: "Dab (left)",
    MoveLabel.DAB_RIGHT: "Dab (right)",
    MoveLabel.LOTTERY_1: "Lottery 1",
    MoveLabel.LOTTERY_2_RIGHT: "Lottery 2 (right)",
    MoveLabel.LOTTERY_2_LEFT: "Lottery 2 (left)",
    MoveLabel.SAY_SO_1_LEFT: "Say So 1 (left)",
    MoveLabel.SAY_SO_1_RIGHT: "Say So 1 (right)",
    MoveLabel.SAY_SO_2: "Say So 2",
    MoveLabel.WAP_1_LEFT: "WAP 1 (left)",
    MoveLabel.WAP_1_RIGHT: "WAP 1 (right)",
    MoveLabel.WAP_2: "WAP 2",
    MoveLabel.WAP_3_LEFT: "WAP 3 (left)",
    MoveLabel.WAP_3_RIGHT: "WAP 3 (right)",
    MoveLabel.WAP_4_LEFT: "WAP 4 (left)",
    MoveLabel.WAP_4_RIGHT: "WAP 4 (right)",
}


@dataclass(frozen=True)
class LabelMap:
    """Bijective mapping from output tensor index to move label.

    ``labels[i]`` is the label of output index ``i``.
    """

    labels: tuple[MoveLabel, ...]

    def __post_init__(self) -> None:
        if not self.labels:
            raise ValueError("Label map must not be empty")
        if len(set(self.labels)) != len(self.labels):
            raise ValueError("Label map contains duplicate labels")

    def __len__(self) -> int:
        return len(self.labels)

    def index_of(self, label: MoveLabel) -> int:
        return self.labels.index(label)

    def validate(self, output_size: int | None) -> None:
        """Check that the model emits exactly one logit per label.

        ``None`` means the model declares a dynamic output size, which can
        only be checked per frame.
        """
        if output_size is not None and output_size != len(self.labels):
            raise ShapeMismatchError(f"Model emits {output_size} logits but {len(self.labels)} labels are defined")


DEFAULT_LABEL_MAP = LabelMap(tuple(MoveLabel))
