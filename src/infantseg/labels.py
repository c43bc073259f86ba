"""
Explicit label tables for atlas construction and volume reporting.

An atlas is a `-Tmaxn` collapse of a 4-D stack whose position 0 is a
zero-filled background. The label index of a class is its stack position, so
the stack is always generated from the table and never written by hand.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Tuple


@dataclass(frozen=True)
class Label:
    name: str
    index: int


@dataclass(frozen=True)
class LabelTable:
    key: str
    labels: Tuple[Label, ...]

    def __post_init__(self) -> None:
        indices = [label.index for label in self.labels]
        if indices != list(range(1, len(indices) + 1)):
            raise ValueError(f"Label table '{self.key}' indices must be 1..N in order, got {indices}")
        names = [label.name for label in self.labels]
        if len(set(names)) != len(names):
            raise ValueError(f"Label table '{self.key}' has duplicate names: {names}")

    @classmethod
    def from_names(cls, key: str, names: List[str]) -> "LabelTable":
        return cls(key=key, labels=tuple(Label(name=n, index=i) for i, n in enumerate(names, start=1)))

    @property
    def names(self) -> List[str]:
        return [label.name for label in self.labels]

    def index_of(self, name: str) -> int:
        for label in self.labels:
            if label.name == name:
                return label.index
        raise KeyError(f"Label '{name}' not in table '{self.key}'")

    def stack_order(self, background: Path, volumes: Mapping[str, Path]) -> List[Path]:
        """
        Return the merge order for `fslmerge -t`: background first, then one
        volume per label in index order.
        """
        missing = [name for name in self.names if name not in volumes]
        extra = sorted(set(volumes) - set(self.names))
        if missing or extra:
            raise ValueError(
                f"Volumes for table '{self.key}' do not match labels: missing={missing} extra={extra}"
            )
        return [background, *[volumes[name] for name in self.names]]

    def as_dict(self) -> Dict[str, int]:
        return {label.name: label.index for label in self.labels}


TISSUE_CSF = LabelTable.from_names("2classes", ["tissue", "csf"])

VENTRICLE_REFINEMENT = LabelTable.from_names(
    "ventricle_refinement", ["csf_non_ventricles", "ventricles", "tissue"]
)

ALL_CLASSES = LabelTable.from_names(
    "4classes", ["tissue_non_sub_GM", "sub_GM", "csf_non_ventricles", "ventricles"]
)
