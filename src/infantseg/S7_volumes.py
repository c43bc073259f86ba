"""
S7_volumes: per-label volume tables for the 2-class and 4-class atlases.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

from infantseg import fsl
from infantseg.labels import LabelTable
from infantseg.tools import StageContext

STAGE = "S7_volumes"
TISSUE_CSF_TABLE = "Tissue_and_csf_volumes.csv"
ALL_VOLUMES_TABLE = "All_volumes.csv"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolumeTable:
    path: Path
    table: LabelTable
    rows: List[Tuple[str, float]]

    def as_dict(self) -> Dict[str, float]:
        return dict(self.rows)


def run_S7_volumes(atlas: Path, table: LabelTable, out_dir: Path, csv_name: str, ctx: StageContext) -> VolumeTable:
    """
    Binarize `atlas` at each label of `table`, measure the masked volume, and
    write `name,volume` rows under a `Volume` header in label-index order.

    Args:
        atlas: Label volume to measure.
        table: Label table naming each index.
        out_dir: Receives the per-label masks and the CSV.
        csv_name: File name of the volume table.
        ctx: Stage context for the tool calls.

    Returns:
        VolumeTable with the CSV path and the measured rows.
    """
    rows: List[Tuple[str, float]] = []
    for label in table.labels:
        mask = fsl.label_mask(atlas, label.index, out_dir / f"{label.name}_mask.nii.gz", ctx)
        volume = fsl.masked_volume(atlas, mask, ctx)
        rows.append((label.name, volume))
        logger.info("%s volume (label %d): %s mm3", label.name, label.index, _format_volume(volume))

    path = out_dir / csv_name
    write_volume_csv(path, rows)
    return VolumeTable(path=path, table=table, rows=rows)


def write_volume_csv(path: Path, rows: List[Tuple[str, float]]) -> None:
    with path.open("w", encoding="utf-8", newline="") as f:
        f.write("Volume\n")
        writer = csv.writer(f, lineterminator="\n")
        for name, volume in rows:
            writer.writerow([name, _format_volume(volume)])


def read_volume_csv(path: Path) -> Dict[str, float]:
    with path.open("r", encoding="utf-8", newline="") as f:
        lines = f.read().splitlines()
    if not lines or lines[0].strip() != "Volume":
        raise ValueError(f"Volume table {path} missing 'Volume' header")
    volumes: Dict[str, float] = {}
    for row in csv.reader(lines[1:]):
        if not row:
            continue
        if len(row) != 2:
            raise ValueError(f"Malformed volume row in {path}: {row}")
        volumes[row[0]] = float(row[1])
    return volumes


def _format_volume(volume: float) -> str:
    # fslstats prints integral volumes without a fractional part.
    return f"{volume:.6f}".rstrip("0").rstrip(".") if volume != int(volume) else str(int(volume))
