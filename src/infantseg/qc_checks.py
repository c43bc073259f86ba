"""
Post-run property checks on the produced images and tables.

These read the outputs with nibabel and report WARN-level checks; they never
abort a run.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, cast

import nibabel as nib
import numpy as np

VOLUME_TOLERANCE_MM3 = 1.0


def _load(path: Path) -> np.ndarray:
    data = cast(Any, nib.load(path)).get_fdata()
    if data.ndim > 3:
        data = data[..., 0]
    return data


def check_binary_mask(name: str, path: Path) -> dict:
    values = np.unique(_load(path))
    passed = bool(np.isin(values, [0.0, 1.0]).all())
    return {
        "name": f"binary_mask:{name}",
        "passed": passed,
        "severity": "WARN",
        "message": "Mask holds only {0,1}." if passed else f"Mask holds non-binary values: {values[:8].tolist()}",
    }


def check_label_within(name: str, atlas: Path, label: int, footprint: Path) -> dict:
    atlas_data = np.rint(_load(atlas)).astype(int)
    footprint_data = _load(footprint) > 0
    if atlas_data.shape != footprint_data.shape:
        return {
            "name": f"label_within:{name}",
            "passed": False,
            "severity": "WARN",
            "message": f"Grid mismatch {atlas_data.shape} vs {footprint_data.shape}.",
        }
    outside = int(np.count_nonzero((atlas_data == label) & ~footprint_data))
    return {
        "name": f"label_within:{name}",
        "passed": outside == 0,
        "severity": "WARN",
        "message": f"Label {label} voxels outside {footprint.name}: {outside}.",
    }


def check_volume_conservation(
    two_class: Dict[str, float],
    four_class: Dict[str, float],
    tolerance: float = VOLUME_TOLERANCE_MM3,
) -> dict:
    total_2 = float(sum(two_class.values()))
    total_4 = float(sum(four_class.values()))
    passed = total_4 <= total_2 + tolerance
    return {
        "name": "volume_conservation",
        "passed": passed,
        "severity": "WARN",
        "message": f"4-class total {total_4:.3f} mm3 vs 2-class total {total_2:.3f} mm3.",
    }


def run_output_checks(
    masks: Dict[str, Path],
    atlas_4classes: Path,
    ventricles_label: int,
    refined_ventricles_mask: Path,
    sub_gm_label: int,
    sub_gm_mask: Path,
    two_class_volumes: Dict[str, float],
    four_class_volumes: Dict[str, float],
) -> List[dict]:
    checks: List[dict] = [check_binary_mask(name, path) for name, path in sorted(masks.items())]
    checks.append(check_label_within("ventricles", atlas_4classes, ventricles_label, refined_ventricles_mask))
    checks.append(check_label_within("sub_GM", atlas_4classes, sub_gm_label, sub_gm_mask))
    checks.append(check_volume_conservation(two_class_volumes, four_class_volumes))
    return checks


def failing_checks(checks: List[dict]) -> List[dict]:
    return [c for c in checks if not c.get("passed", False)]


def first_failure_message(checks: List[dict]) -> Optional[str]:
    failures = failing_checks(checks)
    if not failures:
        return None
    return f"{failures[0]['name']}: {failures[0]['message']}"
