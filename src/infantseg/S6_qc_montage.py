"""
S6_qc_montage: slice montages of the brain extraction, posteriors and atlases.

Nothing downstream reads these images, so a failed render is recorded as a
warning unless the policy makes QC fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, cast

import nibabel as nib
import numpy as np
from PIL import Image

from infantseg.errors import ExternalToolFailure, PipelineError
from infantseg.policy import QcPolicy
from infantseg.tools import StageContext, require_outputs, run_command

STAGE = "S6_qc_montage"

# RGB per 4-class label index; 0 is left unpainted.
LABEL_COLOURS = {
    1: (255, 200, 0),
    2: (0, 200, 80),
    3: (0, 140, 255),
    4: (230, 40, 40),
}

logger = logging.getLogger(__name__)


@dataclass
class QcReport:
    reportlets: Dict[str, str] = field(default_factory=dict)
    warnings: List[dict] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "WARN" if self.warnings else "PASS"


def run_S6_qc_montage(
    brain: Path,
    tissue: Path,
    tissue_raw: Path,
    csf: Path,
    atlas_2classes: Path,
    atlas_4classes: Path,
    subject: str,
    work_dir: Path,
    out_dir: Path,
    policy: QcPolicy,
    ctx: StageContext,
) -> QcReport:
    """
    Render the QC montage, atlas slices and optional label overlay.

    Args:
        brain: Brain-extracted subject image.
        tissue: Tissue posterior multiplied by the brain mask.
        tissue_raw: Unmasked tissue posterior, background for atlas slices.
        csf: CSF posterior.
        atlas_2classes: Tissue/CSF label volume.
        atlas_4classes: Refined four-class label volume.
        subject: Subject id used in the overlay file name.
        work_dir: Destination of intermediate slicer tiles.
        out_dir: Destination of the published images.
        policy: QC policy; `fatal` turns render failures into errors.
        ctx: Stage context for tool calls.

    Returns:
        QcReport mapping render names to image paths, plus one warning per
        render that failed or produced nothing.

    Raises:
        PipelineError: a render failed and `policy.fatal` is set.
    """
    report = QcReport()

    def _montage() -> Path:
        tiles = [
            _slicer(brain, brain, work_dir / "slicer_bet.png", ctx),
            _slicer(tissue, tissue, work_dir / "slicer_seg1.png", ctx),
            _slicer(csf, csf, work_dir / "slicer_seg2.png", ctx),
        ]
        dest = out_dir / "qc_montage.png"
        cmd: List[str] = ["pngappend"]
        for idx, tile in enumerate(tiles):
            if idx:
                cmd.append("-")
            cmd.append(str(tile))
        cmd.append(str(dest))
        run_command(cmd, ctx)
        require_outputs([dest], ctx, tool="pngappend")
        return dest

    renders: Dict[str, Callable[[], Optional[Path]]] = {
        "qc_montage": _montage,
        "atlas_2classes": lambda: _slicer(tissue_raw, atlas_2classes, out_dir / "slicer_atlas_2classes.png", ctx),
        "atlas_4classes": lambda: _slicer(tissue_raw, atlas_4classes, out_dir / "slicer_atlas_4classes.png", ctx),
    }
    if policy.overlay:
        renders["atlas_4classes_overlay"] = lambda: render_label_overlay(
            brain, atlas_4classes, out_dir / f"{subject}_desc-atlas4_overlay.png"
        )

    for name, render in renders.items():
        try:
            path = render()
        except ExternalToolFailure as err:
            if policy.fatal:
                raise
            _warn(report, name, str(err), ctx)
            continue
        except OSError as err:
            if policy.fatal:
                raise PipelineError(f"QC render {name} failed: {err}", stage=ctx.stage) from err
            _warn(report, name, f"Render failed: {err}", ctx)
            continue
        if path is None:
            if policy.fatal:
                raise PipelineError(f"QC render {name} produced no image.", stage=ctx.stage)
            _warn(report, name, "Render produced no image.", ctx)
            continue
        report.reportlets[name] = str(path)
    logger.info("QC images: %d rendered, %d warnings", len(report.reportlets), len(report.warnings))
    return report


def _warn(report: QcReport, name: str, message: str, ctx: StageContext) -> None:
    logger.warning("QC render %s failed: %s", name, message)
    report.warnings.append({"name": name, "severity": "WARN", "stage": ctx.stage, "message": message})


def _slicer(background: Path, overlay: Path, dest: Path, ctx: StageContext) -> Path:
    run_command(["slicer", str(background), str(overlay), "-a", str(dest)], ctx)
    require_outputs([dest], ctx, tool="slicer")
    return dest


def render_label_overlay(image: Path, atlas: Path, dest: Path, alpha: float = 0.5) -> Optional[Path]:
    """Three orthogonal mid-slices of `image` with the atlas labels colour-blended."""
    try:
        img_data = cast(Any, nib.load(image)).get_fdata()
        atlas_data = cast(Any, nib.load(atlas)).get_fdata()
    except Exception as err:  # noqa: BLE001
        logger.warning("Cannot load %s / %s for overlay: %s", image, atlas, err)
        return None
    if img_data.ndim > 3:
        img_data = img_data[..., 0]
    if atlas_data.ndim > 3:
        atlas_data = atlas_data[..., 0]
    if img_data.shape != atlas_data.shape or img_data.ndim != 3:
        return None

    panels = []
    for axis in range(3):
        index = img_data.shape[axis] // 2
        img_slice = np.rot90(np.take(img_data, index, axis=axis))
        label_slice = np.rot90(np.rint(np.take(atlas_data, index, axis=axis)).astype(int))
        panels.append(_blend(img_slice, label_slice, alpha))

    height = max(panel.shape[0] for panel in panels)
    padded = [np.pad(p, ((0, height - p.shape[0]), (0, 0), (0, 0))) for p in panels]
    canvas = np.concatenate(padded, axis=1)
    dest.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(canvas.astype(np.uint8)).save(dest)
    return dest


def _blend(img_slice: np.ndarray, label_slice: np.ndarray, alpha: float) -> np.ndarray:
    vmin, vmax = np.percentile(img_slice, [1, 99])
    if vmax <= vmin:
        vmin, vmax = float(img_slice.min()), float(img_slice.max())
    if vmax <= vmin:
        vmax = vmin + 1.0
    normalized = np.clip((img_slice - vmin) / (vmax - vmin), 0, 1)
    base = (normalized * 255).astype(np.uint8)
    rgb = np.repeat(base[..., np.newaxis], 3, axis=2)
    for label, colour in LABEL_COLOURS.items():
        mask = label_slice == label
        if mask.any():
            rgb[mask] = (rgb[mask] * (1 - alpha) + np.array(colour) * alpha).astype(np.uint8)
    return rgb
