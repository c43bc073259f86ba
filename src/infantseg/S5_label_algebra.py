"""
S5_label_algebra: split tissue and CSF posteriors into four classes.

Ventricles and subcortical grey matter are carved out of the CSF and tissue
posteriors by the same double-count test: stack the posteriors with the
mask-restricted estimate, sum across the stack, and keep voxels whose sum
exceeds the threshold (a voxel counted by one class only sums to about 1).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from infantseg import fsl
from infantseg.errors import PipelineError
from infantseg.labels import ALL_CLASSES, VENTRICLE_REFINEMENT
from infantseg.policy import LabelAlgebraPolicy
from infantseg.tools import StageContext

STAGE = "S5_label_algebra"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefinedClasses:
    refined_ventricles_mask: Path
    ventricles_prior: Path
    csf_prior: Path
    sub_GM_prior: Path
    tissue_non_sub_GM_prior: Path
    ventricle_atlas: Path
    atlas_4classes: Path

    def class_volumes(self) -> Dict[str, Path]:
        return {
            "tissue_non_sub_GM": self.tissue_non_sub_GM_prior,
            "sub_GM": self.sub_GM_prior,
            "csf_non_ventricles": self.csf_prior,
            "ventricles": self.ventricles_prior,
        }


def run_S5_label_algebra(
    tissue: Path,
    csf: Path,
    masks: Dict[str, Path],
    background: Path,
    subject: str,
    work_dir: Path,
    out_dir: Path,
    policy: LabelAlgebraPolicy,
    ctx: StageContext,
) -> RefinedClasses:
    """
    Split CSF into ventricles and the rest, tissue into sub_GM and the rest,
    and build the four-class atlas.

    Args:
        tissue: Tissue posterior from S4.
        csf: CSF posterior from S4.
        masks: Native-space ventricles_mask and sub_GM_mask.
        background: Background image placed first in the label stack.
        subject: Subject id used in the atlas file name.
        work_dir: Destination of intermediate images.
        out_dir: Receives the four-class atlas.
        policy: Double-count threshold.
        ctx: Stage context for the tool calls.

    Returns:
        Paths of the refined priors and the four-class atlas.

    Raises:
        PipelineError: a required mask is missing.
    """
    for name in ("ventricles_mask", "sub_GM_mask"):
        if name not in masks:
            raise PipelineError(f"Native-space {name} missing from prior transfer outputs", stage=ctx.stage)
    threshold = policy.double_count_threshold

    # Ventricles: open the transferred mask to drop thin fragments.
    refined = fsl.maths(masks["ventricles_mask"], ["-ero", "-dilM"], work_dir / "refined_ventricles_mask.nii.gz", ctx)
    ventricles_mul = fsl.multiply(csf, refined, work_dir / "ventricles_mask_mul.nii.gz", ctx)
    ventricle_subtract = _double_count_mask(
        [tissue, csf, ventricles_mul], work_dir, "ventricles", threshold, ctx
    )
    ventricles_prior = fsl.multiply(csf, ventricle_subtract, work_dir / "ventricles_prior.nii.gz", ctx)
    csf_prior = fsl.subtract(csf, ventricles_prior, work_dir / "csf_prior.nii.gz", ctx)
    logger.info("Ventricles separated from CSF")

    ventricle_stack = VENTRICLE_REFINEMENT.stack_order(
        background,
        {"csf_non_ventricles": csf_prior, "ventricles": ventricles_prior, "tissue": tissue},
    )
    ventricle_merged = fsl.merge_time(ventricle_stack, work_dir / "merged_ventricle_atlas_stack.nii.gz", ctx)
    ventricle_atlas = fsl.argmax_label(ventricle_merged, work_dir / "atlas_ventricle_refinement.nii.gz", ctx)

    # Subcortical GM: same test on the tissue posterior.
    sub_gm_mul = fsl.multiply(tissue, masks["sub_GM_mask"], work_dir / "sub_GM_mask_mul.nii.gz", ctx)
    sub_gm_subtract = _double_count_mask(
        [tissue, csf_prior, ventricles_prior, sub_gm_mul], work_dir, "sub_GM", threshold, ctx
    )
    sub_gm_prior = fsl.multiply(tissue, sub_gm_subtract, work_dir / "sub_GM_prior.nii.gz", ctx)
    tissue_non_sub_gm = fsl.subtract(tissue, sub_gm_prior, work_dir / "Tissue_non_sub_GM_prior.nii.gz", ctx)
    logger.info("Subcortical grey matter separated from tissue")

    refined_classes = RefinedClasses(
        refined_ventricles_mask=refined,
        ventricles_prior=ventricles_prior,
        csf_prior=csf_prior,
        sub_GM_prior=sub_gm_prior,
        tissue_non_sub_GM_prior=tissue_non_sub_gm,
        ventricle_atlas=ventricle_atlas,
        atlas_4classes=out_dir / f"{subject}_atlas_4classes.nii.gz",
    )
    stack = ALL_CLASSES.stack_order(background, refined_classes.class_volumes())
    merged = fsl.merge_time(stack, work_dir / "merged_4classes_priors.nii.gz", ctx)
    fsl.argmax_label(merged, refined_classes.atlas_4classes, ctx)
    logger.info("4-class atlas written to %s", refined_classes.atlas_4classes)
    return refined_classes


def _double_count_mask(
    volumes: list[Path],
    work_dir: Path,
    tag: str,
    threshold: float,
    ctx: StageContext,
) -> Path:
    merged = fsl.merge_time(volumes, work_dir / f"merged_{tag}_priors.nii.gz", ctx)
    summed = fsl.voxel_sum(merged, work_dir / f"merged_{tag}_priors_Tsum.nii.gz", ctx)
    return fsl.maths(summed, ["-thr", str(threshold), "-bin"], work_dir / f"subtractmask_{tag}.nii.gz", ctx)
