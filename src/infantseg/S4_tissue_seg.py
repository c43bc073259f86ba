"""
S4_tissue_seg: two-class Atropos/N4 segmentation inside a dilated brain mask,
tissue re-masking, and the 2-class atlas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from infantseg import fsl
from infantseg.errors import PipelineError
from infantseg.labels import TISSUE_CSF
from infantseg.policy import SegmentationPolicy
from infantseg.tools import StageContext, require_outputs, run_command

STAGE = "S4_tissue_seg"
OUTPUT_PREFIX = "ants_atropos_"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Posteriors:
    tissue: Path
    tissue_raw: Path
    csf: Path
    atlas_2classes: Path
    background: Path


def run_S4_tissue_seg(
    anatomical: Path,
    brain_mask: Path,
    priors: Dict[str, Path],
    subject: str,
    work_dir: Path,
    out_dir: Path,
    policy: SegmentationPolicy,
    ctx: StageContext,
) -> Posteriors:
    """
    Segment `anatomical` into tissue (posterior 1) and CSF (posterior 2).

    The mask handed to Atropos is dilated once so boundary tissue is not
    clipped; only the tissue posterior is multiplied back by the undilated
    mask, CSF at the brain surface is kept.

    Args:
        anatomical: Image handed to Atropos (raw input or brain image).
        brain_mask: Native brain mask from S2.
        priors: Native-space prior1 (tissue) and prior2 (CSF).
        subject: Subject id used in the atlas file name.
        work_dir: Destination of intermediate posteriors.
        out_dir: Receives the two-class atlas and merged priors.
        policy: Atropos prior weight, N4 posteriors and extra arguments.
        ctx: Stage context for the tool calls.

    Returns:
        Masked and raw tissue posteriors, the CSF posterior, the background image
        and the two-class atlas.

    Raises:
        PipelineError: a required prior is missing.
    """
    for name in ("prior1", "prior2"):
        if name not in priors:
            raise PipelineError(f"Native-space {name} missing from prior transfer outputs", stage=ctx.stage)

    dilated = fsl.maths(brain_mask, ["-dilM"], work_dir / "native_brain_mask_dil.nii.gz", ctx)

    cmd = [
        "antsAtroposN4.sh",
        "-d",
        "3",
        "-a",
        str(anatomical),
        "-x",
        str(dilated),
        "-p",
        str(work_dir / "prior%d.nii.gz"),
        "-c",
        "2",
    ]
    for label in policy.n4_posteriors:
        cmd.extend(["-y", str(label)])
    cmd.extend(["-w", str(policy.prior_weight), "-o", str(work_dir / OUTPUT_PREFIX), *policy.extra_args])
    run_command(cmd, ctx)

    tissue_raw = work_dir / f"{OUTPUT_PREFIX}SegmentationPosteriors1.nii.gz"
    csf = work_dir / f"{OUTPUT_PREFIX}SegmentationPosteriors2.nii.gz"
    require_outputs([tissue_raw, csf], ctx, tool="antsAtroposN4.sh")
    logger.info("Atropos segmentation done (2 classes)")

    tissue = fsl.multiply(tissue_raw, brain_mask, work_dir / f"{OUTPUT_PREFIX}SegmentationPosteriors1_corrected.nii.gz", ctx)

    background = fsl.zero_like(brain_mask, work_dir / "zero_filled_image.nii.gz", ctx)
    stack = TISSUE_CSF.stack_order(background, {"tissue": tissue, "csf": csf})
    merged = fsl.merge_time(stack, out_dir / "merged_priors.nii.gz", ctx)
    atlas = fsl.argmax_label(merged, out_dir / f"{subject}_atlas_2classes.nii.gz", ctx)
    logger.info("2-class atlas written to %s", atlas)

    return Posteriors(tissue=tissue, tissue_raw=tissue_raw, csf=csf, atlas_2classes=atlas, background=background)
