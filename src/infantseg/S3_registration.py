"""
S3_registration and S3_prior_transfer.

The subject brain is registered onto the age template once. Template-space
priors and masks are then pulled into native space through the inverse of
that transform, using the subject brain as the sampling reference.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from infantseg.policy import RegistrationPolicy
from infantseg.templates import TemplateBundle
from infantseg.tools import StageContext, require_outputs, run_command

STAGE_REGISTRATION = "S3_registration"
STAGE_PRIOR_TRANSFER = "S3_prior_transfer"
OUTPUT_PREFIX = "bet_"

# Binary masks must stay binary after resampling; priors are continuous.
MASK_INTERPOLATION = "NearestNeighbor"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transform:
    affine: Path
    warp: Path
    inverse_warp: Path

    def inverse_chain(self) -> list[str]:
        """antsApplyTransforms arguments mapping template space to native space."""
        return ["-t", f"[{self.affine},1]", "-t", str(self.inverse_warp)]


@dataclass(frozen=True)
class NativeReferences:
    priors: Dict[str, Path]
    masks: Dict[str, Path]


def transform_paths(work_dir: Path) -> Transform:
    return Transform(
        affine=work_dir / f"{OUTPUT_PREFIX}0GenericAffine.mat",
        warp=work_dir / f"{OUTPUT_PREFIX}1Warp.nii.gz",
        inverse_warp=work_dir / f"{OUTPUT_PREFIX}1InverseWarp.nii.gz",
    )


def run_S3_registration(
    native_brain: Path,
    bundle: TemplateBundle,
    work_dir: Path,
    policy: RegistrationPolicy,
    ctx: StageContext,
) -> Transform:
    """
    Register the native brain (moving) to the age template (fixed).

    Args:
        native_brain: Brain-extracted subject image.
        bundle: Age template bundle; its template is the fixed image.
        work_dir: Destination of the transform files.
        policy: Transform type and histogram matching switch.
        ctx: Stage context for the tool call.

    Returns:
        Affine, forward warp and inverse warp paths.
    """
    transform = transform_paths(work_dir)
    run_command(
        [
            "antsRegistrationSyN.sh",
            "-d",
            "3",
            "-t",
            policy.transform,
            "-f",
            str(bundle.template),
            "-m",
            str(native_brain),
            "-j",
            "1" if policy.histogram_matching else "0",
            "-o",
            str(work_dir / OUTPUT_PREFIX),
            "-n",
            str(policy.threads),
        ],
        ctx,
    )
    require_outputs([transform.affine, transform.warp, transform.inverse_warp], ctx, tool="antsRegistrationSyN.sh")
    logger.info("SyN registration to template %s done", bundle.template.name)
    return transform


def run_S3_prior_transfer(
    bundle: TemplateBundle,
    native_brain: Path,
    transform: Transform,
    work_dir: Path,
    policy: RegistrationPolicy,
    ctx: StageContext,
) -> NativeReferences:
    """
    Bring the template priors and masks into native space.

    Priors use the policy interpolation; masks are always resampled
    nearest-neighbour so they stay binary.

    Args:
        bundle: Age template bundle holding the priors and masks.
        native_brain: Reference grid for the resampled images.
        transform: Output of `run_S3_registration`.
        work_dir: Destination of the native-space images.
        policy: Prior interpolation.
        ctx: Stage context for the tool calls.

    Returns:
        Native-space priors and masks keyed by their bundle names.
    """
    priors = {
        name: _apply_inverse(source, native_brain, transform, work_dir / f"{name}.nii.gz", policy.prior_interpolation, ctx)
        for name, source in bundle.priors.items()
    }
    logger.info("Transformed priors to native space: %s", ", ".join(sorted(priors)))
    masks = {
        name: _apply_inverse(source, native_brain, transform, work_dir / f"{name}.nii.gz", MASK_INTERPOLATION, ctx)
        for name, source in bundle.masks.items()
    }
    logger.info("Transformed masks to native space: %s", ", ".join(sorted(masks)))
    return NativeReferences(priors=priors, masks=masks)


def _apply_inverse(
    source: Path,
    reference: Path,
    transform: Transform,
    dest: Path,
    interpolation: str,
    ctx: StageContext,
) -> Path:
    run_command(
        [
            "antsApplyTransforms",
            "-d",
            "3",
            "-i",
            str(source),
            "-r",
            str(reference),
            "-o",
            str(dest),
            "-n",
            interpolation,
            *transform.inverse_chain(),
        ],
        ctx,
    )
    require_outputs([dest], ctx, tool="antsApplyTransforms")
    return dest
