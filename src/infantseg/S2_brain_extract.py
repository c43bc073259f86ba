"""
S2_brain_extract: skull-strip the raw volume into a brain image and mask.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from infantseg.policy import ToolsPolicy
from infantseg.tools import StageContext, require_outputs, run_command

STAGE = "S2_brain_extract"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrainExtraction:
    brain: Path
    mask: Path


def brain_extraction_paths(out_dir: Path) -> BrainExtraction:
    return BrainExtraction(
        brain=out_dir / "native_bet_image.nii.gz",
        mask=out_dir / "native_brain_mask.nii.gz",
    )


def run_S2_brain_extract(input_path: Path, out_dir: Path, tools: ToolsPolicy, ctx: StageContext) -> BrainExtraction:
    """
    Skull-strip the subject volume.

    Args:
        input_path: Subject volume from S1.
        out_dir: Receives native_bet_image and native_brain_mask.
        tools: Skull-stripping command and its extra arguments.
        ctx: Stage context for the tool call.

    Returns:
        Paths of the brain image and binary brain mask.
    """
    outputs = brain_extraction_paths(out_dir)
    run_command(
        [
            tools.skullstrip_command,
            "-i",
            str(input_path),
            "-o",
            str(outputs.brain),
            "-m",
            str(outputs.mask),
            *tools.skullstrip_args,
        ],
        ctx,
    )
    require_outputs([outputs.brain, outputs.mask], ctx, tool=tools.skullstrip_command)
    logger.info("Brain image and mask created with %s", tools.skullstrip_command)
    return outputs
