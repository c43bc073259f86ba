"""
Command builders for the FSL image-algebra tools.

Each helper issues one tool call through `infantseg.tools` and returns the
path it asked the tool to write.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from infantseg.errors import ExternalToolFailure
from infantseg.tools import StageContext, require_outputs, run_command


def maths(source: Path, ops: Sequence[str], dest: Path, ctx: StageContext) -> Path:
    """`fslmaths <source> <ops...> <dest>`."""
    run_command(["fslmaths", str(source), *ops, str(dest)], ctx)
    require_outputs([dest], ctx, tool="fslmaths")
    return dest


def multiply(source: Path, other: Path, dest: Path, ctx: StageContext) -> Path:
    return maths(source, ["-mul", str(other)], dest, ctx)


def subtract(source: Path, other: Path, dest: Path, ctx: StageContext) -> Path:
    return maths(source, ["-sub", str(other)], dest, ctx)


def zero_like(reference: Path, dest: Path, ctx: StageContext) -> Path:
    return maths(reference, ["-mul", "0"], dest, ctx)


def merge_time(volumes: Sequence[Path], dest: Path, ctx: StageContext) -> Path:
    """`fslmerge -t <dest> <volumes...>`: stack 3-D volumes along the 4th axis."""
    run_command(["fslmerge", "-t", str(dest), *[str(v) for v in volumes]], ctx)
    require_outputs([dest], ctx, tool="fslmerge")
    return dest


def dim4(image: Path, ctx: StageContext) -> int:
    output = run_command(["fslval", str(image), "dim4"], ctx)
    try:
        return int(float(output.split()[0]))
    except (IndexError, ValueError) as err:
        raise ExternalToolFailure(f"Unparseable fslval dim4 output: {output!r}", stage=ctx.stage) from err


def argmax_label(merged: Path, dest: Path, ctx: StageContext) -> Path:
    """Collapse a 4-D stack to the 0-based index of its maximum (`-Tmaxn`)."""
    return maths(merged, ["-Tmaxn"], dest, ctx)


def voxel_sum(merged: Path, dest: Path, ctx: StageContext) -> Path:
    """Sum across the 4th axis, computed as mean times the number of volumes."""
    count = dim4(merged, ctx)
    return maths(merged, ["-Tmean", "-mul", str(count)], dest, ctx)


def label_mask(atlas: Path, label: int, dest: Path, ctx: StageContext) -> Path:
    return maths(atlas, ["-thr", str(label), "-uthr", str(label), "-bin"], dest, ctx)


def masked_volume(image: Path, mask: Path, ctx: StageContext) -> float:
    """Volume in mm3 of the nonzero voxels of `mask` (`fslstats -k -V`, 2nd field)."""
    output = run_command(["fslstats", str(image), "-k", str(mask), "-V"], ctx)
    fields = output.split()
    try:
        return float(fields[1])
    except (IndexError, ValueError) as err:
        raise ExternalToolFailure(f"Unparseable fslstats -V output: {output!r}", stage=ctx.stage) from err
