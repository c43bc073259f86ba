"""
Subprocess boundary for the external neuroimaging tools.

Every call blocks until the tool exits. Outputs named by the caller are
checked for existence before the next stage reads them.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from shutil import which
from typing import Iterable, List, Optional, Sequence

from infantseg.errors import ExternalToolFailure

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Identity, timeout and command log of the stage issuing tool calls."""

    stage: str
    timeout: Optional[float] = None
    commands: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def tool_env() -> dict:
    env = dict(os.environ)
    # fslmaths/fslmerge pick the output format from this variable.
    env.setdefault("FSLOUTPUTTYPE", "NIFTI_GZ")
    return env


def run_command(cmd: Sequence[str], ctx: StageContext) -> str:
    """
    Run one external tool and return its combined stdout/stderr.

    The tool starts in its own session so a timeout can kill the whole
    process group, including children spawned by the ANTs shell wrappers.

    Args:
        cmd: Program and arguments; non-string parts are converted with str().
        ctx: Stage issuing the call; receives the command line.

    Returns:
        Stripped stdout followed by stderr.

    Raises:
        ExternalToolFailure: when the binary is missing, exits nonzero or
            exceeds the stage timeout.
    """
    cmd = [str(part) for part in cmd]
    ctx.commands.append(" ".join(cmd))
    logger.debug("[%s] $ %s", ctx.stage, " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            env=tool_env(),
            start_new_session=True,
        )
    except FileNotFoundError as err:
        raise ExternalToolFailure(f"Command not found: {cmd[0]}", stage=ctx.stage, command=cmd) from err

    try:
        stdout, stderr = proc.communicate(timeout=ctx.timeout)
    except subprocess.TimeoutExpired as err:
        _kill_group(proc)
        proc.communicate()
        raise ExternalToolFailure(
            f"{cmd[0]} timed out after {ctx.timeout}s", stage=ctx.stage, command=cmd
        ) from err

    output = "\n".join(part for part in [stdout, stderr] if part).strip()
    if proc.returncode != 0:
        raise ExternalToolFailure(
            f"{cmd[0]} exited with code {proc.returncode}: {_tail(output)}",
            stage=ctx.stage,
            command=cmd,
            returncode=proc.returncode,
            output=output,
        )
    return output


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Group already gone.
        pass


def require_outputs(paths: Iterable[Path], ctx: StageContext, tool: str) -> None:
    """Fail the stage if a tool left any expected output missing or empty."""
    missing = [p for p in paths if not p.exists() or p.stat().st_size == 0]
    if missing:
        raise ExternalToolFailure(
            f"{tool} finished but output(s) missing or empty: {', '.join(str(p) for p in missing)}",
            stage=ctx.stage,
        )


def is_executable(cmd: str) -> bool:
    return which(cmd) is not None


def _tail(output: str, lines: int = 5) -> str:
    if not output:
        return "(no output)"
    return " | ".join(output.splitlines()[-lines:])
