"""
S0_setup: environment checks for the external tools the pipeline drives.

Writes `S0_setup_qc.json` under the logs directory; nothing is executed
beyond PATH lookups and environment reads.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from infantseg.policy import PipelinePolicy
from infantseg.templates import KNOWN_AGES
from infantseg.tools import is_executable

STAGE = "S0_setup"

REQUIRED_COMMANDS = {
    "ants": ["antsRegistrationSyN.sh", "antsApplyTransforms", "antsAtroposN4.sh"],
    "fsl": ["fslmaths", "fslmerge", "fslval", "fslstats"],
}
QC_COMMANDS = {"fsl": ["slicer", "pngappend"]}


@dataclass
class EnvCheck:
    name: str
    passed: bool
    message: str
    info: Dict[str, str]
    required: bool = True

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "passed": self.passed,
            "required": self.required,
            "message": self.message,
            "info": dict(self.info),
        }


@dataclass
class StepResult:
    status: str
    failure_message: Optional[str]
    qc_path: Optional[Path] = None


def run_S0_setup(policy: PipelinePolicy, logs_dir: Path, templates_root: Path) -> StepResult:
    """
    Check that the external tools, FSLDIR and the templates root are usable.

    Args:
        policy: Pipeline policy naming the skull-strip command and QC fatality.
        logs_dir: Receives S0_setup_qc.json.
        templates_root: Directory holding the age template bundles.

    Returns:
        StepResult that is FAIL when a required check fails and WARN when only
        optional checks fail.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    checks = environment_checks(policy, templates_root)
    status, failure_message = _overall_status(checks)
    qc = {
        "step": STAGE,
        "status": status,
        "failure_message": failure_message,
        "policy_path": str(policy.source) if policy.source else None,
        "checks": [c.as_dict() for c in checks],
    }
    qc_path = logs_dir / "S0_setup_qc.json"
    _write_json(qc_path, qc)
    return StepResult(status=status, failure_message=failure_message, qc_path=qc_path)


def environment_checks(policy: PipelinePolicy, templates_root: Path) -> List[EnvCheck]:
    checks: List[EnvCheck] = []
    skullstrip = policy.tools.skullstrip_command
    checks.append(_command_check("skullstrip", skullstrip, required=True))
    for suite, commands in REQUIRED_COMMANDS.items():
        for cmd in commands:
            checks.append(_command_check(suite, cmd, required=True))
    for suite, commands in QC_COMMANDS.items():
        for cmd in commands:
            checks.append(_command_check(suite, cmd, required=policy.qc.fatal))

    fsldir = os.environ.get("FSLDIR")
    checks.append(
        EnvCheck(
            name="env:FSLDIR",
            passed=bool(fsldir) and Path(fsldir).is_dir(),
            message="FSLDIR set." if fsldir else "FSLDIR not set; source ${FSLDIR}/etc/fslconf/fsl.sh.",
            info={"FSLDIR": fsldir or ""},
        )
    )

    ok, message, ages = _check_templates(templates_root)
    checks.append(
        EnvCheck(
            name="templates_root",
            passed=ok,
            message=message,
            info={"templates_root": str(templates_root), "ages": ",".join(ages)},
        )
    )
    return checks


def _command_check(suite: str, cmd: str, required: bool) -> EnvCheck:
    found = is_executable(cmd)
    return EnvCheck(
        name=f"{suite}_cmd:{cmd}",
        passed=found,
        message="Command available." if found else f"{cmd} not found on PATH",
        info={"command": cmd},
        required=required,
    )


def _check_templates(templates_root: Path) -> Tuple[bool, str, List[str]]:
    if not templates_root.is_dir():
        return False, f"Templates root not found: {templates_root}", []
    ages = sorted((p.name for p in templates_root.iterdir() if p.is_dir()), key=lambda a: (not a.isdigit(), a.zfill(4)))
    if not ages:
        return False, f"No age bundles under {templates_root}", []
    missing_known = [age for age in KNOWN_AGES if age not in ages]
    if missing_known:
        return True, f"Age bundles present; not installed: {', '.join(missing_known)}", ages
    return True, "All age bundles present.", ages


def _overall_status(checks: List[EnvCheck]) -> Tuple[str, Optional[str]]:
    failures = [c for c in checks if not c.passed and c.required]
    if failures:
        first = failures[0]
        return "FAIL", f"{first.name} failed: {first.message}"
    if any(not c.passed for c in checks):
        return "WARN", None
    return "PASS", None


def _write_json(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.write("\n")
