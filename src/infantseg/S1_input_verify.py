"""
S1_input_verify: input existence, extension and header checks, subject naming,
and template bundle resolution.

Runs before anything is written, so a missing input leaves no outputs behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import nibabel as nib
import numpy as np

from infantseg.errors import InputNotFound
from infantseg.templates import TemplateBundle, load_template_bundle

STAGE = "S1_input_verify"
NIFTI_EXTENSIONS = (".nii.gz", ".nii")

logger = logging.getLogger(__name__)


@dataclass
class ResolvedInput:
    input_path: Path
    subject: str
    extension: str
    bundle: TemplateBundle
    checks: List[dict] = field(default_factory=list)


def run_S1_input_verify(input_path: Path, age: str, templates_root: Path) -> ResolvedInput:
    """
    Validate the subject volume and resolve the age template bundle.

    Args:
        input_path: Subject T2w volume.
        age: Template age key; normalised by `load_template_bundle`.
        templates_root: Directory holding the age template bundles.

    Returns:
        ResolvedInput with the subject id, extension, template bundle and any
        header warnings.

    Raises:
        InputNotFound: the file is missing, not NIfTI, has an empty subject
            name, or is not loadable.
        TemplateBundleError: the age bundle is missing or incomplete.
    """
    input_path = Path(input_path)
    if not input_path.is_file():
        raise InputNotFound(f"Input file not found: {input_path}", stage=STAGE)
    logger.info("Input file found: %s", input_path)

    extension = nifti_extension(input_path)
    if extension is None:
        raise InputNotFound(
            f"Unrecognised input extension for {input_path.name}; expected .nii or .nii.gz", stage=STAGE
        )
    subject = subject_id(input_path)
    if not subject:
        raise InputNotFound(f"Input file name {input_path.name!r} has no subject part before the extension", stage=STAGE)

    checks = _validate_nifti(input_path)
    failures = [c for c in checks if c["severity"] == "FAIL"]
    if failures:
        raise InputNotFound(f"Input {input_path.name} is not a usable volume: {failures[0]['message']}", stage=STAGE)

    bundle = load_template_bundle(templates_root, age)
    logger.info("Template bundle for age %s: %s", bundle.age, bundle.root)

    return ResolvedInput(
        input_path=input_path.resolve(),
        subject=subject,
        extension=extension,
        bundle=bundle,
        checks=checks,
    )


def nifti_extension(path: Path) -> Optional[str]:
    name = path.name.lower()
    for ext in NIFTI_EXTENSIONS:
        if name.endswith(ext):
            return ext
    return None


def subject_id(path: Path) -> str:
    ext = nifti_extension(path)
    name = path.name
    if ext is None:
        return name
    return name[: -len(ext)]


def _validate_nifti(path: Path) -> list[dict]:
    checks: list[dict] = []
    try:
        img = nib.load(str(path))
    except Exception as err:  # noqa: BLE001
        return [{"name": "nifti_load", "severity": "FAIL", "message": f"NIfTI load failed: {err}"}]

    shape = img.shape
    if len(shape) < 3 or (len(shape) > 3 and any(dim > 1 for dim in shape[3:])):
        checks.append({"name": "nifti_3d", "severity": "FAIL", "message": f"Input is not a 3-D volume (shape={shape})."})

    if not np.isfinite(img.affine).all():
        checks.append({"name": "nifti_affine", "severity": "WARN", "message": "Affine contains non-finite values."})

    header = img.header
    qform_code = int(np.array(header.get("qform_code", np.array([0]))).reshape(-1)[0])
    sform_code = int(np.array(header.get("sform_code", np.array([0]))).reshape(-1)[0])
    if qform_code == 0 and sform_code == 0:
        checks.append(
            {"name": "nifti_orientation", "severity": "WARN", "message": "qform_code and sform_code are 0 (orientation unset)."}
        )
    return checks
