"""
Age-specific template bundles.

Each bundle directory holds a template, its brain mask, two tissue priors and
two anatomical masks, all in one reference template space.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from infantseg.errors import TemplateBundleError

TEMPLATES_ENV = "INFANTSEG_TEMPLATES"
KNOWN_AGES = ("3", "6", "12", "24", "48", "72")

# Object kinds decide the resampling mode in S3_prior_transfer.
PRIOR_NAMES = ("prior1", "prior2")
MASK_NAMES = ("ventricles_mask", "sub_GM_mask")


@dataclass(frozen=True)
class TemplateBundle:
    age: str
    root: Path
    template: Path
    brain_mask: Path
    priors: Dict[str, Path]
    masks: Dict[str, Path]

    def as_dict(self) -> dict:
        return {
            "age": self.age,
            "root": str(self.root),
            "template": str(self.template),
            "brain_mask": str(self.brain_mask),
            "priors": {k: str(v) for k, v in self.priors.items()},
            "masks": {k: str(v) for k, v in self.masks.items()},
        }


def resolve_templates_root(explicit: Optional[Path], policy_default: Path) -> Path:
    if explicit is not None:
        return Path(explicit).expanduser()
    env_path = os.environ.get(TEMPLATES_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return policy_default


def normalise_age(age: str) -> str:
    token = str(age).strip()
    for suffix in ("months", "month", "mo", "m"):
        if token.lower().endswith(suffix) and token[: -len(suffix)].strip().isdigit():
            token = token[: -len(suffix)].strip()
            break
    if not token:
        raise TemplateBundleError("Empty age token.", stage="S1_input_verify")
    return token


def load_template_bundle(templates_root: Path, age: str) -> TemplateBundle:
    """
    Resolve the bundle for `age` under `templates_root`.

    Raises:
        TemplateBundleError: when the age directory or any member file is missing.
    """
    age = normalise_age(age)
    root = Path(templates_root) / age
    if not root.is_dir():
        hint = f" Known ages: {', '.join(KNOWN_AGES)}." if age not in KNOWN_AGES else ""
        raise TemplateBundleError(f"No template bundle for age '{age}' at {root}.{hint}", stage="S1_input_verify")

    bundle = TemplateBundle(
        age=age,
        root=root,
        template=root / f"template_{age}_degibbs.nii.gz",
        brain_mask=root / "brainMask.nii.gz",
        priors={name: root / f"{name}.nii.gz" for name in PRIOR_NAMES},
        masks={name: root / f"{name}.nii.gz" for name in MASK_NAMES},
    )
    members = [bundle.template, bundle.brain_mask, *bundle.priors.values(), *bundle.masks.values()]
    missing = [p.name for p in members if not p.exists()]
    if missing:
        raise TemplateBundleError(
            f"Template bundle {root} incomplete; missing: {', '.join(missing)}", stage="S1_input_verify"
        )
    return bundle
