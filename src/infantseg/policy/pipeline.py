"""
Pipeline policy loading and validation.

The policy YAML carries tool settings and paths; every field is optional and
falls back to the defaults below, which reproduce the Flywheel gear layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from infantseg.errors import PolicyError

SUPPORTED_VERSION = 1
FLYWHEEL_BASE = Path("/flywheel/v0")
PRIOR_INTERPOLATIONS = {"Linear", "BSpline", "Gaussian", "LanczosWindowedSinc"}
ANATOMICAL_CHOICES = {"brain", "raw"}


@dataclass(frozen=True)
class PathsPolicy:
    templates_root: Path = FLYWHEEL_BASE / "app" / "templates"
    work_root: Path = FLYWHEEL_BASE / "work"
    output_dir: Path = FLYWHEEL_BASE / "output"


@dataclass(frozen=True)
class ToolsPolicy:
    timeout_s: Optional[float] = None
    skullstrip_command: str = "mri_synthstrip"
    skullstrip_args: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RegistrationPolicy:
    transform: str = "s"
    threads: int = 6
    histogram_matching: bool = True
    prior_interpolation: str = "Linear"


@dataclass(frozen=True)
class SegmentationPolicy:
    anatomical: str = "brain"
    prior_weight: float = 0.5
    n4_posteriors: List[int] = field(default_factory=lambda: [1, 2])
    extra_args: List[str] = field(default_factory=lambda: ["-z", "1"])


@dataclass(frozen=True)
class LabelAlgebraPolicy:
    double_count_threshold: float = 1.1


@dataclass(frozen=True)
class QcPolicy:
    fatal: bool = False
    overlay: bool = True


@dataclass(frozen=True)
class PipelinePolicy:
    version: int = SUPPORTED_VERSION
    paths: PathsPolicy = field(default_factory=PathsPolicy)
    tools: ToolsPolicy = field(default_factory=ToolsPolicy)
    registration: RegistrationPolicy = field(default_factory=RegistrationPolicy)
    segmentation: SegmentationPolicy = field(default_factory=SegmentationPolicy)
    label_algebra: LabelAlgebraPolicy = field(default_factory=LabelAlgebraPolicy)
    qc: QcPolicy = field(default_factory=QcPolicy)
    cleanup_intermediates: bool = False
    source: Optional[Path] = None


def load_pipeline_policy(policy_path: Optional[Path | str] = None) -> PipelinePolicy:
    """
    Load and validate the pipeline policy.

    With no path the built-in defaults are returned.

    Raises:
        PolicyError: when the YAML is unreadable or a field has the wrong type.
    """
    if policy_path is None:
        return PipelinePolicy()

    path = Path(policy_path)
    if not path.exists():
        raise PolicyError(f"Pipeline policy not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as err:
            raise PolicyError(f"Failed to parse pipeline policy YAML: {err}") from err

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PolicyError("Pipeline policy must be a mapping at the top level.")

    version = raw.get("version", SUPPORTED_VERSION)
    if not isinstance(version, int) or version != SUPPORTED_VERSION:
        raise PolicyError(f"Pipeline policy 'version' must be {SUPPORTED_VERSION}, got {version!r}.")

    return PipelinePolicy(
        version=version,
        paths=_parse_paths(_section(raw, "paths")),
        tools=_parse_tools(_section(raw, "tools")),
        registration=_parse_registration(_section(raw, "registration")),
        segmentation=_parse_segmentation(_section(raw, "segmentation")),
        label_algebra=_parse_label_algebra(_section(raw, "label_algebra")),
        qc=_parse_qc(_section(raw, "qc")),
        cleanup_intermediates=_parse_cleanup(_section(raw, "cleanup")),
        source=path.resolve(),
    )


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PolicyError(f"Pipeline policy section '{name}' must be a mapping.")
    return value


def _parse_paths(raw: dict) -> PathsPolicy:
    defaults = PathsPolicy()
    values = {}
    for key in ("templates_root", "work_root", "output_dir"):
        value = raw.get(key, getattr(defaults, key))
        if not isinstance(value, (str, Path)) or not str(value):
            raise PolicyError(f"Pipeline policy paths.{key} must be a non-empty path string.")
        values[key] = Path(value).expanduser()
    return PathsPolicy(**values)


def _parse_tools(raw: dict) -> ToolsPolicy:
    timeout = raw.get("timeout_s")
    if timeout is not None and (not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0):
        raise PolicyError("Pipeline policy tools.timeout_s must be a positive number or null.")
    skullstrip = raw.get("skullstrip", {}) or {}
    if not isinstance(skullstrip, dict):
        raise PolicyError("Pipeline policy tools.skullstrip must be a mapping.")
    command = skullstrip.get("command", "mri_synthstrip")
    if not isinstance(command, str) or not command:
        raise PolicyError("Pipeline policy tools.skullstrip.command must be a non-empty string.")
    args = skullstrip.get("extra_args", [])
    _require_str_list(args, "tools.skullstrip.extra_args")
    return ToolsPolicy(timeout_s=timeout, skullstrip_command=command, skullstrip_args=[str(a) for a in args])


def _parse_registration(raw: dict) -> RegistrationPolicy:
    transform = raw.get("transform", "s")
    if transform not in {"s", "b", "so", "bo"}:
        raise PolicyError("Pipeline policy registration.transform must be one of s, b, so, bo.")
    threads = raw.get("threads", 6)
    if not isinstance(threads, int) or isinstance(threads, bool) or threads < 1:
        raise PolicyError("Pipeline policy registration.threads must be a positive integer.")
    interpolation = raw.get("prior_interpolation", "Linear")
    if interpolation not in PRIOR_INTERPOLATIONS:
        raise PolicyError(
            f"Pipeline policy registration.prior_interpolation must be one of {sorted(PRIOR_INTERPOLATIONS)}."
        )
    return RegistrationPolicy(
        transform=transform,
        threads=threads,
        histogram_matching=bool(raw.get("histogram_matching", True)),
        prior_interpolation=interpolation,
    )


def _parse_segmentation(raw: dict) -> SegmentationPolicy:
    anatomical = raw.get("anatomical", "brain")
    if anatomical not in ANATOMICAL_CHOICES:
        raise PolicyError("Pipeline policy segmentation.anatomical must be 'brain' or 'raw'.")
    weight = raw.get("prior_weight", 0.5)
    if not isinstance(weight, (int, float)) or isinstance(weight, bool) or not 0.0 <= weight <= 1.0:
        raise PolicyError("Pipeline policy segmentation.prior_weight must be a number in [0, 1].")
    posteriors = raw.get("n4_posteriors", [1, 2])
    if not isinstance(posteriors, list) or not all(isinstance(p, int) and p in (1, 2) for p in posteriors):
        raise PolicyError("Pipeline policy segmentation.n4_posteriors must be a list drawn from [1, 2].")
    extra_args = raw.get("extra_args", ["-z", "1"])
    _require_str_list(extra_args, "segmentation.extra_args")
    return SegmentationPolicy(
        anatomical=anatomical,
        prior_weight=float(weight),
        n4_posteriors=list(posteriors),
        extra_args=[str(a) for a in extra_args],
    )


def _parse_label_algebra(raw: dict) -> LabelAlgebraPolicy:
    threshold = raw.get("double_count_threshold", 1.1)
    if not isinstance(threshold, (int, float)) or isinstance(threshold, bool) or threshold <= 1.0:
        raise PolicyError("Pipeline policy label_algebra.double_count_threshold must be a number > 1.")
    return LabelAlgebraPolicy(double_count_threshold=float(threshold))


def _parse_qc(raw: dict) -> QcPolicy:
    return QcPolicy(fatal=bool(raw.get("fatal", False)), overlay=bool(raw.get("overlay", True)))


def _parse_cleanup(raw: dict) -> bool:
    return bool(raw.get("intermediates", False))


def _require_str_list(value, name: str) -> None:
    if not isinstance(value, list) or not all(isinstance(v, (str, int, float)) for v in value):
        raise PolicyError(f"Pipeline policy {name} must be a list of strings.")
