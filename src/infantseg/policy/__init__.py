"""Policy loading and validation utilities."""

from .pipeline import (
    LabelAlgebraPolicy,
    PathsPolicy,
    PipelinePolicy,
    QcPolicy,
    RegistrationPolicy,
    SegmentationPolicy,
    ToolsPolicy,
    load_pipeline_policy,
)
from infantseg.errors import PolicyError

__all__ = [
    "LabelAlgebraPolicy",
    "PathsPolicy",
    "PipelinePolicy",
    "PolicyError",
    "QcPolicy",
    "RegistrationPolicy",
    "SegmentationPolicy",
    "ToolsPolicy",
    "load_pipeline_policy",
]
