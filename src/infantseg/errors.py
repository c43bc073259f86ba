"""
Error taxonomy for infantseg runs.

Stages raise these; `infantseg.pipeline.run_pipeline` catches them once and
turns them into a FAIL StepResult carrying the stage id.
"""

from __future__ import annotations

from typing import Optional, Sequence


class PipelineError(RuntimeError):
    """Base class for every fatal pipeline condition."""

    exit_code = 1

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class InputNotFound(PipelineError):
    """Input volume missing or not a NIfTI file."""

    exit_code = 3


class TemplateBundleError(PipelineError):
    """Age template directory or one of its members is missing."""

    exit_code = 3


class ExternalToolFailure(PipelineError):
    """An external tool exited nonzero, timed out, or left its outputs missing."""

    exit_code = 4

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message, stage=stage)
        self.command = list(command) if command else []
        self.returncode = returncode
        self.output = output


class UnexpectedStageError(PipelineError):
    """A stage raised an exception outside this taxonomy (OSError, decode errors, ...)."""

    exit_code = 1


class EmptyOutputError(PipelineError):
    """The output directory holds no files after the run."""

    exit_code = 5


class PolicyError(ValueError):
    """Raised when the pipeline policy YAML is invalid."""

    exit_code = 2
