"""
Pipeline driver: runs S1..S7 in order, records every stage, and applies the
completion check.

Stages raise `PipelineError` subclasses; this module catches them once,
attaches the stage id, and reports a FAIL StepResult. There are no retries:
the first failing stage ends the run.
"""

from __future__ import annotations

import contextlib
import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

from jsonschema import Draft7Validator

from infantseg.errors import EmptyOutputError, PipelineError, UnexpectedStageError
from infantseg.labels import ALL_CLASSES, TISSUE_CSF
from infantseg.policy import PipelinePolicy
from infantseg.qc_checks import first_failure_message, run_output_checks
from infantseg.S1_input_verify import STAGE as S1_STAGE, run_S1_input_verify
from infantseg.S2_brain_extract import STAGE as S2_STAGE, run_S2_brain_extract
from infantseg.S3_registration import (
    STAGE_PRIOR_TRANSFER,
    STAGE_REGISTRATION,
    run_S3_prior_transfer,
    run_S3_registration,
)
from infantseg.S4_tissue_seg import STAGE as S4_STAGE, run_S4_tissue_seg
from infantseg.S5_label_algebra import STAGE as S5_STAGE, run_S5_label_algebra
from infantseg.S6_qc_montage import STAGE as S6_STAGE, run_S6_qc_montage
from infantseg.S7_volumes import ALL_VOLUMES_TABLE, STAGE as S7_STAGE, TISSUE_CSF_TABLE, run_S7_volumes
from infantseg.templates import resolve_templates_root
from infantseg.tools import StageContext
from infantseg.workfolder import allocate_workfolder, remove_intermediates

COMPLETION_STAGE = "completion_check"
OUTPUT_CHECKS_STAGE = "output_checks"
SUMMARY_STAGE = "run_summary"
QC_FILENAME = "pipeline_qc.json"
STEPS_FILENAME = "pipeline_steps.jsonl"
SCHEMA_PATH = Path(__file__).parent / "schemas" / "qc_pipeline.json"

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    status: str
    failure_message: Optional[str]
    failure_stage: Optional[str] = None
    exit_code: int = 0
    qc_path: Optional[Path] = None
    steps_path: Optional[Path] = None


@dataclass
class StageRecorder:
    """Appends one JSON line per finished stage to the steps log."""

    steps_path: Path
    timeout: Optional[float] = None
    records: List[dict] = field(default_factory=list)

    @contextlib.contextmanager
    def stage(self, stage_id: str) -> Iterator[StageContext]:
        ctx = StageContext(stage=stage_id, timeout=self.timeout)
        logger.info("--- %s ---", stage_id)
        start = time.monotonic()
        try:
            yield ctx
        except PipelineError as err:
            if err.stage is None:
                err.stage = stage_id
            self.append(ctx, "FAIL", str(err), start)
            raise
        except Exception as err:
            wrapped = UnexpectedStageError(f"{type(err).__name__}: {err}", stage=stage_id)
            self.append(ctx, "FAIL", str(wrapped), start)
            raise wrapped from err
        status = "WARN" if ctx.warnings else "PASS"
        self.append(ctx, status, "; ".join(ctx.warnings) or None, start)

    def append(self, ctx: StageContext, status: str, message: Optional[str], start: float) -> None:
        record = {
            "stage": ctx.stage,
            "status": status,
            "message": message,
            "duration_s": round(time.monotonic() - start, 3),
            "commands": list(ctx.commands),
        }
        self.records.append(record)
        self.steps_path.parent.mkdir(parents=True, exist_ok=True)
        with self.steps_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True))
            f.write("\n")


def run_pipeline(
    input_path: Path,
    age: str,
    policy: PipelinePolicy,
    templates_dir: Optional[Path] = None,
    work_dir: Optional[Path] = None,
    out_dir: Optional[Path] = None,
) -> StepResult:
    """
    Run S1..S7 for one subject and record the outcome.

    Args:
        input_path: Subject T2w volume (.nii or .nii.gz).
        age: Template age key, e.g. "12".
        policy: Loaded pipeline policy.
        templates_dir: Templates root; falls back to the INFANTSEG_TEMPLATES
            environment variable and then the policy.
        work_dir: Working directory; a fresh numbered folder is allocated
            under the policy work root when omitted.
        out_dir: Output directory; defaults to the policy output directory.

    Returns:
        StepResult with PASS/WARN/FAIL, the failing stage id and the exit code
        for the CLI. A failed S1 returns before anything is written.
    """
    out_dir = Path(out_dir) if out_dir is not None else policy.paths.output_dir
    templates_root = resolve_templates_root(templates_dir, policy.paths.templates_root)

    # Nothing is written until the input and templates resolve.
    s1_start = time.monotonic()
    try:
        resolved = run_S1_input_verify(Path(input_path), age, templates_root)
    except PipelineError as err:
        logger.error("%s", err)
        return StepResult(
            status="FAIL",
            failure_message=str(err),
            failure_stage=err.stage or S1_STAGE,
            exit_code=err.exit_code,
        )

    subject = resolved.subject
    out_dir.mkdir(parents=True, exist_ok=True)
    if work_dir is None:
        work_dir = allocate_workfolder(subject, policy.paths.work_root)
    else:
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
    logs_dir = work_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    steps_path = logs_dir / STEPS_FILENAME
    steps_path.write_text("", encoding="utf-8")
    qc_path = logs_dir / QC_FILENAME
    logger.info("Subject %s, age %s, work dir %s, output dir %s", subject, resolved.bundle.age, work_dir, out_dir)

    recorder = StageRecorder(steps_path=steps_path, timeout=policy.tools.timeout_s)
    recorder.append(
        StageContext(stage=S1_STAGE),
        _checks_status(resolved.checks),
        "; ".join(c["message"] for c in resolved.checks) or None,
        s1_start,
    )
    summary: dict = {
        "subject": subject,
        "age": resolved.bundle.age,
        "input": str(resolved.input_path),
        "templates": resolved.bundle.as_dict(),
        "work_dir": str(work_dir),
        "out_dir": str(out_dir),
        "policy_path": str(policy.source) if policy.source else None,
        "outputs": {},
        "volumes": {},
        "checks": [
            {"name": c["name"], "passed": False, "severity": c["severity"], "message": c["message"]}
            for c in resolved.checks
        ],
        "reportlets": {},
    }

    try:
        _run_stages(resolved, policy, work_dir, out_dir, recorder, summary)
        with recorder.stage(COMPLETION_STAGE):
            check_output_nonempty(out_dir)
    except PipelineError as err:
        logger.error("%s", err)
        summary.update(status="FAIL", failure_stage=err.stage, failure_message=str(err))
        try:
            _write_summary(qc_path, summary, recorder.records)
        except ValueError as summary_err:
            logger.error("%s", summary_err)
        return StepResult(
            status="FAIL",
            failure_message=str(err),
            failure_stage=err.stage,
            exit_code=err.exit_code,
            qc_path=qc_path,
            steps_path=steps_path,
        )

    warn_records = [r for r in recorder.records if r["status"] == "WARN"]
    failing = [c for c in summary["checks"] if not c["passed"]]
    status = "WARN" if warn_records or failing else "PASS"
    failure_message = first_failure_message(summary["checks"]) if failing else None
    if failure_message is None and warn_records:
        failure_message = f"{warn_records[0]['stage']}: {warn_records[0]['message']}"
    summary.update(status=status, failure_stage=None, failure_message=failure_message)
    try:
        _write_summary(qc_path, summary, recorder.records)
    except ValueError as err:
        # Outputs stay in place but are not published to <out>/logs.
        logger.error("%s", err)
        return StepResult(
            status="FAIL",
            failure_message=str(err),
            failure_stage=SUMMARY_STAGE,
            exit_code=1,
            qc_path=qc_path,
            steps_path=steps_path,
        )

    out_logs = out_dir / "logs"
    out_logs.mkdir(parents=True, exist_ok=True)
    shutil.copy2(qc_path, out_logs / QC_FILENAME)
    shutil.copy2(steps_path, out_logs / STEPS_FILENAME)

    if policy.cleanup_intermediates:
        removed = remove_intermediates(work_dir, keep={"logs"})
        logger.info("Removed %d intermediate entries from %s", removed, work_dir)

    logger.info("Pipeline finished with status %s", status)
    return StepResult(
        status=status,
        failure_message=failure_message,
        exit_code=0,
        qc_path=out_logs / QC_FILENAME,
        steps_path=out_logs / STEPS_FILENAME,
    )


def _run_stages(resolved, policy: PipelinePolicy, work_dir: Path, out_dir: Path, recorder: StageRecorder, summary: dict) -> None:
    subject = resolved.subject
    bundle = resolved.bundle
    outputs = summary["outputs"]

    with recorder.stage(S2_STAGE) as ctx:
        extraction = run_S2_brain_extract(resolved.input_path, out_dir, policy.tools, ctx)
    outputs.update(native_bet_image=str(extraction.brain), native_brain_mask=str(extraction.mask))

    with recorder.stage(STAGE_REGISTRATION) as ctx:
        transform = run_S3_registration(extraction.brain, bundle, work_dir, policy.registration, ctx)

    with recorder.stage(STAGE_PRIOR_TRANSFER) as ctx:
        references = run_S3_prior_transfer(bundle, extraction.brain, transform, work_dir, policy.registration, ctx)

    anatomical = resolved.input_path if policy.segmentation.anatomical == "raw" else extraction.brain
    with recorder.stage(S4_STAGE) as ctx:
        posteriors = run_S4_tissue_seg(
            anatomical=anatomical,
            brain_mask=extraction.mask,
            priors=references.priors,
            subject=subject,
            work_dir=work_dir,
            out_dir=out_dir,
            policy=policy.segmentation,
            ctx=ctx,
        )
    outputs["atlas_2classes"] = str(posteriors.atlas_2classes)

    with recorder.stage(S5_STAGE) as ctx:
        refined = run_S5_label_algebra(
            tissue=posteriors.tissue,
            csf=posteriors.csf,
            masks=references.masks,
            background=posteriors.background,
            subject=subject,
            work_dir=work_dir,
            out_dir=out_dir,
            policy=policy.label_algebra,
            ctx=ctx,
        )
    outputs["atlas_4classes"] = str(refined.atlas_4classes)

    with recorder.stage(S6_STAGE) as ctx:
        report = run_S6_qc_montage(
            brain=extraction.brain,
            tissue=posteriors.tissue,
            tissue_raw=posteriors.tissue_raw,
            csf=posteriors.csf,
            atlas_2classes=posteriors.atlas_2classes,
            atlas_4classes=refined.atlas_4classes,
            subject=subject,
            work_dir=work_dir,
            out_dir=out_dir,
            policy=policy.qc,
            ctx=ctx,
        )
        ctx.warnings.extend(f"{w['name']}: {w['message']}" for w in report.warnings)
    summary["reportlets"] = report.reportlets

    with recorder.stage(S7_STAGE) as ctx:
        two_class = run_S7_volumes(posteriors.atlas_2classes, TISSUE_CSF, out_dir, TISSUE_CSF_TABLE, ctx)
        four_class = run_S7_volumes(refined.atlas_4classes, ALL_CLASSES, out_dir, ALL_VOLUMES_TABLE, ctx)
    outputs.update(tissue_and_csf_volumes=str(two_class.path), all_volumes=str(four_class.path))
    summary["volumes"] = {"2classes": two_class.as_dict(), "4classes": four_class.as_dict()}

    with recorder.stage(OUTPUT_CHECKS_STAGE) as ctx:
        try:
            checks = run_output_checks(
                masks=references.masks,
                atlas_4classes=refined.atlas_4classes,
                ventricles_label=ALL_CLASSES.index_of("ventricles"),
                refined_ventricles_mask=refined.refined_ventricles_mask,
                sub_gm_label=ALL_CLASSES.index_of("sub_GM"),
                sub_gm_mask=references.masks["sub_GM_mask"],
                two_class_volumes=two_class.as_dict(),
                four_class_volumes=four_class.as_dict(),
            )
        except Exception as err:  # noqa: BLE001
            checks = [
                {"name": "output_checks", "passed": False, "severity": "WARN", "message": f"Checks not run: {err}"}
            ]
        ctx.warnings.extend(f"{c['name']}: {c['message']}" for c in checks if not c["passed"])
    summary["checks"].extend(checks)


def check_output_nonempty(out_dir: Path) -> None:
    """Raise EmptyOutputError unless `out_dir` holds at least one file."""
    if out_dir.is_dir() and any(p.is_file() for p in out_dir.rglob("*")):
        return
    raise EmptyOutputError(f"Output directory is empty: {out_dir}", stage=COMPLETION_STAGE)


def check_pipeline(out_dir: Path) -> StepResult:
    """
    Re-validate a finished run from its recorded summary, without running tools.

    Args:
        out_dir: Output directory of a previous run.

    Returns:
        The recorded status when the summary validates and every recorded
        output still exists; FAIL otherwise.
    """
    out_dir = Path(out_dir)
    qc_path = out_dir / "logs" / QC_FILENAME
    steps_path = out_dir / "logs" / STEPS_FILENAME
    try:
        check_output_nonempty(out_dir)
    except EmptyOutputError as err:
        return StepResult(status="FAIL", failure_message=str(err), failure_stage=err.stage, exit_code=err.exit_code)

    missing = [p for p in (qc_path, steps_path) if not p.exists() or p.stat().st_size == 0]
    if missing:
        return StepResult(
            status="FAIL",
            failure_message=f"Missing required artifact(s): {', '.join(str(p) for p in missing)}",
            exit_code=1,
            qc_path=qc_path,
            steps_path=steps_path,
        )

    try:
        validate_summary(qc_path)
    except ValueError as err:
        return StepResult(status="FAIL", failure_message=str(err), exit_code=1, qc_path=qc_path, steps_path=steps_path)

    summary = json.loads(qc_path.read_text(encoding="utf-8"))
    absent = [
        name for name, path in sorted(summary.get("outputs", {}).items()) if not path or not Path(path).exists()
    ]
    if absent:
        return StepResult(
            status="FAIL",
            failure_message=f"Recorded output(s) no longer present: {', '.join(absent)}",
            exit_code=1,
            qc_path=qc_path,
            steps_path=steps_path,
        )
    status = summary.get("status", "FAIL")
    return StepResult(
        status=status,
        failure_message=summary.get("failure_message"),
        failure_stage=summary.get("failure_stage"),
        exit_code=0 if status in {"PASS", "WARN"} else 1,
        qc_path=qc_path,
        steps_path=steps_path,
    )


def validate_summary(path: Path, schema_path: Path = SCHEMA_PATH) -> None:
    data = json.loads(path.read_text(encoding="utf-8"))
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        msgs = "; ".join(e.message for e in errors)
        raise ValueError(f"Schema validation failed for {path}: {msgs}")


def _checks_status(checks: List[dict]) -> str:
    return "WARN" if checks else "PASS"


def _write_summary(path: Path, summary: dict, records: List[dict]) -> Path:
    payload = dict(summary)
    payload["stages"] = [{"stage": r["stage"], "status": r["status"], "message": r["message"]} for r in records]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n", encoding="utf-8")
    validate_summary(path)
    return path
