"""
infantseg command line interface.

Implements `run` (full pipeline), `check` (re-validate a finished run) and
`check-env` (S0 environment checks).
"""

from __future__ import annotations


import argparse
import json
import logging
import sys
from pathlib import Path

from importlib import metadata

from infantseg.errors import PolicyError
from infantseg.pipeline import StepResult, check_pipeline, run_pipeline
from infantseg.policy import load_pipeline_policy
from infantseg.S0_setup import run_S0_setup
from infantseg.templates import resolve_templates_root

LOG_FORMAT = "[infantseg] %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="infantseg", description="Infant brain MRI segmentation pipeline")
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every tool command.")
    subparsers = parser.add_subparsers(dest="command", required=False)

    run_parser = subparsers.add_parser("run", help="Segment one subject")
    run_parser.add_argument("input", type=Path, help="Subject T1/T2 volume (.nii or .nii.gz)")
    run_parser.add_argument("age", help="Age token selecting the template bundle, e.g. 12")
    run_parser.add_argument("--templates-dir", type=Path, help="Templates root holding one folder per age")
    run_parser.add_argument("--work", type=Path, help="Working directory for intermediates")
    run_parser.add_argument("--out", type=Path, help="Output directory")
    _add_policy_argument(run_parser)

    check_parser = subparsers.add_parser("check", help="Re-validate a finished run without running tools")
    check_parser.add_argument("--out", type=Path, help="Output directory of the run")
    _add_policy_argument(check_parser)

    env_parser = subparsers.add_parser("check-env", help="Check external tools and templates")
    env_parser.add_argument("--templates-dir", type=Path, help="Templates root holding one folder per age")
    env_parser.add_argument(
        "--logs",
        type=Path,
        help="Directory for S0_setup_qc.json (default: <output_dir>/logs)",
    )
    _add_policy_argument(env_parser)

    return parser


def _add_policy_argument(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument(
        "--policy",
        type=Path,
        help="Pipeline policy YAML (default: built-in defaults)",
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("infantseg")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        return 0

    if not args.command:
        parser.error("No command provided.")
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )

    try:
        policy = load_pipeline_policy(args.policy)
    except PolicyError as err:
        print(json.dumps({"status": "FAIL", "failure_message": str(err)}, indent=2))
        return err.exit_code

    if args.command == "run":
        result = run_pipeline(
            input_path=args.input,
            age=args.age,
            policy=policy,
            templates_dir=args.templates_dir,
            work_dir=args.work,
            out_dir=args.out,
        )
    elif args.command == "check":
        result = check_pipeline(args.out or policy.paths.output_dir)
    elif args.command == "check-env":
        templates_root = resolve_templates_root(args.templates_dir, policy.paths.templates_root)
        logs_dir = args.logs or policy.paths.output_dir / "logs"
        setup = run_S0_setup(policy, logs_dir, templates_root)
        result = StepResult(
            status=setup.status,
            failure_message=setup.failure_message,
            failure_stage="S0_setup" if setup.status == "FAIL" else None,
            exit_code=0 if setup.status in {"PASS", "WARN"} else 1,
            qc_path=setup.qc_path,
        )
    else:
        parser.error(f"Unknown command: {args.command}")
        return 2

    # Print a compact summary for humans.
    summary = {
        "status": result.status,
        "failure_stage": result.failure_stage,
        "failure_message": result.failure_message,
        "qc_path": str(result.qc_path) if result.qc_path else None,
    }
    print(json.dumps(summary, indent=2))

    if result.status in {"PASS", "WARN"}:
        return 0
    return result.exit_code or 1


if __name__ == "__main__":
    sys.exit(main())
