from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv

from ..config.loader import DEFAULT_CONFIG_PATH, load_config
from ..errors import PipelineError
from ..logging.init import log_summary, setup_logging
from ..models.job import JobStatus, Phase, SubmissionMetadata
from ..models.processing_result import PhaseOutcome, PhaseResult
from ..services.orchestrator import PipelineController
from ..services.summary import render_summary_line

"""CLI entrypoint: ``python -m sheet_migrate.cli <command> ...``.

Exit codes:
- 0: every phase succeeded without row errors
- 2: completed with row errors, or cancelled / partial
- 1: fatal (config, structural, ceiling, timeout, database)

Database settings: ``.env`` (python-dotenv, override) > process environment >
config ``database`` block.
"""

__all__ = [
    "EXIT_SUCCESS_ALL",
    "EXIT_PARTIAL_FAILURE",
    "EXIT_FATAL",
    "main",
]

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

logger = logging.getLogger(__name__)


def _load_env_file(path: Path, override: bool = True) -> None:
    """.env の値で既存環境変数を上書きし、接続情報を最優先にする。"""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="sheet_migrate", description="Staged spreadsheet -> database migration")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="pipeline YAML")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="ingest, validate, apply and reconcile a workbook")
    run.add_argument("file", type=Path)
    run.add_argument("--job-id")
    run.add_argument("--max-rows", type=int)
    run.add_argument("--submitted-by", default="cli")

    ingest = sub.add_parser("ingest", help="stage a workbook only")
    ingest.add_argument("file", type=Path)
    ingest.add_argument("--job-id")
    ingest.add_argument("--max-rows", type=int)
    ingest.add_argument("--submitted-by", default="cli")

    for name, text in (("validate", "validate staged rows"), ("reconcile", "report staged/valid/applied counts")):
        sp = sub.add_parser(name, help=text)
        sp.add_argument("job_id")

    apply = sub.add_parser("apply", help="insert valid rows into the target tables")
    apply.add_argument("job_id")
    apply.add_argument("--from-level", type=int, default=0, help="first dependency level to apply")

    resume = sub.add_parser("resume", help="continue an interrupted job from its checkpoint")
    resume.add_argument("job_id")
    resume.add_argument("file", type=Path, nargs="?")

    status = sub.add_parser("status", help="show job status")
    status.add_argument("job_id")

    errors = sub.add_parser("errors", help="export the staged error rows of a job")
    errors.add_argument("job_id")
    errors.add_argument("--out", type=Path)
    errors.add_argument("--force-streaming", action="store_true")
    errors.add_argument("--prefer-flat-text", action="store_true")

    cleanup = sub.add_parser("cleanup", help="purge staging rows of a job")
    cleanup.add_argument("job_id", nargs="?")
    cleanup.add_argument("--old-checkpoints", action="store_true", help="also delete expired checkpoint files")

    inspect = sub.add_parser("inspect", help="print headers and first rows of each sheet")
    inspect.add_argument("file", type=Path)
    inspect.add_argument("--rows", type=int, default=3)

    sub.add_parser("init-db", help="create staging tables")
    return p.parse_args(argv)


def _exit_code(result: PhaseResult) -> int:
    if result.outcome is PhaseOutcome.SUCCESS:
        return EXIT_SUCCESS_ALL
    if result.outcome is PhaseOutcome.FATAL:
        return EXIT_FATAL
    return EXIT_PARTIAL_FAILURE


def _report(result: PhaseResult) -> int:
    if result.outcome is PhaseOutcome.FATAL:
        logger.error(f"job {result.job_id}: {result.failure_reason}: {result.message}")
    # log_summary が "SUMMARY " を付けるため先頭を除く
    log_summary(render_summary_line(result)[len("SUMMARY "):])
    return _exit_code(result)


def _inspect_data(path: Path, rows: int) -> int:
    if not path.exists():
        logger.error(f"inspect: file not found: {path}")
        return EXIT_FATAL
    frames = pd.read_excel(path, sheet_name=None, nrows=rows, dtype=str, engine="openpyxl")
    print(f"FILE: {path.name}")
    for sname, df in frames.items():
        print(f"  SHEET: {sname} cols={list(df.columns)}")
        sample = df.where(df.notna(), None).to_dict(orient="records")
        print("    sample_rows=", sample)
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    # [] を渡したときに sys.argv が混入しないよう None のみ置き換える
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    setup_logging(debug=args.debug)
    _load_env_file(Path(".env"), override=True)

    if args.command == "inspect":
        return _inspect_data(args.file, args.rows)

    try:
        cfg = load_config(args.config)
        controller = PipelineController(cfg)
    except PipelineError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL
    except Exception as e:
        logger.error(f"startup failed: {type(e).__name__}: {e}")
        return EXIT_FATAL

    try:
        return _dispatch(controller, args)
    except PipelineError as e:
        logger.error(f"{args.command}: {e}")
        return EXIT_FATAL


def _dispatch(controller: PipelineController, args: argparse.Namespace) -> int:
    command = args.command
    if command == "init-db":
        logger.info("staging schema ready")
        return EXIT_SUCCESS_ALL

    if command in ("run", "ingest"):
        if not args.file.exists():
            logger.error(f"file not found: {args.file}")
            return EXIT_FATAL
        metadata = SubmissionMetadata(
            submitted_by=args.submitted_by,
            max_rows=args.max_rows,
            job_id=args.job_id,
            file_name=args.file.name,
        )
        job_id = controller.create_job(args.file, metadata)
        if command == "run":
            return _report(controller.run(job_id, max_rows=args.max_rows))
        return _report(controller.run_phase(job_id, Phase.INGEST, max_rows=args.max_rows))

    if command == "validate":
        return _report(controller.run_phase(args.job_id, Phase.VALIDATE))
    if command == "apply":
        return _report(controller.run_phase(args.job_id, Phase.APPLY, start_level=args.from_level))
    if command == "reconcile":
        return _report(controller.run_phase(args.job_id, Phase.RECONCILE))
    if command == "resume":
        result = controller.resume(args.job_id, args.file)
        return _report(result) if result is not None else EXIT_SUCCESS_ALL

    if command == "status":
        s = controller.get_status(args.job_id)
        print(
            f"job={s.job_id} file={s.file_name} status={s.status.value} phase={s.current_phase} "
            f"progress={s.progress_percent:g}% processed={s.processed_rows}/{s.total_rows} "
            f"valid={s.valid_rows} errors={s.error_rows} inserted={s.inserted_rows}"
        )
        if s.error_message:
            print(f"error={s.error_message}")
        return EXIT_FATAL if s.status is JobStatus.FAILED else EXIT_SUCCESS_ALL

    if command == "errors":
        written = controller.export_errors(
            args.job_id,
            args.out,
            force_streaming=args.force_streaming,
            prefer_flat_text=args.prefer_flat_text,
        )
        logger.info(f"wrote {written.rows_written} error row(s) to {written.path} ({written.strategy.value})")
        return EXIT_SUCCESS_ALL

    if command == "cleanup":
        if args.job_id:
            counts = controller.cleanup(args.job_id)
            logger.info(f"job {args.job_id}: purged {counts}")
        if args.old_checkpoints:
            logger.info(f"removed {controller.cleanup_checkpoints()} old checkpoint(s)")
        return EXIT_SUCCESS_ALL

    logger.error(f"unknown command: {command}")
    return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
