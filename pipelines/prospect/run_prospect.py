"""CLI for running, retrying and inspecting prospect research pipelines."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from app.config import Settings, settings
from app.models.prospect import Target
from app.services.prospecting.coordinator import PipelineOutcome
from app.services.prospecting.errors import ProspectingError
from app.services.prospecting.service import ProspectPipelineService, RunMode

logger = logging.getLogger("pipelines.prospect.run_prospect")


def _parse_pass_ids(value: str) -> list[int]:
    try:
        pass_ids = sorted({int(item) for item in value.split(",") if item.strip()})
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"--passes expects comma-separated ids, got {value!r}") from exc
    if not pass_ids:
        raise argparse.ArgumentTypeError("--passes requires at least one id")
    return pass_ids


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-pass prospect research pipeline.")
    parser.add_argument("--name", help="Business name to research")
    parser.add_argument("--location", default=None, help='Location as "City, ST"')
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--retry", action="store_true", help="Re-run only the passes listed for retry"
    )
    action.add_argument(
        "--force", action="store_true", help="Re-run every pass, ignoring earlier successes"
    )
    action.add_argument(
        "--status", action="store_true", help="Print retry status without running passes"
    )
    action.add_argument(
        "--retry-all",
        action="store_true",
        help="Retry every recorded business that still has passes to retry",
    )
    action.add_argument(
        "--list-retry",
        action="store_true",
        help="List recorded businesses that still have passes to retry",
    )
    parser.add_argument(
        "--passes",
        type=_parse_pass_ids,
        default=None,
        help="Run exactly these pass ids (e.g. 2,3)",
    )
    parser.add_argument(
        "--attempt-log-dir",
        type=Path,
        default=None,
        help="Directory for the JSONL attempt log (overrides ATTEMPT_LOG_DIR)",
    )
    parser.add_argument(
        "--fixture-dir",
        type=Path,
        default=None,
        help="Directory of recorded source responses (overrides PROSPECT_FIXTURE_DIR)",
    )
    parser.add_argument(
        "--output",
        "--out",
        dest="output",
        type=Path,
        default=None,
        help="Write the JSON summary here instead of stdout",
    )
    args = parser.parse_args(argv)
    needs_target = not (args.retry_all or args.list_retry)
    if needs_target and not args.name:
        parser.error("--name is required unless --retry-all or --list-retry is given")
    if args.passes and (args.retry or args.force or args.status or not needs_target):
        parser.error("--passes cannot be combined with --retry, --force, --status or batch modes")
    return args


def build_settings(
    *,
    attempt_log_dir: Path | None = None,
    fixture_dir: Path | None = None,
    base: Settings | None = None,
) -> Settings:
    config = base or settings
    updates: dict[str, Any] = {}
    if attempt_log_dir is not None:
        updates["attempt_log_dir"] = str(attempt_log_dir)
    if fixture_dir is not None:
        updates["prospect_fixture_dir"] = str(fixture_dir)
    return config.model_copy(update=updates) if updates else config


def run_pipeline(
    args: argparse.Namespace,
    *,
    service: ProspectPipelineService | None = None,
) -> dict[str, Any]:
    """Execute the requested command and return a JSON-serializable summary."""
    config = build_settings(attempt_log_dir=args.attempt_log_dir, fixture_dir=args.fixture_dir)
    owns_service = service is None
    service = service or ProspectPipelineService.from_settings(config)
    try:
        if args.list_retry:
            candidates = service.retry_candidates()
            return {
                "command": "list-retry",
                "targets": [status.model_dump(mode="json") for status in candidates],
            }
        if args.retry_all:
            outcomes = service.retry_all()
            return {
                "command": "retry-all",
                "retried": [_summarize(outcome) for outcome in outcomes],
            }

        target = Target.parse(args.name, args.location)
        if args.status:
            status = service.status(target)
            return {
                "command": "status",
                "target_key": target.key,
                "status": status.model_dump(mode="json") if status else None,
            }
        if args.retry:
            outcome = service.run(target, RunMode.RETRY)
            return {
                "command": "retry",
                "target_key": target.key,
                "result": _summarize(outcome) if outcome else None,
            }
        if args.force:
            return {"command": "force", **_summarize(service.force_reprocess(target))}
        return {"command": "process", **_summarize(service.process(target, only_passes=args.passes))}
    finally:
        if owns_service:
            service.close()


def _summarize(outcome: PipelineOutcome) -> dict[str, Any]:
    attempt = outcome.attempt
    record = outcome.record
    return {
        "target_key": attempt.target_key,
        "attempt_id": attempt.attempt_id,
        "successful_passes": attempt.successful_passes,
        "failed_passes": attempt.failed_passes,
        "not_attempted_passes": attempt.not_attempted_passes,
        "next_retry_passes": attempt.next_retry_passes,
        "completeness": attempt.completeness,
        "overall_confidence": record.overall_confidence,
        "qualification_score": record.qualification_score,
        "review_flags": [field.value for field in record.review_flags],
        "errors": {
            str(result.pass_id): result.errors for result in attempt.pass_results if result.errors
        },
        "fields": {
            field.value: resolved.resolved_value
            for field, resolved in record.resolved_fields.items()
        },
    }


def _write_summary(summary: dict[str, Any], output: Path | None) -> None:
    rendered = json.dumps(summary, indent=2, sort_keys=True, default=str)
    if output is None:
        sys.stdout.write(rendered + "\n")
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(rendered + "\n", encoding="utf-8")
    logger.info("Wrote summary to %s", output)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    try:
        summary = run_pipeline(args)
        _write_summary(summary, args.output)
    except ProspectingError as exc:
        logger.error("run_prospect failed: %s (code=%s)", exc, exc.code)
        return 1
    except Exception as exc:  # pragma: no cover - safeguard
        logger.exception("Unexpected prospect pipeline failure: %s", exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
