"""CLI entrypoint for index key violation detection and correction."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from .config import load_config
from .correction import ViolationCorrection
from .detection import ViolationDetection
from .errors import IndexViolationError, reason_code
from .logging_utils import configure_logging
from .observability import export_summary

logger = logging.getLogger("index_violation.cli")


def _confirm(prompt: str) -> bool:
    while True:
        answer = input(f"{prompt} (y/n): ").strip().lower()
        if answer in {"y", "yes"}:
            return True
        if answer in {"n", "no"}:
            return False
        print("Please answer y or n.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audit and repair candidate index key values on a DynamoDB table")
    parser.add_argument("--profile", required=True, help="Path to audit profile YAML")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--detect", choices=["keep", "delete"], help="Scan the table for violations")
    action.add_argument("--correct", choices=["update", "delete"], help="Apply a correction file to the table")
    parser.add_argument(
        "--conditional-update",
        action="store_true",
        help="Only update values still equal to the ones recorded at detection time",
    )
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt for destructive modes")
    parser.add_argument("--summary", help="Write the run summary as JSON to this path")
    parser.add_argument("--log-file", help="Also append logs to this file")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
        if args.conditional_update and args.correct != "update":
            parser.error("--conditional-update only applies to --correct update")
    except SystemExit as exc:
        # argparse exits 2 on usage errors; every failure here exits 1
        raise SystemExit(1 if exc.code else 0) from exc

    configure_logging(level=logging.INFO, log_path=args.log_file)
    destructive = args.detect == "delete" or args.correct is not None
    try:
        config = load_config(Path(args.profile))
        if destructive and not args.yes:
            if not _confirm(f"This run will modify table {config.table_name}. Continue?"):
                logger.info("Run cancelled by user")
                raise SystemExit(1)
        if args.detect:
            summary = ViolationDetection(config).run(delete=args.detect == "delete")
            mode = f"detect_{args.detect}"
        elif args.correct == "update":
            summary = ViolationCorrection(config).update_from_file(use_conditional=args.conditional_update)
            mode = "correct_update"
        else:
            summary = ViolationCorrection(config).delete_from_file()
            mode = "correct_delete"
    except IndexViolationError as exc:
        logger.error("Run failed reason=%s error=%s", reason_code(exc), str(exc))
        raise SystemExit(1) from exc

    payload = {"table": config.table_name, "mode": mode, **summary.as_dict()}
    if args.summary:
        payload = export_summary(args.summary, payload)
    print(json.dumps(payload, sort_keys=True))
    raise SystemExit(0)


if __name__ == "__main__":
    main()
