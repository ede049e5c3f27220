"""Entry point for `python -m atom_reconciler` and the `atom-reconciler` CLI script.

Exit codes: 0 when the run completed, 2 when it paused for human review, 1 on failure.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

from pydantic import ValidationError

from atom_reconciler import (
    FileManifestRepository,
    HumanReviewInput,
    LangChainReasoningClient,
    ReconcilerError,
    ReconciliationInput,
    ReconciliationMode,
    ReconciliationOptions,
    ReconciliationOrchestrator,
    RunOutcome,
    RunStatus,
    RuntimeSettings,
    SqliteRunRepository,
)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_PAUSED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile orphan tests into intent atoms and molecules")
    parser.add_argument(
        "--state-root",
        type=Path,
        default=Path.cwd(),
        help="Directory holding checkpoints, run history and manifests (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a reconciliation run")
    run.add_argument("root_directory", type=Path, help="Repository to reconcile")
    run.add_argument(
        "--mode",
        default=ReconciliationMode.FULLSCAN.value,
        choices=[mode.value for mode in ReconciliationMode],
    )
    run.add_argument("--run-id", default=None)
    run.add_argument("--baseline", default=None, help="Baseline commit for delta mode")
    run.add_argument("--manifest-id", default=None, help="Reuse a completed manifest instead of rescanning")
    run.add_argument("--quality-threshold", type=float, default=None)
    run.add_argument("--max-tests", type=int, default=None)
    run.add_argument("--require-review", action="store_true")
    run.add_argument("--include-path", action="append", default=[])
    run.add_argument("--exclude-path", action="append", default=[])
    run.add_argument("--include-pattern", action="append", default=[])
    run.add_argument("--exclude-pattern", action="append", default=[])
    run.add_argument("--include-evidence", action="store_true")
    run.add_argument("--attach-tests", action="store_true", help="Emit attach_test_to_atom ops")
    run.add_argument("--no-docs", action="store_true", help="Skip documentation indexing")

    resume = sub.add_parser("resume", help="Resume a run paused for human review")
    resume.add_argument("run_id")
    resume.add_argument(
        "--decisions",
        type=Path,
        default=None,
        help="JSON file with atom_decisions / molecule_decisions",
    )
    return parser.parse_args(argv)


def build_input(args: argparse.Namespace) -> ReconciliationInput:
    root = args.root_directory.resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Root directory does not exist: {root}")
    return ReconciliationInput(
        root_directory=str(root),
        mode=ReconciliationMode(args.mode),
        run_id=args.run_id,
        options=ReconciliationOptions(
            manifest_id=args.manifest_id,
            require_review=args.require_review,
            quality_threshold=args.quality_threshold,
            max_tests=args.max_tests,
            include_paths=args.include_path,
            exclude_paths=args.exclude_path,
            include_file_patterns=args.include_pattern,
            exclude_file_patterns=args.exclude_pattern,
            delta_baseline_commit=args.baseline,
            include_attach_test_ops=args.attach_tests,
            include_evidence=args.include_evidence,
            analyze_docs=not args.no_docs,
        ),
    )


def load_decisions(path: Path | None) -> HumanReviewInput:
    if path is None:
        return HumanReviewInput()
    if not path.is_file():
        raise FileNotFoundError(f"Decisions file does not exist: {path}")
    return HumanReviewInput.model_validate_json(path.read_text(encoding="utf-8"))


def exit_code(outcome: RunOutcome) -> int:
    if outcome.is_paused:
        return EXIT_PAUSED
    if outcome.result is not None and outcome.result.status == RunStatus.FAILED:
        return EXIT_FAILED
    return EXIT_COMPLETED


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    state_root = args.state_root.resolve()
    try:
        # resume needs the checkpoint to outlive this process
        settings = replace(RuntimeSettings.from_env(), checkpoint_backend="sqlite")
        payload = build_input(args) if args.command == "run" else load_decisions(args.decisions)
    except (OSError, ValueError, ValidationError) as exc:
        logging.error("Invalid input: %s", exc)
        return EXIT_FAILED

    repository = SqliteRunRepository(settings.run_db_path(state_root))
    try:
        reasoning = LangChainReasoningClient(
            model_name=settings.model_name,
            timeout=settings.llm_timeout,
            repo_root=state_root,
        )
    except RuntimeError as exc:
        logging.warning("Atom inference disabled: %s", exc)
        reasoning = None

    orchestrator = ReconciliationOrchestrator(
        settings=settings,
        reasoning=reasoning,
        repository=repository,
        manifests=FileManifestRepository(settings.manifest_path(state_root)),
        state_root=state_root,
    )
    try:
        if args.command == "run":
            outcome = orchestrator.invoke(payload)
        else:
            outcome = orchestrator.resume(args.run_id, payload)
    except ReconcilerError as exc:
        logging.error("%s", exc)
        return EXIT_FAILED
    except Exception as exc:  # noqa: BLE001
        logging.exception("Reconciliation failed: %s", exc)
        return EXIT_FAILED
    finally:
        orchestrator.close()
        repository.close()

    print(json.dumps(outcome.model_dump(mode="json"), indent=2, default=str))
    return exit_code(outcome)


if __name__ == "__main__":
    raise SystemExit(main())
