from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from fakes import SAMPLE_FILES, ScriptedReasoning, SpyRepository, many_tests_files

from atom_reconciler import (
    AtomDecision,
    CheckpointNotFoundError,
    HumanReviewInput,
    InMemoryContentProvider,
    InMemoryManifestRepository,
    Manifest,
    ManifestNotReadyError,
    ManifestStatus,
    OrphanTestInfo,
    ProgressEmitter,
    ReconcilerError,
    ReconciliationInput,
    ReconciliationMode,
    ReconciliationOptions,
    ReconciliationOrchestrator,
    ReviewDecision,
    RunCancelledError,
    RunStatus,
    RuntimeSettings,
    SqliteRunRepository,
    validate_patch,
)
from atom_reconciler.models import EvidenceAnalysis, PatchOpType, RepoStructure
from atom_reconciler.nodes import ReconciliationNodes

OrchestratorFactory = Callable[..., ReconciliationOrchestrator]


def make_input(tmp_path: Path, *, run_id: str | None = None, mode=ReconciliationMode.FULLSCAN, **options: Any):
    root = tmp_path / "repo"
    root.mkdir(exist_ok=True)
    return ReconciliationInput(
        root_directory=str(root),
        mode=mode,
        run_id=run_id,
        options=ReconciliationOptions(**options),
    )


def test_passing_atom_completes_without_pause(
    tmp_path: Path, make_orchestrator: OrchestratorFactory, spy_repository: SpyRepository
) -> None:
    orchestrator = make_orchestrator()
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-0000beef", quality_threshold=80))

    assert not outcome.is_paused
    result = outcome.result
    assert result is not None
    assert result.status == RunStatus.COMPLETED
    assert result.run_id == "REC-0000beef"
    assert result.summary.total_orphan_tests == 1
    assert result.summary.inferred_atoms_count == 1
    assert result.summary.quality_pass_count == 1
    assert result.summary.llm_calls == 2
    assert result.metadata.persisted is True
    assert result.metadata.phases_completed[:2] == ["structure", "discover_fullscan"]
    assert result.metadata.phases_completed[-1] == "persist"
    assert validate_patch(result.patch) == []

    # interim persist inserted the row, persist only updated it
    assert spy_repository.methods() == ["create_run", "store_patch_ops", "update_run_status"]
    stored = spy_repository.find_run_by_run_id("REC-0000beef")
    assert stored is not None
    assert stored.status == RunStatus.COMPLETED
    assert stored.run_uuid == result.run_uuid


def test_atom_below_threshold_pauses_then_resume_completes(
    tmp_path: Path, make_orchestrator: OrchestratorFactory, spy_repository: SpyRepository
) -> None:
    orchestrator = make_orchestrator(reasoning=ScriptedReasoning(quality_score=60.0))
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-0000c0de", quality_threshold=80))

    assert outcome.is_paused
    review = outcome.review
    assert review is not None
    assert review.quality_threshold == 80
    assert [atom.quality_score for atom in review.pending_atoms] == [60.0]
    assert "below quality threshold" in review.reason
    state = orchestrator.get_run_state("REC-0000c0de")
    assert state["pending_human_review"] is True
    assert state["result"] is None
    assert "persist" not in state["phases_completed"]

    atom_id = review.pending_atoms[0].id
    resumed = orchestrator.resume(
        "REC-0000c0de",
        HumanReviewInput(atom_decisions=[AtomDecision(atom_id=atom_id, decision=ReviewDecision.APPROVE)]),
    )

    assert not resumed.is_paused
    assert resumed.result is not None
    assert resumed.result.status == RunStatus.COMPLETED
    assert resumed.result.run_id == "REC-0000c0de"
    create_op = next(op for op in resumed.result.patch.ops if op.type == PatchOpType.CREATE_ATOM)
    assert create_op.payload["verify_outcome"] == "approved"
    assert orchestrator.get_run_state("REC-0000c0de")["was_resumed"] is True
    assert spy_repository.methods().count("create_run") == 1


def test_require_review_pauses_even_when_quality_passes(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-00000001", require_review=True))

    assert outcome.is_paused
    assert outcome.review is not None
    assert outcome.review.reason == "review requested"
    assert len(outcome.review.pending_atoms) == 1


def test_rejected_atom_gets_no_attach_op(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    inp = make_input(tmp_path, run_id="REC-00000002", require_review=True, include_attach_test_ops=True)
    paused = orchestrator.invoke(inp)
    atom_id = paused.review.pending_atoms[0].id

    outcome = orchestrator.resume(
        "REC-00000002",
        HumanReviewInput(atom_decisions=[AtomDecision(atom_id=atom_id, decision=ReviewDecision.REJECT)]),
    )

    types = [op.type for op in outcome.result.patch.ops]
    assert PatchOpType.ATTACH_TEST_TO_ATOM not in types
    assert types.count(PatchOpType.CREATE_ATOM) == 1


def test_resume_unknown_run_raises_checkpoint_not_found(make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    with pytest.raises(CheckpointNotFoundError) as excinfo:
        orchestrator.resume("REC-deadbeef", HumanReviewInput())
    assert excinfo.value.run_id == "REC-deadbeef"
    assert isinstance(excinfo.value, KeyError)
    with pytest.raises(CheckpointNotFoundError):
        orchestrator.get_run_state("REC-deadbeef")


def test_resume_of_completed_run_is_rejected(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    orchestrator.invoke(make_input(tmp_path, run_id="REC-00000003"))
    with pytest.raises(CheckpointNotFoundError, match="not paused"):
        orchestrator.resume("REC-00000003", HumanReviewInput())


def test_invoke_refuses_to_restart_existing_run(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    orchestrator.invoke(make_input(tmp_path, run_id="REC-00000004"))
    with pytest.raises(ReconcilerError, match="already has a checkpoint"):
        orchestrator.invoke(make_input(tmp_path, run_id="REC-00000004"))


def test_generated_run_id_matches_format(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    outcome = make_orchestrator().invoke(make_input(tmp_path))
    assert re.fullmatch(r"REC-[a-f0-9]{8}", outcome.run_id)


@pytest.mark.parametrize("phase", ["structure", "discover_fullscan"])
def test_critical_phase_failure_propagates(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_orchestrator: OrchestratorFactory,
    spy_repository: SpyRepository,
    phase: str,
) -> None:
    def explode(self: ReconciliationNodes, state: dict) -> dict:
        raise RuntimeError(f"{phase} exploded")

    monkeypatch.setattr(ReconciliationNodes, phase, explode)
    orchestrator = make_orchestrator()
    with pytest.raises(RuntimeError, match="exploded"):
        orchestrator.invoke(make_input(tmp_path, run_id="REC-00000005"))
    assert spy_repository.calls == []


@pytest.mark.parametrize("phase", ["context", "infer_atoms", "verify"])
def test_recoverable_phase_failure_yields_failed_result(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_orchestrator: OrchestratorFactory,
    phase: str,
) -> None:
    def explode(self: ReconciliationNodes, state: dict) -> dict:
        raise RuntimeError(f"{phase} exploded")

    monkeypatch.setattr(ReconciliationNodes, phase, explode)
    outcome = make_orchestrator().invoke(make_input(tmp_path, run_id="REC-00000006"))

    assert not outcome.is_paused
    assert outcome.result is not None
    assert outcome.result.status == RunStatus.FAILED
    assert len(outcome.result.errors) == 1
    assert re.match(rf"^\[.+\] {phase}: {phase} exploded$", outcome.result.errors[0])


def test_failed_inference_forces_failed_status(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator(reasoning=ScriptedReasoning(fail_tasks=["infer_atoms"]))
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-00000007"))

    assert outcome.result is not None
    assert outcome.result.status == RunStatus.FAILED
    assert any("infer_atoms" in error for error in outcome.result.errors)
    state = orchestrator.get_run_state("REC-00000007")
    assert "synthesize_molecules" not in state["phases_completed"]


def test_missing_reasoning_collaborator_fails_run(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    outcome = make_orchestrator(reasoning=None).invoke(make_input(tmp_path, run_id="REC-00000008"))
    assert outcome.result.status == RunStatus.FAILED
    assert "No reasoning collaborator" in outcome.result.errors[0]


def test_synthesis_failure_falls_back_without_error(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator(reasoning=ScriptedReasoning(fail_tasks=["synthesize_molecules"]))
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-00000009"))

    assert outcome.result.status == RunStatus.COMPLETED
    assert outcome.result.errors == []
    # a single atom never forms a cluster
    assert outcome.result.summary.inferred_molecules_count == 0


def test_molecules_drop_unknown_atom_references(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    outcome = make_orchestrator().invoke(make_input(tmp_path, run_id="REC-0000000a"))
    molecule_ops = [op for op in outcome.result.patch.ops if op.type == PatchOpType.CREATE_MOLECULE]
    assert len(molecule_ops) == 1
    assert molecule_ops[0].payload["atom_ids"] == ["temp-0"]
    assert molecule_ops[0].payload["confidence"] == pytest.approx(0.7)


def test_persistence_failure_still_returns_result(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    failing = SpyRepository(fail_writes=True)
    outcome = make_orchestrator(repository=failing).invoke(make_input(tmp_path, run_id="REC-0000000b"))

    assert outcome.result is not None
    assert outcome.result.status == RunStatus.COMPLETED
    assert outcome.result.metadata.persisted is False
    assert outcome.result.metadata.persistence_error == "database unavailable"
    assert failing.methods() == ["create_run", "create_run"]


def test_cancel_before_invoke_aborts_run(
    tmp_path: Path, make_orchestrator: OrchestratorFactory, spy_repository: SpyRepository
) -> None:
    orchestrator = make_orchestrator()
    orchestrator.cancel("REC-0000000c")
    with pytest.raises(RunCancelledError):
        orchestrator.invoke(make_input(tmp_path, run_id="REC-0000000c"))
    assert spy_repository.calls == []
    assert not orchestrator.is_cancelled("REC-0000000c")


def test_cancel_during_inference_stops_before_next_phase(
    tmp_path: Path, make_orchestrator: OrchestratorFactory, spy_repository: SpyRepository
) -> None:
    holder: dict[str, ReconciliationOrchestrator] = {}
    reasoning = ScriptedReasoning(on_call=lambda request: holder["orchestrator"].cancel("REC-0000000d"))
    orchestrator = make_orchestrator(reasoning=reasoning)
    holder["orchestrator"] = orchestrator

    with pytest.raises(RunCancelledError) as excinfo:
        orchestrator.invoke(make_input(tmp_path, run_id="REC-0000000d"))

    assert excinfo.value.node == "synthesize_molecules"
    assert [request.task_type for request in reasoning.requests] == ["infer_atoms"]
    assert spy_repository.calls == []
    assert not orchestrator.is_cancelled("REC-0000000d")


def test_cancel_raised_inside_a_phase_propagates(
    tmp_path: Path, make_orchestrator: OrchestratorFactory, spy_repository: SpyRepository
) -> None:
    class CancellingAnalysisService:
        def analyze_test(self, test: OrphanTestInfo) -> EvidenceAnalysis:
            raise RunCancelledError("REC-0000ca11", "context")

    reasoning = ScriptedReasoning()
    orchestrator = make_orchestrator(reasoning=reasoning, analysis_service=CancellingAnalysisService())

    with pytest.raises(RunCancelledError) as excinfo:
        orchestrator.invoke(make_input(tmp_path, run_id="REC-0000ca11"))

    assert excinfo.value.node == "context"
    assert reasoning.requests == []
    assert spy_repository.calls == []


def test_atom_ids_stay_unique_across_inference_batches(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    repository = SqliteRunRepository(tmp_path / "runs.sqlite")
    reasoning = ScriptedReasoning()
    orchestrator = make_orchestrator(
        settings=RuntimeSettings(batch_size=5),
        reasoning=reasoning,
        repository=repository,
        content_provider=InMemoryContentProvider(many_tests_files(6)),
    )
    try:
        outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-0000ba7c", quality_threshold=80))
        stored = repository.find_run_by_run_id("REC-0000ba7c")
    finally:
        repository.close()

    result = outcome.result
    assert result is not None
    assert result.status == RunStatus.COMPLETED
    assert result.summary.total_orphan_tests == 6
    assert [request.task_type for request in reasoning.requests] == ["infer_atoms", "infer_atoms", "synthesize_molecules"]
    assert [len(request.context_batch) for request in reasoning.requests[:2]] == [5, 1]
    assert result.metadata.llm_calls == 3
    assert result.metadata.persisted is True
    assert result.metadata.persistence_error is None
    assert validate_patch(result.patch) == []

    atom_ids = [op.target for op in result.patch.ops if op.type == PatchOpType.CREATE_ATOM]
    assert len(atom_ids) == len(set(atom_ids)) == 6
    assert stored is not None
    assert stored.status == RunStatus.COMPLETED
    assert sorted(atom.id for atom in stored.atoms) == sorted(atom_ids)


def test_failed_inference_batch_keeps_other_batches_and_pauses(
    tmp_path: Path, make_orchestrator: OrchestratorFactory
) -> None:
    reasoning = ScriptedReasoning(fail_batches=[0])
    orchestrator = make_orchestrator(
        settings=RuntimeSettings(batch_size=5),
        reasoning=reasoning,
        content_provider=InMemoryContentProvider(many_tests_files(6)),
    )

    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-0000ba7d", quality_threshold=80))

    assert outcome.is_paused
    review = outcome.review
    assert review is not None
    assert "1 errors recorded" in review.reason
    assert len(review.errors) == 1
    assert "infer_atoms: batch 0: batch 0 timed out" in review.errors[0]
    assert [atom.source_test.test_name for atom in review.pending_atoms] == ["adds item 5 to the cart"]

    state = orchestrator.get_run_state("REC-0000ba7d")
    assert state["llm_calls"] == 3
    assert "infer_atoms" in state["phases_completed"]
    atom_ids = [atom["id"] for atom in state["inferred_atoms"]]
    assert len(atom_ids) == len(set(atom_ids)) == 1


def test_delta_without_baseline_falls_back_to_fullscan(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator()
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-0000000e", mode=ReconciliationMode.DELTA))

    assert outcome.result.status == RunStatus.COMPLETED
    state = orchestrator.get_run_state("REC-0000000e")
    assert state["delta_summary"]["used_fallback"] is True
    assert state["delta_summary"]["fallback_reason"] == "no baseline commit supplied"
    assert "discover_delta" in state["phases_completed"]
    assert len(state["orphan_tests"]) == 1


def _complete_manifest() -> Manifest:
    test = OrphanTestInfo(
        file_path="src/cart/cart.spec.ts",
        test_name="Cart > adds an item to the cart",
        line_number=4,
        test_code="it('adds an item to the cart', () => {})",
    )
    return Manifest(
        id="manifest-1",
        status=ManifestStatus.COMPLETE,
        repo_structure=RepoStructure(root_directory="/repo", test_files=[test.file_path]),
        orphan_tests=[test],
        context={test.key: EvidenceAnalysis(summary="adds an item")},
    )


def test_manifest_shortcut_skips_deterministic_phases(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    manifests = InMemoryManifestRepository([_complete_manifest()])
    orchestrator = make_orchestrator(manifests=manifests)
    outcome = orchestrator.invoke(make_input(tmp_path, run_id="REC-0000000f", manifest_id="manifest-1"))

    assert outcome.result.status == RunStatus.COMPLETED
    phases = orchestrator.get_run_state("REC-0000000f")["phases_completed"]
    assert phases[0] == "load_manifest"
    assert "structure" not in phases
    assert "context" not in phases
    state = orchestrator.get_run_state("REC-0000000f")
    assert list(state["test_analyses"]) == ["src/cart/cart.spec.ts:Cart > adds an item to the cart"]


@pytest.mark.parametrize("status", [ManifestStatus.PENDING, ManifestStatus.GENERATING, ManifestStatus.FAILED])
def test_incomplete_manifest_stops_the_run(
    tmp_path: Path, make_orchestrator: OrchestratorFactory, status: ManifestStatus
) -> None:
    manifest = _complete_manifest().model_copy(update={"status": status})
    orchestrator = make_orchestrator(manifests=InMemoryManifestRepository([manifest]))
    with pytest.raises(ManifestNotReadyError):
        orchestrator.invoke(make_input(tmp_path, run_id="REC-00000010", manifest_id="manifest-1"))


def test_missing_manifest_stops_the_run(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    orchestrator = make_orchestrator(manifests=InMemoryManifestRepository())
    with pytest.raises(ManifestNotReadyError, match="not found"):
        orchestrator.invoke(make_input(tmp_path, run_id="REC-00000011", manifest_id="missing"))


def test_progress_events_are_emitted_per_phase(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    progress = ProgressEmitter(maxsize=64)
    make_orchestrator(progress=progress).invoke(make_input(tmp_path, run_id="REC-00000012"))

    events = progress.drain()
    assert events[0].phase == "structure"
    assert events[-1].phase == "persist"
    assert events[-1].percent == 100
    assert all(event.run_id == "REC-00000012" for event in events)


def test_full_progress_queue_never_blocks_the_run(tmp_path: Path, make_orchestrator: OrchestratorFactory) -> None:
    progress = ProgressEmitter(maxsize=1)
    outcome = make_orchestrator(progress=progress).invoke(make_input(tmp_path, run_id="REC-00000013"))

    assert outcome.result.status == RunStatus.COMPLETED
    assert progress.dropped > 0
    assert len(progress.drain()) == 1


def test_sqlite_checkpoint_survives_a_new_orchestrator(tmp_path: Path, spy_repository: SpyRepository) -> None:
    settings = RuntimeSettings(checkpoint_backend="sqlite")
    provider = InMemoryContentProvider(SAMPLE_FILES)
    first = ReconciliationOrchestrator(
        settings=settings,
        reasoning=ScriptedReasoning(quality_score=40.0),
        repository=spy_repository,
        content_provider=provider,
        state_root=tmp_path,
    )
    paused = first.invoke(make_input(tmp_path, run_id="REC-00000014"))
    first.close()
    assert paused.is_paused
    assert (tmp_path / ".reconciler" / "checkpoints.sqlite").is_file()

    second = ReconciliationOrchestrator(
        settings=settings,
        reasoning=ScriptedReasoning(),
        repository=spy_repository,
        content_provider=provider,
        state_root=tmp_path,
    )
    try:
        atom_id = paused.review.pending_atoms[0].id
        outcome = second.resume(
            "REC-00000014",
            HumanReviewInput(atom_decisions=[AtomDecision(atom_id=atom_id, decision=ReviewDecision.APPROVE)]),
        )
    finally:
        second.close()

    assert outcome.result.status == RunStatus.COMPLETED
    assert spy_repository.methods() == ["create_run", "store_patch_ops", "update_run_status"]
