"""Reconciliation workflow: phase table, error policy and pause/resume over a LangGraph StateGraph."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.errors import GraphInterrupt
from langgraph.graph import END, START, StateGraph

from .cache import MainCache
from .content import ContentProvider
from .context import AnalysisService
from .errors import CheckpointNotFoundError, ReconcilerError, RunCancelledError
from .manifests import ManifestRepository
from .models import (
    Atom,
    HumanReviewInput,
    Molecule,
    ReconciliationInput,
    ReconciliationMode,
    ReconciliationResult,
    ReviewRequest,
    RunOutcome,
    VerifyDecision,
    VerifyOutcome,
)
from .nodes import NodeContext, ReconciliationNodes, format_node_error, generate_run_id
from .progress import ProgressEmitter
from .reasoning import ReasoningClient
from .repository import RunRepository
from .settings import RuntimeSettings
from .state import RunState, initial_run_state, read_input
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

NodeHandler = Callable[[RunState], dict[str, Any]]

PHASE_PROGRESS = {
    "structure": 10,
    "discover_fullscan": 20,
    "discover_delta": 20,
    "load_manifest": 40,
    "test_quality": 30,
    "context": 45,
    "infer_atoms": 65,
    "synthesize_molecules": 75,
    "interim_persist": 80,
    "verify": 90,
    "persist": 100,
}

FORCED_PERSIST_PHASE = "persist"


@dataclass(frozen=True)
class PhaseNode:
    name: str
    handler: NodeHandler
    critical: bool
    wrapped: bool = True


def route_start(state: RunState) -> str:
    return "load_manifest" if read_input(state).options.manifest_id else "structure"


def route_after_structure(state: RunState) -> str:
    return "discover_delta" if read_input(state).mode == ReconciliationMode.DELTA else "discover_fullscan"


def route_after_verify(state: RunState) -> str:
    return "end" if state.get("pending_human_review") else "persist"


class ReconciliationOrchestrator:
    """Runs reconciliation as a checkpointed phase graph keyed by run id.

    ``invoke`` starts a run and ``resume`` continues one that paused for human
    review. Both return a ``RunOutcome``: completed with a result, or paused
    with a review request. Critical phase failures propagate to the caller;
    recoverable ones are recorded in ``errors`` and force the run to persist.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        tools: ToolRegistry | None = None,
        reasoning: ReasoningClient | None = None,
        repository: RunRepository | None = None,
        manifests: ManifestRepository | None = None,
        analysis_service: AnalysisService | None = None,
        cache: MainCache | None = None,
        content_provider: ContentProvider | None = None,
        progress: ProgressEmitter | None = None,
        state_root: str | Path | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
        context_workers: int = 1,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.progress = progress if progress is not None else ProgressEmitter(self.settings.progress_queue_size)
        self.ctx = NodeContext(
            settings=self.settings,
            tools=tools,
            reasoning=reasoning,
            repository=repository,
            manifests=manifests,
            analysis_service=analysis_service,
            cache=cache,
            progress=self.progress,
            content_provider=content_provider,
            context_workers=context_workers,
        )
        self.nodes = ReconciliationNodes(self.ctx)
        self._cancelled: set[str] = set()
        self._cancel_lock = threading.Lock()

        self._checkpoint_conn: sqlite3.Connection | None = None
        if checkpointer is None:
            checkpointer = self._default_checkpointer(Path(state_root) if state_root is not None else Path.cwd())
        self._checkpointer = checkpointer
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _default_checkpointer(self, root: Path) -> BaseCheckpointSaver:
        if self.settings.checkpoint_backend != "sqlite":
            return MemorySaver()
        path = self.settings.checkpoint_path(root)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._checkpoint_conn = sqlite3.connect(path, check_same_thread=False)
        return SqliteSaver(self._checkpoint_conn)

    def phase_table(self) -> list[PhaseNode]:
        nodes = self.nodes
        return [
            PhaseNode("structure", nodes.structure, critical=True),
            PhaseNode("discover_fullscan", nodes.discover_fullscan, critical=True),
            PhaseNode("discover_delta", nodes.discover_delta, critical=True),
            PhaseNode("load_manifest", nodes.load_manifest, critical=True),
            PhaseNode("test_quality", nodes.test_quality, critical=False),
            PhaseNode("context", nodes.context, critical=False),
            PhaseNode("infer_atoms", nodes.infer_atoms, critical=False),
            PhaseNode("synthesize_molecules", nodes.synthesize_molecules, critical=False),
            PhaseNode("interim_persist", nodes.interim_persist, critical=False),
            PhaseNode("verify", nodes.verify, critical=False),
            PhaseNode("persist", nodes.persist, critical=True, wrapped=False),
        ]

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunState)
        for phase in self.phase_table():
            graph.add_node(phase.name, self._wrap(phase) if phase.wrapped else phase.handler)

        graph.add_conditional_edges(START, route_start, {"load_manifest": "load_manifest", "structure": "structure"})
        graph.add_conditional_edges(
            "structure",
            route_after_structure,
            {"discover_fullscan": "discover_fullscan", "discover_delta": "discover_delta"},
        )
        graph.add_edge("discover_fullscan", "test_quality")
        graph.add_edge("discover_delta", "test_quality")
        graph.add_edge("test_quality", "context")
        graph.add_edge("context", "infer_atoms")
        graph.add_edge("load_manifest", "infer_atoms")
        graph.add_edge("infer_atoms", "synthesize_molecules")
        graph.add_edge("synthesize_molecules", "interim_persist")
        graph.add_edge("interim_persist", "verify")
        graph.add_conditional_edges("verify", route_after_verify, {"persist": "persist", "end": END})
        graph.add_edge("persist", END)
        return graph

    def _wrap(self, phase: PhaseNode) -> NodeHandler:
        def node(state: RunState) -> dict[str, Any]:
            run_id = state.get("run_id", "")
            if self.is_cancelled(run_id):
                raise RunCancelledError(run_id, phase.name)
            if not phase.critical and state.get("current_phase") == FORCED_PERSIST_PHASE:
                logger.info("Skipping %s for run %s: forced to persist", phase.name, run_id)
                return {}
            try:
                update = phase.handler(state)
            except (GraphInterrupt, RunCancelledError):
                raise
            except Exception as exc:
                if phase.critical:
                    logger.exception("Critical phase %s failed for run %s", phase.name, run_id)
                    raise
                logger.warning("Phase %s failed for run %s, continuing to persist: %s", phase.name, run_id, exc)
                return {"errors": [format_node_error(phase.name, exc)], "current_phase": FORCED_PERSIST_PHASE}
            self.progress.emit(run_id, phase.name, PHASE_PROGRESS.get(phase.name, 0), f"{phase.name} complete")
            return {
                **update,
                "phases_completed": [phase.name],
                "iteration": int(state.get("iteration", 0)) + 1,
            }

        node.__name__ = f"{phase.name}_node"
        return node

    def _config(self, run_id: str) -> dict[str, Any]:
        return {"recursion_limit": self.settings.recursion_limit, "configurable": {"thread_id": run_id}}

    def invoke(self, reconciliation_input: ReconciliationInput) -> RunOutcome:
        run_id = reconciliation_input.run_id or generate_run_id()
        config = self._config(run_id)
        if self.graph.get_state(config).values:
            raise ReconcilerError(f"Run {run_id!r} already has a checkpoint; use resume")
        logger.info(
            "Starting run %s (%s) for %s",
            run_id,
            reconciliation_input.mode.value,
            reconciliation_input.root_directory,
        )
        state = initial_run_state(run_id, reconciliation_input, start_time=time.time())
        return self._run(run_id, state, config)

    def resume(self, run_id: str, human_review: HumanReviewInput | None = None) -> RunOutcome:
        config = self._config(run_id)
        snapshot = self.graph.get_state(config)
        if not snapshot.values:
            raise CheckpointNotFoundError(run_id)
        if not snapshot.values.get("pending_human_review") or snapshot.values.get("result"):
            raise CheckpointNotFoundError(run_id, "run is not paused for human review")
        if self.is_cancelled(run_id):
            raise RunCancelledError(run_id)

        review = human_review if human_review is not None else HumanReviewInput()
        logger.info(
            "Resuming run %s with %d atom and %d molecule decisions",
            run_id,
            len(review.atom_decisions),
            len(review.molecule_decisions),
        )
        self.graph.update_state(
            config,
            {
                "human_review_input": review.model_dump(mode="json"),
                "pending_human_review": False,
                "was_resumed": True,
            },
            as_node="interim_persist",
        )
        return self._run(run_id, None, config)

    def _run(self, run_id: str, state: RunState | None, config: dict[str, Any]) -> RunOutcome:
        try:
            values = self.graph.invoke(state, config=config)
        except RunCancelledError:
            self._forget_cancel(run_id)
            raise
        outcome = self._outcome(run_id, values)
        if outcome.kind == "completed":
            self._forget_cancel(run_id)
        return outcome

    def _outcome(self, run_id: str, values: dict[str, Any]) -> RunOutcome:
        if values.get("result"):
            return RunOutcome.completed(ReconciliationResult.model_validate(values["result"]))
        if values.get("pending_human_review"):
            return RunOutcome.paused(self._review_request(run_id, values))
        raise ReconcilerError(f"Run {run_id!r} stopped without a result or a review request")

    def _review_request(self, run_id: str, values: dict[str, Any]) -> ReviewRequest:
        inp = read_input(values)
        threshold = self.ctx.threshold(inp.options)
        atoms = [Atom.model_validate(item) for item in values.get("inferred_atoms") or []]
        molecules = [Molecule.model_validate(item) for item in values.get("inferred_molecules") or []]
        decisions = [VerifyDecision.model_validate(item) for item in values.get("verify_decisions") or []]
        errors = list(values.get("errors") or [])

        failing = {d.atom_id for d in decisions if d.outcome == VerifyOutcome.QUALITY_FAIL}
        reasons: list[str] = []
        if inp.options.require_review:
            reasons.append("review requested")
        if failing:
            reasons.append(f"{len(failing)} atoms below quality threshold {threshold:g}")
        if errors:
            reasons.append(f"{len(errors)} errors recorded")
        pending_atoms = [atom for atom in atoms if atom.id in failing] if failing else atoms
        self.progress.emit(run_id, "verify", PHASE_PROGRESS["verify"], "Awaiting human review")
        return ReviewRequest(
            run_id=run_id,
            reason="; ".join(reasons) or "review requested",
            quality_threshold=threshold,
            pending_atoms=pending_atoms,
            pending_molecules=molecules,
            decisions=decisions,
            errors=errors,
        )

    def get_run_state(self, run_id: str) -> RunState:
        snapshot = self.graph.get_state(self._config(run_id))
        if not snapshot.values:
            raise CheckpointNotFoundError(run_id)
        return snapshot.values

    def cancel(self, run_id: str) -> None:
        """Request cancellation; the run stops before its next phase starts."""
        with self._cancel_lock:
            self._cancelled.add(run_id)
        logger.info("Cancellation requested for run %s", run_id)

    def is_cancelled(self, run_id: str) -> bool:
        with self._cancel_lock:
            return run_id in self._cancelled

    def _forget_cancel(self, run_id: str) -> None:
        with self._cancel_lock:
            self._cancelled.discard(run_id)

    def close(self) -> None:
        if self._checkpoint_conn is not None:
            self._checkpoint_conn.close()
            self._checkpoint_conn = None
