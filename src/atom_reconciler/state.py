"""Workflow state threaded through the reconciliation graph.

Every field has one merge category, declared here rather than inferred:

* append-list: ``errors`` and ``phases_completed`` accumulate across nodes.
* replace-map: ``test_quality``, ``test_analyses``, ``evidence_analyses`` and
  ``human_review_input`` are replaced wholesale by the node that owns them.
* replace-scalar: everything else.

Values are stored as JSON-compatible dicts so any checkpoint backend can
serialize them; nodes validate them back into models on read.
"""

from __future__ import annotations

import operator
from typing import Annotated, Any, TypedDict

from .models import ReconciliationInput


class RunState(TypedDict, total=False):
    run_id: str
    input: dict[str, Any]

    # deterministic phases
    repo_structure: dict[str, Any] | None
    orphan_tests: list[dict[str, Any]]
    changed_atom_linked_tests: list[dict[str, Any]]
    delta_summary: dict[str, Any] | None
    evidence_items: list[dict[str, Any]]
    coverage_data: dict[str, Any]
    test_quality: dict[str, dict[str, Any]]
    test_analyses: dict[str, dict[str, Any]]
    evidence_analyses: dict[str, dict[str, Any]]
    documentation_index: list[dict[str, Any]]

    # inference
    inferred_atoms: list[dict[str, Any]]
    inferred_molecules: list[dict[str, Any]]
    llm_calls: int

    # verify / review
    verify_decisions: list[dict[str, Any]]
    pending_human_review: bool
    human_review_input: dict[str, Any] | None
    was_resumed: bool

    # persistence
    interim_run_id: str | None
    interim_run_uuid: str | None
    result: dict[str, Any] | None

    # bookkeeping
    current_phase: str
    iteration: int
    start_time: float
    errors: Annotated[list[str], operator.add]
    phases_completed: Annotated[list[str], operator.add]


def initial_run_state(run_id: str, reconciliation_input: ReconciliationInput, *, start_time: float) -> RunState:
    return {
        "run_id": run_id,
        "input": reconciliation_input.model_dump(mode="json"),
        "repo_structure": None,
        "orphan_tests": [],
        "changed_atom_linked_tests": [],
        "delta_summary": None,
        "evidence_items": [],
        "coverage_data": {},
        "test_quality": {},
        "test_analyses": {},
        "evidence_analyses": {},
        "documentation_index": [],
        "inferred_atoms": [],
        "inferred_molecules": [],
        "llm_calls": 0,
        "verify_decisions": [],
        "pending_human_review": False,
        "human_review_input": None,
        "was_resumed": False,
        "interim_run_id": None,
        "interim_run_uuid": None,
        "result": None,
        "current_phase": "start",
        "iteration": 0,
        "start_time": start_time,
        "errors": [],
        "phases_completed": [],
    }


def read_input(state: RunState) -> ReconciliationInput:
    return ReconciliationInput.model_validate(state["input"])
