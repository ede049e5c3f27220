from __future__ import annotations

from collections.abc import Callable, Sequence

from atom_reconciler import InMemoryRunRepository
from atom_reconciler.models import PatchOp, RunRecord, RunStatus, RunSummary
from atom_reconciler.reasoning import AtomCandidate, MoleculeCandidate, ReasoningRequest, ReasoningResponse

CART_SOURCE = "export function addItem(cart, item) {\n  return [...cart, item];\n}\n"
CART_SPEC = """import { addItem } from './cart';

describe('Cart', () => {
  it('adds an item to the cart', () => {
    expect(addItem([], 1)).toEqual([1]);
  });
});
"""

SAMPLE_FILES = {
    "src/cart/cart.ts": CART_SOURCE,
    "src/cart/cart.spec.ts": CART_SPEC,
}


def many_tests_files(count: int) -> dict[str, str]:
    """A cart spec file with ``count`` independent tests."""
    body = "".join(
        f"it('adds item {index} to the cart', () => {{\n  expect(addItem([], {index})).toEqual([{index}]);\n}});\n"
        for index in range(count)
    )
    return {"src/cart/cart.ts": CART_SOURCE, "src/cart/cart.spec.ts": "import { addItem } from './cart';\n\n" + body}


class ScriptedReasoning:
    """Deterministic stand-in for the reasoning collaborator.

    Produces one atom per test context item with a fixed quality score and
    groups every atom of a synthesis request into a single molecule. Candidate
    ids restart at ``temp-0`` for every inference batch.
    """

    def __init__(
        self,
        *,
        quality_score: float | None = 90.0,
        fail_tasks: Sequence[str] = (),
        fail_batches: Sequence[int] = (),
        on_call: Callable[[ReasoningRequest], None] | None = None,
    ) -> None:
        self.quality_score = quality_score
        self.fail_tasks = set(fail_tasks)
        self.fail_batches = set(fail_batches)
        self.infer_batches = 0
        self.on_call = on_call
        self.requests: list[ReasoningRequest] = []

    def reason(self, request: ReasoningRequest) -> ReasoningResponse:
        self.requests.append(request)
        if self.on_call is not None:
            self.on_call(request)
        if request.task_type in self.fail_tasks:
            raise RuntimeError(f"{request.task_type} unavailable")
        if request.task_type == "infer_atoms":
            batch_index = self.infer_batches
            self.infer_batches += 1
            if batch_index in self.fail_batches:
                raise RuntimeError(f"batch {batch_index} timed out")
            atoms = [
                AtomCandidate(
                    source_test_key=item["key"],
                    description=f"Shopper sees the outcome described by {item['test_name']}",
                    category="functional",
                    observable_outcomes=["The cart lists the added item"],
                    confidence=85,
                    reasoning="Assertion compares the cart contents after adding an item",
                    quality_score=self.quality_score,
                    temp_id=f"temp-{index}",
                )
                for index, item in enumerate(request.context_batch)
                if item["kind"] == "test"
            ]
            return ReasoningResponse(atoms=atoms, tokens=10)
        atom_ids = [item["atom_id"] for item in request.context_batch]
        return ReasoningResponse(
            molecules=[
                MoleculeCandidate(name="Cart management", atom_ids=[*atom_ids, "temp-unknown"], confidence=70)
            ],
            tokens=5,
        )


class SpyRepository:
    """Records every repository call before delegating to an in-memory repository."""

    def __init__(self, *, fail_writes: bool = False) -> None:
        self.inner = InMemoryRunRepository()
        self.calls: list[tuple[str, str]] = []
        self.fail_writes = fail_writes

    def _record(self, method: str, run_id: str) -> None:
        self.calls.append((method, run_id))
        if self.fail_writes:
            raise RuntimeError("database unavailable")

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def create_run(self, record: RunRecord) -> RunRecord:
        self._record("create_run", record.run_id)
        return self.inner.create_run(record)

    def update_run_status(self, run_id: str, status: RunStatus, summary: RunSummary | None = None) -> None:
        self._record("update_run_status", run_id)
        self.inner.update_run_status(run_id, status, summary)

    def store_patch_ops(self, run_id: str, ops: Sequence[PatchOp]) -> None:
        self._record("store_patch_ops", run_id)
        self.inner.store_patch_ops(run_id, ops)

    def find_run_by_run_id(self, run_id: str) -> RunRecord | None:
        return self.inner.find_run_by_run_id(run_id)

    def list_runs(self) -> list[RunRecord]:
        return self.inner.list_runs()


