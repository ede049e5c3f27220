from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AtomStatus(str, Enum):
    DRAFT = "draft"
    PROPOSED = "proposed"
    COMMITTED = "committed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_REVIEW = "pending_review"


class ReconciliationMode(str, Enum):
    FULLSCAN = "full-scan"
    DELTA = "delta"


class EvidenceType(str, Enum):
    TEST = "test"
    SOURCE_EXPORT = "source_export"
    UI_COMPONENT = "ui_component"
    API_ENDPOINT = "api_endpoint"
    DOCUMENTATION = "documentation"
    COVERAGE_GAP = "coverage_gap"


class PatchOpType(str, Enum):
    CREATE_ATOM = "create_atom"
    CREATE_MOLECULE = "create_molecule"
    ATTACH_TEST_TO_ATOM = "attach_test_to_atom"
    MARK_ATOM_SUPERSEDED = "mark_atom_superseded"


class ManifestStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class VerifyOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    QUALITY_FAIL = "quality_fail"


class IssueSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


def utc_now() -> datetime:
    return datetime.now(UTC)


class OrphanTestInfo(BaseModel):
    """A test declaration without a requirement-linkage annotation."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    test_name: str
    line_number: int
    test_code: str = ""
    related_source_files: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.file_path}:{self.test_name}"


class LinkedTestInfo(BaseModel):
    """A test in a changed file that already carries an atom annotation."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    test_name: str
    line_number: int
    atom_id: str


class EvidenceItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EvidenceType
    file_path: str
    name: str
    code: str = ""
    line_number: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_files: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.file_path}:{self.name}"


class QualityIssue(BaseModel):
    dimension: str
    score: float
    threshold: float
    severity: IssueSeverity


class TestQualityScore(BaseModel):
    overall_score: float
    passed: bool
    dimensions: dict[str, float]
    issues: list[QualityIssue] = Field(default_factory=list)


class EvidenceAnalysis(BaseModel):
    """Evidence-type-agnostic analysis shape consumed by inference."""

    summary: str
    domain_concepts: list[str] = Field(default_factory=list)
    related_code: list[str] = Field(default_factory=list)
    related_docs: list[str] = Field(default_factory=list)
    raw_context: str = ""
    quality_score: float | None = None


class DocChunk(BaseModel):
    file_path: str
    title: str
    content: str
    keywords: list[str] = Field(default_factory=list)


class RepoStructure(BaseModel):
    root_directory: str
    files: list[str] = Field(default_factory=list)
    test_files: list[str] = Field(default_factory=list)
    source_files: list[str] = Field(default_factory=list)
    dependency_order: list[str] = Field(default_factory=list)
    commit_hash: str | None = None


class SourceTestRef(BaseModel):
    file_path: str
    test_name: str
    line_number: int = 0

    @property
    def key(self) -> str:
        return f"{self.file_path}:{self.test_name}"


class Atom(BaseModel):
    """Candidate or committed requirement unit."""

    id: str
    description: str
    category: str = "functional"
    status: AtomStatus = AtomStatus.PROPOSED
    quality_score: float | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source_test: SourceTestRef | None = None
    observable_outcomes: list[str] = Field(default_factory=list)
    ambiguity_reasons: list[str] = Field(default_factory=list)
    reasoning: str = ""
    related_docs: list[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _percent_to_ratio(cls, value: Any) -> Any:
        # collaborators report confidence either as 0-1 or 0-100
        if isinstance(value, (int, float)) and value > 1:
            return min(float(value) / 100.0, 1.0)
        return value


class Molecule(BaseModel):
    """Named grouping of atom references under a lens."""

    id: str
    name: str
    description: str = ""
    lens_type: str = "feature"
    atom_ids: list[str] = Field(default_factory=list)
    parent_id: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


class AtomDecision(BaseModel):
    atom_id: str
    decision: ReviewDecision
    comments: str | None = None


class MoleculeDecision(BaseModel):
    molecule_id: str
    decision: ReviewDecision
    comments: str | None = None


class HumanReviewInput(BaseModel):
    atom_decisions: list[AtomDecision] = Field(default_factory=list)
    molecule_decisions: list[MoleculeDecision] = Field(default_factory=list)
    comments: str | None = None

    def atom_decision_map(self) -> dict[str, ReviewDecision]:
        return {item.atom_id: item.decision for item in self.atom_decisions}


class VerifyDecision(BaseModel):
    atom_id: str
    outcome: VerifyOutcome
    quality_score: float
    issues: list[str] = Field(default_factory=list)


class ReconciliationOptions(BaseModel):
    manifest_id: str | None = None
    require_review: bool = False
    quality_threshold: float | None = Field(default=None, ge=0.0, le=100.0)
    max_tests: int | None = Field(default=None, ge=1)
    include_paths: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    include_file_patterns: list[str] = Field(default_factory=list)
    exclude_file_patterns: list[str] = Field(default_factory=list)
    delta_baseline_commit: str | None = None
    include_attach_test_ops: bool = False
    include_evidence: bool = False
    analyze_docs: bool = True
    docs_directory: str = "docs"

    @property
    def has_filters(self) -> bool:
        return bool(
            self.include_paths or self.exclude_paths or self.include_file_patterns or self.exclude_file_patterns
        )


class ReconciliationInput(BaseModel):
    root_directory: str
    mode: ReconciliationMode = ReconciliationMode.FULLSCAN
    run_id: str | None = None
    options: ReconciliationOptions = Field(default_factory=ReconciliationOptions)


class PatchOp(BaseModel):
    type: PatchOpType
    target: str
    payload: dict[str, Any] = Field(default_factory=dict)


class PatchMetadata(BaseModel):
    run_id: str
    created_at: datetime = Field(default_factory=utc_now)
    mode: ReconciliationMode = ReconciliationMode.FULLSCAN
    commit_hash: str | None = None
    baseline_commit_hash: str | None = None


class ReconciliationPatch(BaseModel):
    ops: list[PatchOp] = Field(default_factory=list)
    metadata: PatchMetadata


def validate_patch(patch: ReconciliationPatch) -> list[str]:
    """Return structural problems found in a patch. An empty list means valid."""
    problems: list[str] = []
    atom_targets: set[str] = set()
    molecule_targets: set[str] = set()
    for index, op in enumerate(patch.ops):
        if op.type == PatchOpType.CREATE_ATOM:
            if op.target in atom_targets:
                problems.append(f"ops[{index}]: duplicate create_atom for {op.target}")
            atom_targets.add(op.target)
        elif op.type == PatchOpType.CREATE_MOLECULE:
            if op.target in molecule_targets:
                problems.append(f"ops[{index}]: duplicate create_molecule for {op.target}")
            molecule_targets.add(op.target)

    for index, op in enumerate(patch.ops):
        if op.type == PatchOpType.CREATE_MOLECULE:
            unknown = [atom_id for atom_id in op.payload.get("atom_ids", []) if atom_id not in atom_targets]
            if unknown:
                problems.append(f"ops[{index}]: molecule {op.target} references unknown atoms {sorted(unknown)}")
        elif op.type == PatchOpType.ATTACH_TEST_TO_ATOM and op.target not in atom_targets:
            problems.append(f"ops[{index}]: attach_test_to_atom targets unknown atom {op.target}")
        elif op.type == PatchOpType.MARK_ATOM_SUPERSEDED and not op.payload.get("superseded_by"):
            problems.append(f"ops[{index}]: mark_atom_superseded requires superseded_by")
    return problems


class RunSummary(BaseModel):
    total_orphan_tests: int = 0
    inferred_atoms_count: int = 0
    inferred_molecules_count: int = 0
    quality_pass_count: int = 0
    quality_fail_count: int = 0
    duration: float = 0.0
    llm_calls: int = 0


class ResultMetadata(BaseModel):
    duration: float = 0.0
    llm_calls: int = 0
    mode: ReconciliationMode = ReconciliationMode.FULLSCAN
    review_required: bool = False
    phases_completed: list[str] = Field(default_factory=list)
    persisted: bool = False
    persistence_error: str | None = None


class ReconciliationResult(BaseModel):
    run_id: str
    run_uuid: str | None = None
    status: RunStatus
    patch: ReconciliationPatch
    summary: RunSummary = Field(default_factory=RunSummary)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    errors: list[str] = Field(default_factory=list)


def create_empty_result(run_id: str, mode: ReconciliationMode = ReconciliationMode.FULLSCAN) -> ReconciliationResult:
    return ReconciliationResult(
        run_id=run_id,
        status=RunStatus.COMPLETED,
        patch=ReconciliationPatch(metadata=PatchMetadata(run_id=run_id, mode=mode)),
        metadata=ResultMetadata(mode=mode),
    )


def create_failed_result(
    run_id: str,
    errors: list[str],
    mode: ReconciliationMode = ReconciliationMode.FULLSCAN,
) -> ReconciliationResult:
    result = create_empty_result(run_id, mode)
    return result.model_copy(update={"status": RunStatus.FAILED, "errors": list(errors)})


class ReviewRequest(BaseModel):
    """Payload handed back to the caller when a run pauses for human review."""

    run_id: str
    reason: str
    quality_threshold: float
    pending_atoms: list[Atom] = Field(default_factory=list)
    pending_molecules: list[Molecule] = Field(default_factory=list)
    decisions: list[VerifyDecision] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RunOutcome(BaseModel):
    """Tagged result of invoke/resume: either a terminal result or a review pause."""

    kind: Literal["completed", "paused"]
    run_id: str
    result: ReconciliationResult | None = None
    review: ReviewRequest | None = None

    @property
    def is_paused(self) -> bool:
        return self.kind == "paused"

    @classmethod
    def completed(cls, result: ReconciliationResult) -> "RunOutcome":
        return cls(kind="completed", run_id=result.run_id, result=result)

    @classmethod
    def paused(cls, review: ReviewRequest) -> "RunOutcome":
        return cls(kind="paused", run_id=review.run_id, review=review)


class Manifest(BaseModel):
    """Versioned snapshot of deterministic-phase outputs."""

    id: str
    status: ManifestStatus = ManifestStatus.PENDING
    version: int = 1
    root_directory: str = ""
    commit_hash: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    repo_structure: RepoStructure | None = None
    orphan_tests: list[OrphanTestInfo] = Field(default_factory=list)
    evidence_items: list[EvidenceItem] = Field(default_factory=list)
    coverage_data: dict[str, Any] = Field(default_factory=dict)
    test_quality: dict[str, TestQualityScore] = Field(default_factory=dict)
    context: dict[str, EvidenceAnalysis] = Field(default_factory=dict)
    documentation_index: list[DocChunk] = Field(default_factory=list)


class RunRecord(BaseModel):
    run_id: str
    run_uuid: str
    root_directory: str = ""
    mode: ReconciliationMode = ReconciliationMode.FULLSCAN
    status: RunStatus = RunStatus.RUNNING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    summary: RunSummary | None = None
    atoms: list[Atom] = Field(default_factory=list)
    molecules: list[Molecule] = Field(default_factory=list)
    test_records: list[OrphanTestInfo] = Field(default_factory=list)
    patch_ops: list[PatchOp] = Field(default_factory=list)
