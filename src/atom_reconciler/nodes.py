"""Phase nodes of the reconciliation graph.

Each public method of ``ReconciliationNodes`` takes the current ``RunState`` and
returns a partial update. Error policy (critical vs. recoverable) is applied by
the orchestrator, not here.
"""

from __future__ import annotations

import logging
import posixpath
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .cache import MainCache
from .content import DEFAULT_EXCLUDED_DIRS, ContentProvider, FilesystemContentProvider
from .context import AnalysisService, ContextBuilder
from .dependencies import build_import_graph, topological_file_order
from .discovery import discover_in_files, filter_test_files, glob_match, is_test_file
from .docs_index import build_docs_index
from .errors import (
    DuplicateRunError,
    GitCommandError,
    ManifestNotReadyError,
    ReconcilerError,
    RunCancelledError,
    ToolExecutionError,
)
from .evidence import extract_evidence
from .git import get_changed_files, get_current_commit_hash, is_git_repository
from .manifests import ManifestRepository
from .models import (
    Atom,
    DocChunk,
    EvidenceItem,
    HumanReviewInput,
    ManifestStatus,
    Molecule,
    OrphanTestInfo,
    PatchMetadata,
    PatchOp,
    PatchOpType,
    ReconciliationOptions,
    ReconciliationPatch,
    ReconciliationResult,
    RepoStructure,
    ResultMetadata,
    RunRecord,
    RunStatus,
    RunSummary,
    SourceTestRef,
    TestQualityScore,
    VerifyDecision,
    VerifyOutcome,
    utc_now,
)
from .progress import ProgressEmitter
from .quality import analyze_test_quality
from .reasoning import AtomCandidate, MoleculeCandidate, ReasoningClient, ReasoningRequest
from .repository import RunRepository
from .settings import RuntimeSettings
from .state import RunState, read_input
from .tools import ORPHAN_DISCOVERY_TOOL, REPO_STRUCTURE_TOOL, ToolRegistry
from .verification import classify_atoms, effective_quality

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_PATTERNS = ("**/*.ts", "**/*.tsx", "**/*.js", "**/*.jsx", "**/*.py")


def generate_run_id() -> str:
    return f"REC-{uuid.uuid4().hex[:8]}"


def format_node_error(node: str, exc: BaseException | str) -> str:
    return f"[{utc_now().isoformat()}] {node}: {exc}"


def _ratio(value: float) -> float:
    return max(0.0, min(value / 100.0 if value > 1 else value, 1.0))


@dataclass
class NodeContext:
    """Collaborators shared by every phase node of one orchestrator."""

    settings: RuntimeSettings
    tools: ToolRegistry | None = None
    reasoning: ReasoningClient | None = None
    repository: RunRepository | None = None
    manifests: ManifestRepository | None = None
    analysis_service: AnalysisService | None = None
    cache: MainCache | None = None
    progress: ProgressEmitter = field(default_factory=ProgressEmitter)
    content_provider: ContentProvider | None = None
    provider_factory: Callable[[str], ContentProvider] = FilesystemContentProvider
    context_workers: int = 1

    def provider_for(self, root_directory: str) -> ContentProvider:
        if self.content_provider is not None:
            return self.content_provider
        return self.provider_factory(root_directory)

    def threshold(self, options: ReconciliationOptions) -> float:
        if options.quality_threshold is not None:
            return options.quality_threshold
        return self.settings.quality_threshold

    def max_tests(self, options: ReconciliationOptions) -> int:
        return options.max_tests if options.max_tests is not None else self.settings.max_tests


def _models(raw: Sequence[dict[str, Any]] | None, model: type) -> list:
    return [model.model_validate(item) for item in raw or []]


def _dump(items: Sequence[Any]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


class ReconciliationNodes:
    def __init__(self, ctx: NodeContext) -> None:
        self.ctx = ctx

    # -- structure -------------------------------------------------------

    def structure(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        provider = self.ctx.provider_for(inp.root_directory)
        structure = self._structure_from_tool(inp.root_directory)
        if structure is None:
            files = provider.walk_directory("", exclude_dirs=DEFAULT_EXCLUDED_DIRS, max_files=self.ctx.settings.max_files)
            test_files = [path for path in files if is_test_file(path)]
            test_set = set(test_files)
            source_files = [
                path
                for path in files
                if path not in test_set and any(glob_match(path, pattern) for pattern in DEFAULT_SOURCE_PATTERNS)
            ]
            structure = RepoStructure(
                root_directory=inp.root_directory,
                files=files,
                test_files=test_files,
                source_files=source_files,
            )
        if not structure.dependency_order and structure.source_files:
            graph = build_import_graph(structure.source_files, provider)
            structure = structure.model_copy(update={"dependency_order": topological_file_order(graph)})
        if structure.commit_hash is None:
            structure = structure.model_copy(update={"commit_hash": get_current_commit_hash(inp.root_directory)})

        evidence: list[EvidenceItem] = []
        if inp.options.include_evidence:
            for path in [*structure.source_files, *(p for p in structure.files if p.endswith(".md"))]:
                content = provider.read_file_or_none(path)
                if content:
                    evidence.extend(extract_evidence(path, content))

        logger.info(
            "Structure for %s: %d files, %d tests, %d sources, %d evidence items",
            inp.root_directory,
            len(structure.files),
            len(structure.test_files),
            len(structure.source_files),
            len(evidence),
        )
        return {
            "repo_structure": structure.model_dump(mode="json"),
            "evidence_items": _dump(evidence),
            "current_phase": "discover",
        }

    def _structure_from_tool(self, root_directory: str) -> RepoStructure | None:
        tools = self.ctx.tools
        if tools is None or not tools.has_tool(REPO_STRUCTURE_TOOL):
            return None
        try:
            payload = tools.execute_tool(REPO_STRUCTURE_TOOL, {"root_directory": root_directory})
            return RepoStructure.model_validate(payload)
        except (ToolExecutionError, ValidationError) as exc:
            logger.warning("%s failed, walking the directory instead: %s", REPO_STRUCTURE_TOOL, exc)
            return None

    # -- discovery -------------------------------------------------------

    def discover_fullscan(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        structure = RepoStructure.model_validate(state["repo_structure"])
        orphans = self._orphans_from_tool(inp.root_directory, inp.options)
        if orphans is None:
            provider = self.ctx.provider_for(inp.root_directory)
            selected = filter_test_files(structure.test_files, inp.options)
            scan = discover_in_files(
                selected,
                provider,
                lookback=self.ctx.settings.annotation_lookback,
                max_body_lines=self.ctx.settings.max_body_lines,
                max_tests=self.ctx.max_tests(inp.options),
            )
            orphans = scan.orphans
        logger.info("Full scan discovered %d orphan tests", len(orphans))
        return {"orphan_tests": _dump(orphans), "current_phase": "test_quality"}

    def _orphans_from_tool(self, root_directory: str, options: ReconciliationOptions) -> list[OrphanTestInfo] | None:
        tools = self.ctx.tools
        if tools is None or options.has_filters or not tools.has_tool(ORPHAN_DISCOVERY_TOOL):
            return None
        try:
            payload = tools.execute_tool(
                ORPHAN_DISCOVERY_TOOL,
                {"root_directory": root_directory, "max_tests": self.ctx.max_tests(options)},
            )
            items = payload.get("orphan_tests", []) if isinstance(payload, dict) else payload
            return [OrphanTestInfo.model_validate(item) for item in items]
        except (ToolExecutionError, ValidationError, TypeError, AttributeError) as exc:
            logger.warning("%s failed, scanning test files directly: %s", ORPHAN_DISCOVERY_TOOL, exc)
            return None

    def discover_delta(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        baseline = inp.options.delta_baseline_commit
        changed: list[str] | None = None
        reason: str | None = None
        if not baseline:
            reason = "no baseline commit supplied"
        elif not is_git_repository(inp.root_directory):
            reason = f"{inp.root_directory} is not a git repository"
        else:
            try:
                changed = get_changed_files(inp.root_directory, baseline)
            except GitCommandError as exc:
                reason = str(exc)

        if changed is None:
            logger.warning("Delta discovery falling back to full scan: %s", reason)
            update = self.discover_fullscan(state)
            update["delta_summary"] = {"used_fallback": True, "fallback_reason": reason, "base_ref": baseline}
            return update

        provider = self.ctx.provider_for(inp.root_directory)
        changed_tests = [path for path in changed if is_test_file(path)]
        existing = [path for path in changed_tests if provider.exists(path)]
        selected = filter_test_files(existing, inp.options)
        scan = discover_in_files(
            selected,
            provider,
            lookback=self.ctx.settings.annotation_lookback,
            max_body_lines=self.ctx.settings.max_body_lines,
            max_tests=self.ctx.max_tests(inp.options),
        )
        unknown_links: list[str] = []
        if self.ctx.cache is not None and not self.ctx.cache.is_empty():
            unknown_links = sorted({link.atom_id for link in scan.linked if not self.ctx.cache.has_atom(link.atom_id)})
        summary = {
            "used_fallback": False,
            "base_ref": baseline,
            "head_ref": "HEAD",
            "changed_files": len(changed),
            "changed_test_files": len(existing),
            "deleted_test_files": len(changed_tests) - len(existing),
            "orphan_tests": len(scan.orphans),
            "changed_atom_linked_tests": len(scan.linked),
            "unknown_atom_links": unknown_links,
        }
        logger.info("Delta discovery since %s: %s", baseline, summary)
        return {
            "orphan_tests": _dump(scan.orphans),
            "changed_atom_linked_tests": _dump(scan.linked),
            "delta_summary": summary,
            "current_phase": "test_quality",
        }

    # -- manifest shortcut -----------------------------------------------

    def load_manifest(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        manifest_id = inp.options.manifest_id
        if not manifest_id:
            raise ManifestNotReadyError("load_manifest requires options.manifest_id")
        if self.ctx.manifests is None:
            raise ManifestNotReadyError("No manifest repository configured")
        manifest = self.ctx.manifests.find_by_id(manifest_id)
        if manifest is None:
            raise ManifestNotReadyError(f"Manifest {manifest_id!r} not found")
        if manifest.status != ManifestStatus.COMPLETE:
            raise ManifestNotReadyError(f"Manifest {manifest_id!r} is {manifest.status.value}, expected complete")

        test_keys = {test.key for test in manifest.orphan_tests}
        test_analyses = {key: value for key, value in manifest.context.items() if key in test_keys}
        evidence_analyses = {key: value for key, value in manifest.context.items() if key not in test_keys}
        logger.info(
            "Loaded manifest %s v%d: %d orphan tests, %d evidence items",
            manifest.id,
            manifest.version,
            len(manifest.orphan_tests),
            len(manifest.evidence_items),
        )
        return {
            "repo_structure": manifest.repo_structure.model_dump(mode="json") if manifest.repo_structure else None,
            "orphan_tests": _dump(manifest.orphan_tests),
            "evidence_items": _dump(manifest.evidence_items),
            "coverage_data": dict(manifest.coverage_data),
            "test_quality": {key: value.model_dump(mode="json") for key, value in manifest.test_quality.items()},
            "test_analyses": {key: value.model_dump(mode="json") for key, value in test_analyses.items()},
            "evidence_analyses": {key: value.model_dump(mode="json") for key, value in evidence_analyses.items()},
            "documentation_index": _dump(manifest.documentation_index),
            "current_phase": "infer",
        }

    # -- analysis --------------------------------------------------------

    def test_quality(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        orphans: list[OrphanTestInfo] = _models(state.get("orphan_tests"), OrphanTestInfo)
        scores = analyze_test_quality(orphans, self.ctx.provider_for(inp.root_directory))
        passed = sum(1 for score in scores.values() if score.passed)
        logger.info("Test quality: %d/%d scored tests pass every dimension", passed, len(scores))
        return {
            "test_quality": {key: score.model_dump(mode="json") for key, score in scores.items()},
            "current_phase": "context",
        }

    def context(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        provider = self.ctx.provider_for(inp.root_directory)
        docs: list[DocChunk] = []
        if inp.options.analyze_docs:
            docs = build_docs_index(provider, inp.options.docs_directory, max_chunks=self.ctx.settings.max_doc_chunks)
        structure = RepoStructure.model_validate(state["repo_structure"]) if state.get("repo_structure") else None
        builder = ContextBuilder(
            provider=provider,
            tools=self.ctx.tools,
            analysis_service=self.ctx.analysis_service,
            docs=docs,
            root_directory=inp.root_directory,
            max_workers=self.ctx.context_workers,
        )
        quality = {key: TestQualityScore.model_validate(value) for key, value in (state.get("test_quality") or {}).items()}
        test_analyses, evidence_analyses = builder.build(
            _models(state.get("orphan_tests"), OrphanTestInfo),
            _models(state.get("evidence_items"), EvidenceItem),
            dependency_order=structure.dependency_order if structure else (),
            test_quality=quality,
        )
        return {
            "test_analyses": {key: value.model_dump(mode="json") for key, value in test_analyses.items()},
            "evidence_analyses": {key: value.model_dump(mode="json") for key, value in evidence_analyses.items()},
            "documentation_index": _dump(docs),
            "current_phase": "infer",
        }

    # -- inference -------------------------------------------------------

    def _context_items(self, state: RunState) -> list[dict[str, Any]]:
        tests = {test.key: test for test in _models(state.get("orphan_tests"), OrphanTestInfo)}
        quality = state.get("test_quality") or {}
        items: list[dict[str, Any]] = []
        analyses: dict[str, Any] = state.get("test_analyses") or {}
        for key in [*analyses, *(k for k in tests if k not in analyses)]:
            test = tests.get(key)
            if test is None:
                continue
            analysis = analyses.get(key)
            items.append(
                {
                    "key": key,
                    "kind": "test",
                    "file_path": test.file_path,
                    "test_name": test.test_name,
                    "test_code": test.test_code,
                    "analysis": analysis,
                    "test_quality": (quality.get(key) or {}).get("overall_score"),
                }
            )
        for key, analysis in (state.get("evidence_analyses") or {}).items():
            items.append({"key": key, "kind": "evidence", "analysis": analysis})
        return items

    def infer_atoms(self, state: RunState) -> dict[str, Any]:
        items = self._context_items(state)
        if not items:
            logger.info("No context items to infer atoms from")
            return {"inferred_atoms": [], "current_phase": "synthesize"}
        reasoning = self.ctx.reasoning
        if reasoning is None:
            raise ReconcilerError("No reasoning collaborator configured for atom inference")
        tests = {test.key: test for test in _models(state.get("orphan_tests"), OrphanTestInfo)}
        analyses = state.get("test_analyses") or {}
        batch_size = self.ctx.settings.batch_size
        atoms: list[Atom] = []
        issued: set[str] = set()
        errors: list[str] = []
        calls = 0
        for start in range(0, len(items), batch_size):
            batch = items[start : start + batch_size]
            calls += 1
            try:
                response = reasoning.reason(ReasoningRequest(task_type="infer_atoms", context_batch=batch))
            except RunCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - per-batch failures are recorded
                logger.warning("Atom inference batch %d failed: %s", start // batch_size, exc)
                errors.append(format_node_error("infer_atoms", f"batch {start // batch_size}: {exc}"))
                continue
            atoms.extend(self._to_atom(candidate, tests, analyses, issued) for candidate in response.atoms)
        if errors and len(errors) == calls:
            raise ReconcilerError(f"All {calls} atom inference batches failed; last: {errors[-1]}")
        logger.info("Inferred %d atoms from %d context items in %d calls", len(atoms), len(items), calls)
        return {
            "inferred_atoms": _dump(atoms),
            "llm_calls": int(state.get("llm_calls", 0)) + calls,
            "errors": errors,
            "current_phase": "synthesize",
        }

    @staticmethod
    def _to_atom(
        candidate: AtomCandidate,
        tests: dict[str, OrphanTestInfo],
        analyses: dict[str, Any],
        issued: set[str],
    ) -> Atom:
        test = tests.get(candidate.source_test_key)
        source = (
            SourceTestRef(file_path=test.file_path, test_name=test.test_name, line_number=test.line_number)
            if test is not None
            else None
        )
        analysis = analyses.get(candidate.source_test_key) or {}
        # Batches number their candidates independently; ids must stay unique per run.
        atom_id = candidate.temp_id
        if not atom_id or atom_id in issued:
            atom_id = f"temp-{uuid.uuid4().hex}"
        issued.add(atom_id)
        return Atom(
            id=atom_id,
            description=candidate.description,
            category=candidate.category,
            quality_score=candidate.quality_score,
            confidence=_ratio(candidate.confidence),
            source_test=source,
            observable_outcomes=candidate.observable_outcomes,
            ambiguity_reasons=candidate.ambiguity_reasons,
            reasoning=candidate.reasoning,
            related_docs=list(analysis.get("related_docs", [])),
        )

    def synthesize_molecules(self, state: RunState) -> dict[str, Any]:
        atoms: list[Atom] = _models(state.get("inferred_atoms"), Atom)
        if not atoms:
            return {"inferred_molecules": [], "current_phase": "interim_persist"}
        llm_calls = int(state.get("llm_calls", 0))
        molecules: list[Molecule] | None = None
        if self.ctx.reasoning is not None:
            batch = [
                {
                    "atom_id": atom.id,
                    "description": atom.description,
                    "category": atom.category,
                    "source_file": atom.source_test.file_path if atom.source_test else None,
                }
                for atom in atoms
            ]
            llm_calls += 1
            try:
                response = self.ctx.reasoning.reason(ReasoningRequest(task_type="synthesize_molecules", context_batch=batch))
                molecules = self._to_molecules(response.molecules, {atom.id for atom in atoms})
            except RunCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - fall back to deterministic clustering
                logger.warning("Molecule synthesis call failed, clustering by module: %s", exc)
        if molecules is None:
            molecules = cluster_atoms_by_module(atoms)
        logger.info("Synthesized %d molecules from %d atoms", len(molecules), len(atoms))
        return {"inferred_molecules": _dump(molecules), "llm_calls": llm_calls, "current_phase": "interim_persist"}

    @staticmethod
    def _to_molecules(candidates: Sequence[MoleculeCandidate], known_atoms: set[str]) -> list[Molecule]:
        molecules: list[Molecule] = []
        for candidate in candidates:
            atom_ids = [atom_id for atom_id in candidate.atom_ids if atom_id in known_atoms]
            if not atom_ids:
                logger.debug("Dropping molecule %r: no known atom references", candidate.name)
                continue
            molecules.append(
                Molecule(
                    id=candidate.temp_id or f"temp-mol-{uuid.uuid4().hex}",
                    name=candidate.name,
                    description=candidate.description,
                    lens_type=candidate.lens_type,
                    atom_ids=list(dict.fromkeys(atom_ids)),
                    parent_id=candidate.parent_id,
                    confidence=_ratio(candidate.confidence),
                    reasoning=candidate.reasoning,
                )
            )
        return molecules

    # -- persistence -----------------------------------------------------

    def interim_persist(self, state: RunState) -> dict[str, Any]:
        atoms: list[Atom] = _models(state.get("inferred_atoms"), Atom)
        molecules: list[Molecule] = _models(state.get("inferred_molecules"), Molecule)
        if state.get("interim_run_uuid"):
            return {"current_phase": "verify"}
        if not atoms and not molecules:
            logger.info("Interim persist skipped: nothing inferred")
            return {"current_phase": "verify"}
        repository = self.ctx.repository
        if repository is None:
            logger.info("Interim persist skipped: no repository configured")
            return {"current_phase": "verify"}

        inp = read_input(state)
        run_id = state.get("run_id") or inp.run_id or generate_run_id()
        record = RunRecord(
            run_id=run_id,
            run_uuid=str(uuid.uuid4()),
            root_directory=inp.root_directory,
            mode=inp.mode,
            status=RunStatus.RUNNING,
            atoms=atoms,
            molecules=molecules,
            test_records=_models(state.get("orphan_tests"), OrphanTestInfo),
        )
        try:
            repository.create_run(record)
            run_uuid = record.run_uuid
        except DuplicateRunError:
            existing = repository.find_run_by_run_id(run_id)
            if existing is None:
                raise
            logger.info("Interim run %s already stored, adopting it", run_id)
            run_uuid = existing.run_uuid
        except RunCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - persist falls back to INSERT
            logger.error("Interim persist failed for run %s: %s", run_id, exc)
            return {"current_phase": "verify"}
        logger.info("Interim persisted run %s (%d atoms, %d molecules)", run_id, len(atoms), len(molecules))
        return {"interim_run_id": run_id, "interim_run_uuid": run_uuid, "current_phase": "verify"}

    def verify(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        threshold = self.ctx.threshold(inp.options)
        atoms: list[Atom] = _models(state.get("inferred_atoms"), Atom)
        review_raw = state.get("human_review_input")
        review = HumanReviewInput.model_validate(review_raw) if review_raw else None

        decisions = classify_atoms(atoms, threshold, review)
        scored = [atom.model_copy(update={"quality_score": decision.quality_score}) for atom, decision in zip(atoms, decisions)]
        failing = [d for d in decisions if d.outcome == VerifyOutcome.QUALITY_FAIL]

        if review is not None:
            pending = False
        else:
            pending = inp.options.require_review or bool(failing) or bool(state.get("errors"))
        if pending:
            logger.info(
                "Run %s paused for review: require_review=%s, %d/%d atoms below %.1f, %d errors",
                state.get("run_id"),
                inp.options.require_review,
                len(failing),
                len(atoms),
                threshold,
                len(state.get("errors") or []),
            )
        return {
            "inferred_atoms": _dump(scored),
            "verify_decisions": _dump(decisions),
            "pending_human_review": pending,
            "current_phase": "verify" if pending else "persist",
        }

    def persist(self, state: RunState) -> dict[str, Any]:
        inp = read_input(state)
        threshold = self.ctx.threshold(inp.options)
        errors = list(state.get("errors") or [])
        atoms: list[Atom] = _models(state.get("inferred_atoms"), Atom)
        molecules: list[Molecule] = _models(state.get("inferred_molecules"), Molecule)
        orphans: list[OrphanTestInfo] = _models(state.get("orphan_tests"), OrphanTestInfo)
        decisions = {d.atom_id: d for d in _models(state.get("verify_decisions"), VerifyDecision)}
        structure = RepoStructure.model_validate(state["repo_structure"]) if state.get("repo_structure") else None

        interim_uuid = state.get("interim_run_uuid")
        run_id = state.get("interim_run_id") or inp.run_id or state.get("run_id") or generate_run_id()
        pending = bool(state.get("pending_human_review"))
        if errors:
            status = RunStatus.FAILED
        elif pending:
            status = RunStatus.PENDING_REVIEW
        else:
            status = RunStatus.COMPLETED

        pass_count = sum(1 for atom in atoms if effective_quality(atom) >= threshold)
        duration = max(0.0, time.time() - float(state.get("start_time") or time.time()))
        llm_calls = int(state.get("llm_calls", 0))
        summary = RunSummary(
            total_orphan_tests=len(orphans),
            inferred_atoms_count=len(atoms),
            inferred_molecules_count=len(molecules),
            quality_pass_count=pass_count,
            quality_fail_count=len(atoms) - pass_count,
            duration=round(duration, 3),
            llm_calls=llm_calls,
        )
        ops = build_patch_ops(atoms, molecules, decisions, threshold, include_attach_test_ops=inp.options.include_attach_test_ops)
        patch = ReconciliationPatch(
            ops=ops,
            metadata=PatchMetadata(
                run_id=run_id,
                mode=inp.mode,
                commit_hash=structure.commit_hash if structure else None,
                baseline_commit_hash=inp.options.delta_baseline_commit,
            ),
        )

        run_uuid = interim_uuid
        persisted = False
        persistence_error: str | None = None
        repository = self.ctx.repository
        if repository is not None:
            try:
                if interim_uuid:
                    repository.store_patch_ops(run_id, ops)
                    repository.update_run_status(run_id, status, summary)
                else:
                    run_uuid = str(uuid.uuid4())
                    repository.create_run(
                        RunRecord(
                            run_id=run_id,
                            run_uuid=run_uuid,
                            root_directory=inp.root_directory,
                            mode=inp.mode,
                            status=RunStatus.RUNNING,
                            atoms=atoms,
                            molecules=molecules,
                            test_records=orphans,
                        )
                    )
                    repository.store_patch_ops(run_id, ops)
                    repository.update_run_status(run_id, status, summary)
                persisted = True
            except RunCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - reported via metadata.persistence_error
                persistence_error = str(exc)
                logger.error("Persisting run %s failed, durable state may be stale: %s", run_id, exc)

        result = ReconciliationResult(
            run_id=run_id,
            run_uuid=run_uuid,
            status=status,
            patch=patch,
            summary=summary,
            metadata=ResultMetadata(
                duration=summary.duration,
                llm_calls=llm_calls,
                mode=inp.mode,
                review_required=pending,
                phases_completed=[*(state.get("phases_completed") or []), "persist"],
                persisted=persisted,
                persistence_error=persistence_error,
            ),
            errors=errors,
        )
        self.ctx.progress.emit(state.get("run_id", run_id), "persist", 100, f"Run {status.value}")
        logger.info("Run %s finished with status %s (%d ops)", run_id, status.value, len(ops))
        return {
            "result": result.model_dump(mode="json"),
            "current_phase": "complete",
            "phases_completed": ["persist"],
        }


def build_patch_ops(
    atoms: Sequence[Atom],
    molecules: Sequence[Molecule],
    decisions: dict[str, VerifyDecision],
    threshold: float,
    *,
    include_attach_test_ops: bool = False,
) -> list[PatchOp]:
    """One create op per atom and molecule; attach-test ops for passing atoms when requested."""
    ops: list[PatchOp] = []
    for atom in atoms:
        decision = decisions.get(atom.id)
        payload = atom.model_dump(mode="json", exclude={"id"})
        if decision is not None:
            payload["verify_outcome"] = decision.outcome.value
        ops.append(PatchOp(type=PatchOpType.CREATE_ATOM, target=atom.id, payload=payload))
    for molecule in molecules:
        ops.append(
            PatchOp(type=PatchOpType.CREATE_MOLECULE, target=molecule.id, payload=molecule.model_dump(mode="json", exclude={"id"}))
        )
    if include_attach_test_ops:
        for atom in atoms:
            decision = decisions.get(atom.id)
            rejected = decision is not None and decision.outcome == VerifyOutcome.REJECTED
            if atom.source_test is None or rejected or effective_quality(atom) < threshold:
                continue
            ops.append(
                PatchOp(
                    type=PatchOpType.ATTACH_TEST_TO_ATOM,
                    target=atom.id,
                    payload=atom.source_test.model_dump(mode="json"),
                )
            )
    return ops


def cluster_atoms_by_module(atoms: Sequence[Atom], min_size: int = 2) -> list[Molecule]:
    """Group atoms by the directory of their source test, falling back to category."""
    clusters: dict[str, list[Atom]] = {}
    for atom in atoms:
        if atom.source_test is not None:
            module = posixpath.dirname(atom.source_test.file_path) or "root"
            key = f"module:{module}"
        else:
            key = f"category:{atom.category}"
        clusters.setdefault(key, []).append(atom)

    molecules: list[Molecule] = []
    for key, members in clusters.items():
        if len(members) < min_size:
            continue
        kind, _, label = key.partition(":")
        name = posixpath.basename(label) or label
        molecules.append(
            Molecule(
                id=f"temp-mol-{uuid.uuid4().hex}",
                name=name.replace("-", " ").replace("_", " ").title(),
                description=f"{len(members)} atoms sharing {kind} {label}",
                lens_type="feature" if kind == "module" else "capability",
                atom_ids=[atom.id for atom in members],
                confidence=round(sum(atom.confidence for atom in members) / len(members), 4),
                reasoning=f"Clustered by {kind}",
            )
        )
    return molecules
