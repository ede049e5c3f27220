"""Per-test and per-evidence context analysis feeding atom inference."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError

from .concepts import extract_assertions, extract_domain_concepts, split_identifier
from .content import ContentProvider
from .docs_index import find_related_docs
from .errors import RunCancelledError, ToolExecutionError
from .models import DocChunk, EvidenceAnalysis, EvidenceItem, EvidenceType, OrphanTestInfo, TestQualityScore
from .tools import TEST_ANALYSIS_TOOL, ToolRegistry

logger = logging.getLogger(__name__)

_RELATED_SNIPPET_LINES = 40

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


class AnalysisService(Protocol):
    """Injected analysis backend consulted after the tool registry."""

    def analyze_test(self, test: OrphanTestInfo) -> EvidenceAnalysis | dict[str, Any] | None: ...


def order_tests_by_dependency(tests: Sequence[OrphanTestInfo], dependency_order: Sequence[str]) -> list[OrphanTestInfo]:
    """Stable-sort tests so tests touching foundational files come first.

    A test ranks by the smallest position among its related source files, then
    by its own file's position. Tests with no ranked file keep discovery order
    after all ranked tests. With no ordering the input order is returned.
    """
    if not dependency_order:
        return list(tests)
    position = {path: index for index, path in enumerate(dependency_order)}

    def rank(test: OrphanTestInfo) -> float:
        related = [position[path] for path in test.related_source_files if path in position]
        if related:
            return min(related)
        return position.get(test.file_path, math.inf)

    return sorted(tests, key=rank)


def _parallel_map(func: Callable[[ItemT], ResultT], items: Sequence[ItemT], max_workers: int) -> list[ResultT]:
    if max_workers <= 1 or len(items) <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(func, items))


@dataclass
class ContextBuilder:
    """Builds ``EvidenceAnalysis`` records with tool -> service -> heuristic fallback.

    ``max_workers`` bounds the thread pool used for per-item analysis. Results
    are merged into key-addressed maps in input order, so concurrency does not
    change the output.
    """

    provider: ContentProvider
    tools: ToolRegistry | None = None
    analysis_service: AnalysisService | None = None
    docs: list[DocChunk] = field(default_factory=list)
    root_directory: str = ""
    max_workers: int = 1

    def build(
        self,
        tests: Sequence[OrphanTestInfo],
        evidence_items: Sequence[EvidenceItem] = (),
        *,
        dependency_order: Sequence[str] = (),
        test_quality: dict[str, TestQualityScore] | None = None,
    ) -> tuple[dict[str, EvidenceAnalysis], dict[str, EvidenceAnalysis]]:
        quality = test_quality or {}
        ordered = order_tests_by_dependency(tests, dependency_order)
        test_results = _parallel_map(lambda test: self.analyze_test(test, quality.get(test.key)), ordered, self.max_workers)
        evidence_results = _parallel_map(self.analyze_evidence, list(evidence_items), self.max_workers)
        test_analyses = {test.key: analysis for test, analysis in zip(ordered, test_results)}
        evidence_analyses = {item.key: analysis for item, analysis in zip(evidence_items, evidence_results)}
        return test_analyses, evidence_analyses

    def analyze_test(self, test: OrphanTestInfo, quality: TestQualityScore | None = None) -> EvidenceAnalysis:
        analysis = self._from_tool(test) or self._from_service(test) or self._heuristic_test_analysis(test)
        if quality is not None and analysis.quality_score is None:
            analysis = analysis.model_copy(update={"quality_score": quality.overall_score})
        return analysis

    def _from_tool(self, test: OrphanTestInfo) -> EvidenceAnalysis | None:
        if self.tools is None or not self.tools.has_tool(TEST_ANALYSIS_TOOL):
            return None
        try:
            payload = self.tools.execute_tool(
                TEST_ANALYSIS_TOOL,
                {"root_directory": self.root_directory, "file_path": test.file_path, "test_name": test.test_name},
            )
            return EvidenceAnalysis.model_validate(payload)
        except (ToolExecutionError, ValidationError) as exc:
            logger.warning("Test analysis tool failed for %s, falling back: %s", test.key, exc)
            return None

    def _from_service(self, test: OrphanTestInfo) -> EvidenceAnalysis | None:
        if self.analysis_service is None:
            return None
        try:
            payload = self.analysis_service.analyze_test(test)
        except RunCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - injected service is external
            logger.warning("Analysis service failed for %s, using heuristics: %s", test.key, exc)
            return None
        if payload is None:
            return None
        if isinstance(payload, EvidenceAnalysis):
            return payload
        try:
            return EvidenceAnalysis.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Analysis service returned an invalid payload for %s: %s", test.key, exc)
            return None

    def _related_snippets(self, paths: Iterable[str]) -> list[str]:
        snippets: list[str] = []
        for path in paths:
            content = self.provider.read_file_or_none(path)
            if content is None:
                continue
            head = "\n".join(content.splitlines()[:_RELATED_SNIPPET_LINES])
            snippets.append(f"// {path}\n{head}")
        return snippets

    def _heuristic_test_analysis(self, test: OrphanTestInfo) -> EvidenceAnalysis:
        assertions = extract_assertions(test.test_code)
        concepts = extract_domain_concepts(test.test_name, test.test_code)
        related_code = self._related_snippets(test.related_source_files)
        summary = f"Test '{test.test_name}' in {test.file_path}"
        if assertions:
            summary += f" verifies {len(assertions)} assertion(s)"
        raw_parts = [f"Test: {test.test_name}", f"File: {test.file_path}:{test.line_number}", test.test_code]
        if assertions:
            raw_parts.append("Assertions:\n" + "\n".join(f"- {item}" for item in assertions))
        return EvidenceAnalysis(
            summary=summary,
            domain_concepts=concepts,
            related_code=related_code,
            related_docs=find_related_docs(concepts, self.docs),
            raw_context="\n\n".join(part for part in raw_parts if part),
        )

    def analyze_evidence(self, item: EvidenceItem) -> EvidenceAnalysis:
        builder = _EVIDENCE_BUILDERS.get(item.type, _generic_evidence)
        analysis = builder(item)
        if not analysis.related_docs and analysis.domain_concepts:
            analysis = analysis.model_copy(update={"related_docs": find_related_docs(analysis.domain_concepts, self.docs)})
        return analysis


def _generic_evidence(item: EvidenceItem) -> EvidenceAnalysis:
    return EvidenceAnalysis(
        summary=f"{item.type.value} '{item.name}' in {item.file_path}",
        domain_concepts=extract_domain_concepts(item.name, item.code),
        related_code=[item.file_path, *item.related_files],
        raw_context=item.code,
    )


def _source_export(item: EvidenceItem) -> EvidenceAnalysis:
    kind = item.metadata.get("export_kind", "symbol")
    return EvidenceAnalysis(
        summary=f"Exported {kind} '{item.name}' from {item.file_path}",
        domain_concepts=extract_domain_concepts(item.name, item.code),
        related_code=[item.file_path, *item.related_files],
        raw_context=item.code,
    )


def _ui_component(item: EvidenceItem) -> EvidenceAnalysis:
    traits = [label for key, label in (("has_form", "form input"), ("has_navigation", "navigation")) if item.metadata.get(key)]
    summary = f"UI component '{item.name}' in {item.file_path}"
    if traits:
        summary += f" with {' and '.join(traits)}"
    return EvidenceAnalysis(
        summary=summary,
        domain_concepts=extract_domain_concepts(item.name, item.code),
        related_code=[item.file_path, *item.related_files],
        raw_context=item.code,
    )


def _api_endpoint(item: EvidenceItem) -> EvidenceAnalysis:
    route = str(item.metadata.get("route", ""))
    concepts = extract_domain_concepts(item.name, item.code)
    for segment in route.split("/"):
        if segment and not segment.startswith((":", "{")):
            for word in split_identifier(segment.replace("-", " ")):
                if word not in concepts:
                    concepts.append(word)
    return EvidenceAnalysis(
        summary=f"API endpoint {item.name} handled in {item.file_path}",
        domain_concepts=concepts[:15],
        related_code=[item.file_path, *item.related_files],
        raw_context=item.code,
    )


def _documentation(item: EvidenceItem) -> EvidenceAnalysis:
    return EvidenceAnalysis(
        summary=f"Documentation section '{item.name}' in {item.file_path}",
        domain_concepts=extract_domain_concepts(item.name, item.code),
        related_docs=[item.file_path],
        raw_context=item.code,
    )


def _coverage_gap(item: EvidenceItem) -> EvidenceAnalysis:
    lines = item.metadata.get("uncovered_lines") or []
    percent = item.metadata.get("coverage_percent")
    summary = f"Uncovered code '{item.name}' in {item.file_path}"
    if percent is not None:
        summary += f" ({percent}% covered)"
    if lines:
        summary += f", {len(lines)} uncovered line(s)"
    return EvidenceAnalysis(
        summary=summary,
        domain_concepts=extract_domain_concepts(item.name, item.code),
        related_code=[item.file_path, *item.related_files],
        raw_context=item.code,
    )


_EVIDENCE_BUILDERS: dict[EvidenceType, Callable[[EvidenceItem], EvidenceAnalysis]] = {
    EvidenceType.SOURCE_EXPORT: _source_export,
    EvidenceType.UI_COMPONENT: _ui_component,
    EvidenceType.API_ENDPOINT: _api_endpoint,
    EvidenceType.DOCUMENTATION: _documentation,
    EvidenceType.COVERAGE_GAP: _coverage_gap,
}
