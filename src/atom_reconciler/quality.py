"""Static multi-dimension test quality scoring.

Scores are computed per test file from regex heuristics over the file text and
then projected onto every orphan test declared in that file. Nothing here
performs I/O except through the supplied ``ContentProvider``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from .content import ContentProvider
from .models import IssueSeverity, OrphanTestInfo, QualityIssue, TestQualityScore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Dimension:
    weight: float
    threshold: float


QUALITY_DIMENSIONS: dict[str, Dimension] = {
    "intent_fidelity": Dimension(weight=0.20, threshold=0.70),
    "no_vacuous_tests": Dimension(weight=0.15, threshold=0.90),
    "no_brittle_tests": Dimension(weight=0.15, threshold=0.80),
    "determinism": Dimension(weight=0.10, threshold=0.95),
    "failure_signal_quality": Dimension(weight=0.15, threshold=0.70),
    "integration_test_authenticity": Dimension(weight=0.15, threshold=0.80),
    "boundary_and_negative_coverage": Dimension(weight=0.10, threshold=0.60),
}

_ATOM_ANNOTATION = re.compile(r"@atom\s+IA-\d+")
_TEST_CASE = re.compile(r"\b(?:it|test)\s*\(")
_ASSERTION = re.compile(r"\bexpect\s*\(")
_VACUOUS = (
    re.compile(r"expect\([^)]+\)\.toBeDefined\(\)"),
    re.compile(r"expect\([^)]+\)\.toBeTruthy\(\)"),
    re.compile(r"expect\(true\)\.toBe\(true\)"),
)
_BRITTLE = (
    re.compile(r"\.toHaveBeenCalledTimes\("),
    re.compile(r"toMatchSnapshot\(\)"),
)
_NON_DETERMINISTIC = (
    re.compile(r"Math\.random\(\)"),
    re.compile(r"Date\.now\(\)"),
    re.compile(r"new Date\(\)"),
    re.compile(r"\bfetch\("),
    re.compile(r"\baxios\."),
)
_MOCK_MARKERS = ("jest.mock", "jest.spyOn", "vi.mock", "vi.spyOn")
_INLINE_MESSAGE = re.compile(r"expect\([^)]+\)\.[^;]+,\s*['\"`]")
_COMMENTED_ASSERTION = re.compile(r"//[^\n]+\n\s*expect\(")
_INTEGRATION_MOCKS = (
    re.compile(r"jest\.mock\("),
    re.compile(r"\.mockImplementation\("),
    re.compile(r"\.mockReturnValue\("),
)
_BOUNDARY = (
    re.compile(r"toBe\(0\)"),
    re.compile(r"toBe\(null\)"),
    re.compile(r"toBe\(undefined\)"),
    re.compile(r"toBeGreaterThan\("),
    re.compile(r"toBeLessThan\("),
    re.compile(r"toThrow"),
    re.compile(r"expect.*\.rejects"),
)


def _count(patterns: Iterable[re.Pattern[str]], content: str) -> int:
    return sum(len(pattern.findall(content)) for pattern in patterns)


def _intent_fidelity(content: str) -> float:
    tests = len(_TEST_CASE.findall(content))
    if tests == 0:
        return 1.0
    return min(len(_ATOM_ANNOTATION.findall(content)) / tests, 1.0)


def _no_vacuous_tests(content: str) -> float:
    assertions = len(_ASSERTION.findall(content))
    if assertions == 0:
        return 1.0
    return max(0.0, 1.0 - _count(_VACUOUS, content) / assertions)


def _no_brittle_tests(content: str) -> float:
    tests = len(_TEST_CASE.findall(content))
    if tests == 0:
        return 1.0
    return max(0.0, 1.0 - (_count(_BRITTLE, content) / tests) * 0.5)


def _determinism(content: str) -> float:
    if any(marker in content for marker in _MOCK_MARKERS):
        return 1.0
    issues = _count(_NON_DETERMINISTIC, content)
    return 1.0 if issues == 0 else max(0.0, 1.0 - issues * 0.1)


def _failure_signal_quality(content: str) -> float:
    assertions = len(_ASSERTION.findall(content))
    if assertions == 0:
        return 1.0
    documented = len(_INLINE_MESSAGE.findall(content)) + len(_COMMENTED_ASSERTION.findall(content))
    return min(documented / assertions, 1.0)


def _integration_test_authenticity(content: str, file_path: str) -> float:
    if "integration" not in file_path and "e2e" not in file_path:
        return 1.0
    mocks = _count(_INTEGRATION_MOCKS, content)
    return 1.0 if mocks == 0 else max(0.0, 1.0 - mocks * 0.2)


def _boundary_and_negative_coverage(content: str) -> float:
    tests = len(_TEST_CASE.findall(content))
    if tests == 0:
        return 1.0
    # at least 30% of tests should exercise a boundary or failure path
    return min((_count(_BOUNDARY, content) / tests) / 0.3, 1.0)


def score_test_source(content: str, file_path: str) -> TestQualityScore:
    """Score one test file across all quality dimensions.

    Args:
        content: Full text of the test file.
        file_path: Path used for integration/e2e detection.

    Returns:
        Overall weighted score on a 0-100 scale, a pass flag that requires every
        dimension to meet its threshold, per-dimension ratios, and issues.
    """
    scores = {
        "intent_fidelity": _intent_fidelity(content),
        "no_vacuous_tests": _no_vacuous_tests(content),
        "no_brittle_tests": _no_brittle_tests(content),
        "determinism": _determinism(content),
        "failure_signal_quality": _failure_signal_quality(content),
        "integration_test_authenticity": _integration_test_authenticity(content, file_path),
        "boundary_and_negative_coverage": _boundary_and_negative_coverage(content),
    }
    total_weight = sum(dimension.weight for dimension in QUALITY_DIMENSIONS.values())
    weighted = sum(scores[name] * dimension.weight for name, dimension in QUALITY_DIMENSIONS.items())

    issues: list[QualityIssue] = []
    for name, dimension in QUALITY_DIMENSIONS.items():
        score = scores[name]
        if score < dimension.threshold:
            severity = IssueSeverity.CRITICAL if score < dimension.threshold * 0.5 else IssueSeverity.WARNING
            issues.append(QualityIssue(dimension=name, score=score, threshold=dimension.threshold, severity=severity))

    return TestQualityScore(
        overall_score=round(weighted / total_weight * 100, 2),
        passed=not issues,
        dimensions=scores,
        issues=issues,
    )


def analyze_test_quality(
    orphan_tests: Iterable[OrphanTestInfo],
    provider: ContentProvider,
) -> dict[str, TestQualityScore]:
    """Score each distinct test file once and key the result by ``file:test``."""
    by_file: dict[str, list[OrphanTestInfo]] = {}
    for test in orphan_tests:
        by_file.setdefault(test.file_path, []).append(test)

    results: dict[str, TestQualityScore] = {}
    for file_path, tests in by_file.items():
        content = provider.read_file_or_none(file_path)
        if content is None:
            logger.warning("Skipping quality analysis for %s: source unavailable", file_path)
            continue
        score = score_test_source(content, file_path)
        for test in tests:
            results[test.key] = score
    return results
