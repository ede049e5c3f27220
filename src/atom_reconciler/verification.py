"""Atom quality gating used by the verify phase."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from .models import Atom, HumanReviewInput, ReviewDecision, VerifyDecision, VerifyOutcome


@dataclass(frozen=True, slots=True)
class QualityRule:
    name: str
    weight: int


DEFAULT_QUALITY_RULES: tuple[QualityRule, ...] = (
    QualityRule("has_description", 25),
    QualityRule("has_outcomes", 15),
    QualityRule("has_category", 15),
    QualityRule("has_reasoning", 10),
    QualityRule("has_confidence", 15),
    QualityRule("no_ambiguity", 10),
    QualityRule("has_source_test", 10),
)

_IMPLEMENTATION_PATTERNS = (
    re.compile(r"\bclass\b", re.IGNORECASE),
    re.compile(r"\bmethod\b", re.IGNORECASE),
    re.compile(r"\bfunction\b", re.IGNORECASE),
    re.compile(r"\(\)\s*$"),
    re.compile(r"\bService\b"),
    re.compile(r"\bRepository\b"),
    re.compile(r"\bController\b"),
)
_VAGUE_OUTCOME = re.compile(r"works|handles|properly|correctly", re.IGNORECASE)


def _rule_passes(rule: str, atom: Atom) -> bool:
    if rule == "has_description":
        return len(atom.description.strip()) > 5
    if rule == "has_outcomes":
        return bool(atom.observable_outcomes)
    if rule == "has_category":
        return bool(atom.category.strip())
    if rule == "has_reasoning":
        return len(atom.reasoning.strip()) > 10
    if rule == "has_confidence":
        return atom.confidence >= 0.5
    if rule == "no_ambiguity":
        return not atom.ambiguity_reasons
    if rule == "has_source_test":
        return atom.source_test is not None
    raise ValueError(f"Unknown quality rule: {rule}")


def compute_atom_quality(atom: Atom, rules: Sequence[QualityRule] = DEFAULT_QUALITY_RULES) -> float:
    """Weighted rule score on a 0-100 scale."""
    total = sum(rule.weight for rule in rules)
    if total == 0:
        return 0.0
    earned = sum(rule.weight for rule in rules if _rule_passes(rule.name, atom))
    return round(earned / total * 100, 2)


def atom_issues(atom: Atom) -> list[str]:
    issues: list[str] = []
    for pattern in _IMPLEMENTATION_PATTERNS:
        if pattern.search(atom.description):
            issues.append(f"Description contains implementation detail: {pattern.pattern}")
    if len(atom.description) < 20:
        issues.append("Description too short (< 20 chars)")
    if not atom.observable_outcomes:
        issues.append("No observable outcomes defined")
    for outcome in atom.observable_outcomes:
        if len(outcome) < 10:
            issues.append(f'Outcome too short: "{outcome}"')
        if _VAGUE_OUTCOME.search(outcome) and len(outcome) < 30:
            issues.append(f'Outcome may be vague: "{outcome}"')
    return issues


def effective_quality(atom: Atom) -> float:
    return atom.quality_score if atom.quality_score is not None else compute_atom_quality(atom)


def classify_atoms(
    atoms: Sequence[Atom],
    threshold: float,
    review: HumanReviewInput | None = None,
) -> list[VerifyDecision]:
    """Decide each atom's outcome from its quality and any human decision.

    Without review input an atom is approved iff its quality meets the
    threshold. With review input, explicit decisions win and undecided atoms
    fall back to the quality result.
    """
    explicit = review.atom_decision_map() if review is not None else {}
    decisions: list[VerifyDecision] = []
    for atom in atoms:
        score = effective_quality(atom)
        decision = explicit.get(atom.id)
        if decision == ReviewDecision.APPROVE:
            outcome = VerifyOutcome.APPROVED
        elif decision == ReviewDecision.REJECT:
            outcome = VerifyOutcome.REJECTED
        else:
            outcome = VerifyOutcome.APPROVED if score >= threshold else VerifyOutcome.QUALITY_FAIL
        decisions.append(VerifyDecision(atom_id=atom.id, outcome=outcome, quality_score=score, issues=atom_issues(atom)))
    return decisions
