from __future__ import annotations

import re

DOMAIN_VOCABULARY: tuple[str, ...] = (
    "user", "auth", "login", "session", "token", "payment", "order", "cart", "checkout",
    "create", "update", "delete", "get", "list", "validate", "error", "success", "fail",
    "submit", "upload", "download", "notification", "email", "search", "filter", "sort",
    "permission", "role", "admin", "config", "setting", "profile",
)  # fmt: skip

MAX_CONCEPTS = 15
MAX_ASSERTIONS = 5

_ASSERTION = re.compile(r"expect\([^)]+\)\.[^;\n]+|\bassert\s+[^\n]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_WORD = re.compile(r"[A-Za-z][A-Za-z0-9]*")


def split_identifier(text: str) -> list[str]:
    """Split camelCase, PascalCase, snake_case and spaced text into lowercase words."""
    words: list[str] = []
    for token in _WORD.findall(text.replace("_", " ")):
        words.extend(part.lower() for part in _CAMEL_BOUNDARY.split(token) if part)
    return words


def extract_assertions(code: str, limit: int = MAX_ASSERTIONS) -> list[str]:
    return [match.group(0).strip() for match in _ASSERTION.finditer(code)][:limit]


def extract_domain_concepts(
    name: str,
    code: str = "",
    *,
    vocabulary: tuple[str, ...] = DOMAIN_VOCABULARY,
    limit: int = MAX_CONCEPTS,
) -> list[str]:
    """Vocabulary words found in an identifier or in code, name hits first.

    Name words match exactly (or by plural ``s``); code text matches by word
    prefix so ``validates`` and ``updated`` count as ``validate`` and ``update``.
    """
    found: list[str] = []
    name_words = set(split_identifier(name))
    for word in vocabulary:
        if word in name_words or f"{word}s" in name_words:
            found.append(word)

    code_words = set(split_identifier(code))
    for word in vocabulary:
        if word in found:
            continue
        if any(candidate.startswith(word) for candidate in code_words):
            found.append(word)
    return found[:limit]
