"""Orphan test discovery: annotation scanning, body extraction and file filters."""

from __future__ import annotations

import fnmatch
import logging
import posixpath
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .content import ContentProvider, normalize_relative_path
from .models import LinkedTestInfo, OrphanTestInfo, ReconciliationOptions

logger = logging.getLogger(__name__)

ATOM_ANNOTATION = re.compile(r"@atom\s+(IA-\d+)")
TEST_DECLARATION = re.compile(r"^\s*(?:it|test)\s*\(\s*['\"`](.+?)['\"`]")
DESCRIBE_DECLARATION = re.compile(r"^\s*describe\s*\(\s*['\"`](.+?)['\"`]")
RELATIVE_IMPORT = re.compile(
    r"""(?:from\s+['"](\.{1,2}/[^'"]+)['"]|require\(\s*['"](\.{1,2}/[^'"]+)['"]\s*\)|import\s+['"](\.{1,2}/[^'"]+)['"])"""
)

DEFAULT_TEST_PATTERNS = (
    "**/*.spec.ts",
    "**/*.test.ts",
    "**/*.e2e-spec.ts",
    "**/*.spec.tsx",
    "**/*.test.tsx",
    "**/*.spec.js",
    "**/*.test.js",
    "**/test_*.py",
    "**/*_test.py",
)
_TEST_SUFFIXES = (".e2e-spec", ".spec", ".test")
_RESOLVE_EXTENSIONS = ("", ".ts", ".tsx", ".js", ".jsx", "/index.ts", "/index.js")
_GLOB_CHARS = frozenset("*?[")


def glob_match(path: str, pattern: str) -> bool:
    """Match a POSIX path against a glob where ``**/`` may also match zero directories."""
    if fnmatch.fnmatchcase(path, pattern):
        return True
    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if fnmatch.fnmatchcase(path, pattern):
            return True
    return False


def _matches_path(path: str, pattern: str) -> bool:
    if _GLOB_CHARS.intersection(pattern):
        return glob_match(path, pattern)
    return path.startswith(normalize_relative_path(pattern))


def _matches_file_pattern(path: str, pattern: str) -> bool:
    if "/" not in pattern:
        return fnmatch.fnmatchcase(posixpath.basename(path), pattern)
    return glob_match(path, pattern)


def is_test_file(path: str, patterns: Sequence[str] = DEFAULT_TEST_PATTERNS) -> bool:
    return any(glob_match(path, pattern) for pattern in patterns)


def filter_test_files(files: Sequence[str], options: ReconciliationOptions) -> list[str]:
    """Apply include/exclude path and file-pattern filters.

    A file is kept only if it matches at least one pattern of every configured
    include filter and no pattern of any exclude filter. Each filter is a pure
    predicate, so the result does not depend on evaluation order.
    """
    if not options.has_filters:
        return list(files)

    def keep(path: str) -> bool:
        if options.include_paths and not any(_matches_path(path, p) for p in options.include_paths):
            return False
        if options.include_file_patterns and not any(
            _matches_file_pattern(path, p) for p in options.include_file_patterns
        ):
            return False
        if any(_matches_path(path, p) for p in options.exclude_paths):
            return False
        if any(_matches_file_pattern(path, p) for p in options.exclude_file_patterns):
            return False
        return True

    kept = [path for path in files if keep(path)]
    logger.info("Filtered test files: %d -> %d", len(files), len(kept))
    return kept


def extract_test_body(lines: Sequence[str], start: int, max_lines: int = 100) -> str:
    """Return the declaration block starting at ``start`` using brace depth.

    Extraction stops when the opening brace is balanced or after ``max_lines``
    lines, whichever comes first.
    """
    depth = 0
    opened = False
    collected: list[str] = []
    for line in lines[start : start + max_lines]:
        collected.append(line)
        for char in line:
            if char == "{":
                depth += 1
                opened = True
            elif char == "}":
                depth -= 1
        if opened and depth <= 0:
            break
    return "\n".join(collected)


def _convention_source(test_path: str) -> list[str]:
    directory, filename = posixpath.split(test_path)
    candidates: list[str] = []
    stem, ext = posixpath.splitext(filename)
    for suffix in _TEST_SUFFIXES:
        if stem.endswith(suffix):
            candidates.append(posixpath.join(directory, stem[: -len(suffix)] + ext))
            break
    if ext == ".py":
        if stem.startswith("test_"):
            candidates.append(posixpath.join(directory, stem[len("test_") :] + ext))
        elif stem.endswith("_test"):
            candidates.append(posixpath.join(directory, stem[: -len("_test")] + ext))
    return candidates


def resolve_related_files(test_path: str, content: str, provider: ContentProvider) -> list[str]:
    """Related source files by naming convention and relative imports, deduplicated."""
    related: list[str] = []
    for candidate in _convention_source(test_path):
        if provider.exists(candidate):
            related.append(candidate)

    directory = posixpath.dirname(test_path)
    for match in RELATIVE_IMPORT.finditer(content):
        specifier = next(group for group in match.groups() if group)
        base = normalize_relative_path(posixpath.join(directory, specifier))
        for extension in _RESOLVE_EXTENSIONS:
            candidate = base + extension
            if candidate != test_path and provider.read_file_or_none(candidate) is not None:
                related.append(candidate)
                break
    return list(dict.fromkeys(related))


@dataclass
class FileScan:
    orphans: list[OrphanTestInfo] = field(default_factory=list)
    linked: list[LinkedTestInfo] = field(default_factory=list)


def scan_test_file(
    file_path: str,
    content: str,
    provider: ContentProvider,
    *,
    lookback: int = 5,
    max_body_lines: int = 100,
) -> FileScan:
    """Split the test declarations of one file into orphaned and atom-linked tests.

    A declaration is linked when an ``@atom IA-NNN`` annotation appears on its
    own line or within ``lookback`` lines above it. Test names are prefixed by
    their enclosing ``describe`` blocks joined with `` > ``.
    """
    lines = content.splitlines()
    scan = FileScan()
    related: list[str] | None = None
    describe_stack: list[tuple[str, int]] = []
    depth = 0

    for index, line in enumerate(lines):
        test_match = TEST_DECLARATION.match(line)
        if test_match:
            names = [name for name, _ in describe_stack] + [test_match.group(1)]
            test_name = " > ".join(names)
            atom_id = None
            for candidate in lines[max(0, index - lookback) : index + 1]:
                annotation = ATOM_ANNOTATION.search(candidate)
                if annotation:
                    atom_id = annotation.group(1)
            if atom_id is not None:
                scan.linked.append(
                    LinkedTestInfo(file_path=file_path, test_name=test_name, line_number=index + 1, atom_id=atom_id)
                )
            else:
                if related is None:
                    related = resolve_related_files(file_path, content, provider)
                scan.orphans.append(
                    OrphanTestInfo(
                        file_path=file_path,
                        test_name=test_name,
                        line_number=index + 1,
                        test_code=extract_test_body(lines, index, max_body_lines),
                        related_source_files=related,
                    )
                )

        describe_match = DESCRIBE_DECLARATION.match(line)
        if describe_match:
            describe_stack.append((describe_match.group(1), depth))
        depth += line.count("{") - line.count("}")
        while describe_stack and depth <= describe_stack[-1][1] and "}" in line:
            describe_stack.pop()
    return scan


def discover_in_files(
    test_files: Iterable[str],
    provider: ContentProvider,
    *,
    lookback: int = 5,
    max_body_lines: int = 100,
    max_tests: int | None = None,
) -> FileScan:
    total = FileScan()
    for file_path in test_files:
        content = provider.read_file_or_none(file_path)
        if content is None:
            logger.warning("Test file %s is unreadable, skipping", file_path)
            continue
        scan = scan_test_file(file_path, content, provider, lookback=lookback, max_body_lines=max_body_lines)
        total.linked.extend(scan.linked)
        total.orphans.extend(scan.orphans)
        if max_tests is not None and len(total.orphans) >= max_tests:
            logger.warning("Orphan discovery capped at %d tests", max_tests)
            total.orphans = total.orphans[:max_tests]
            break
    return total
