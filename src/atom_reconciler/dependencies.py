from __future__ import annotations

import logging
import posixpath
from collections import defaultdict, deque
from collections.abc import Iterable

from .content import ContentProvider, normalize_relative_path
from .discovery import RELATIVE_IMPORT

logger = logging.getLogger(__name__)

_EXTENSIONS = ("", ".ts", ".tsx", ".js", ".jsx", "/index.ts", "/index.js")


def build_import_graph(source_files: Iterable[str], provider: ContentProvider) -> dict[str, set[str]]:
    """Map each source file to the set of known source files it imports."""
    known = set(source_files)
    graph: dict[str, set[str]] = {path: set() for path in known}
    for path in known:
        content = provider.read_file_or_none(path)
        if not content:
            continue
        directory = posixpath.dirname(path)
        for match in RELATIVE_IMPORT.finditer(content):
            specifier = next(group for group in match.groups() if group)
            base = normalize_relative_path(posixpath.join(directory, specifier))
            for extension in _EXTENSIONS:
                if base + extension in known and base + extension != path:
                    graph[path].add(base + extension)
                    break
    return graph


def topological_file_order(graph: dict[str, set[str]]) -> list[str]:
    """Order files so every file appears after the files it imports.

    Ties are broken alphabetically. Files caught in import cycles are appended
    in alphabetical order after the acyclic part.
    """
    indegree = {path: len(deps) for path, deps in graph.items()}
    dependents: dict[str, list[str]] = defaultdict(list)
    for path, deps in graph.items():
        for dep in deps:
            dependents[dep].append(path)

    queue = deque(sorted(path for path, degree in indegree.items() if degree == 0))
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for nxt in sorted(dependents[current]):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if len(order) != len(graph):
        remaining = sorted(set(graph) - set(order))
        logger.warning("Import graph contains cycles across %d files; appending them unordered", len(remaining))
        order.extend(remaining)
    return order
