from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_DIRS = frozenset(
    {"node_modules", "dist", ".git", "coverage", ".next", ".cache", "build", "__pycache__", ".venv"}
)


class ContentProvider(Protocol):
    """Read access to repository content, addressed by root-relative POSIX paths."""

    def exists(self, path: str) -> bool: ...

    def walk_directory(
        self,
        path: str = "",
        *,
        exclude_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        max_files: int | None = None,
    ) -> list[str]: ...

    def read_file_or_none(self, path: str) -> str | None: ...


def normalize_relative_path(path: str) -> str:
    """Collapse ``./``, ``..`` and backslashes into a root-relative POSIX path."""
    parts: list[str] = []
    for part in PurePosixPath(path.replace("\\", "/")).parts:
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        if part == "/":
            continue
        parts.append(part)
    return "/".join(parts)


class FilesystemContentProvider:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        return self.root / normalize_relative_path(path)

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def walk_directory(
        self,
        path: str = "",
        *,
        exclude_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        max_files: int | None = None,
    ) -> list[str]:
        excluded = set(exclude_dirs)
        start = self._resolve(path)
        if not start.is_dir():
            return []
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(name for name in dirnames if name not in excluded)
            for filename in sorted(filenames):
                relative = Path(dirpath, filename).relative_to(self.root).as_posix()
                files.append(relative)
                if max_files is not None and len(files) >= max_files:
                    logger.warning("Directory walk truncated at %d files under %s", max_files, start)
                    return files
        return files

    def read_file_or_none(self, path: str) -> str | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Unable to read %s: %s", target, exc)
            return None


class InMemoryContentProvider:
    """Serves pre-submitted file payloads (uploads, fixtures) instead of a filesystem."""

    def __init__(self, files: Mapping[str, str]) -> None:
        self._files = {normalize_relative_path(path): content for path, content in files.items()}

    def exists(self, path: str) -> bool:
        normalized = normalize_relative_path(path)
        if normalized in self._files:
            return True
        prefix = f"{normalized}/" if normalized else ""
        return any(name.startswith(prefix) for name in self._files)

    def walk_directory(
        self,
        path: str = "",
        *,
        exclude_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        max_files: int | None = None,
    ) -> list[str]:
        excluded = set(exclude_dirs)
        normalized = normalize_relative_path(path)
        prefix = f"{normalized}/" if normalized else ""
        files: list[str] = []
        for name in sorted(self._files):
            if not name.startswith(prefix):
                continue
            if excluded.intersection(name.split("/")[:-1]):
                continue
            files.append(name)
            if max_files is not None and len(files) >= max_files:
                break
        return files

    def read_file_or_none(self, path: str) -> str | None:
        return self._files.get(normalize_relative_path(path))
