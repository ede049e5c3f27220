from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from .canonical import to_canonical_json
from .models import Manifest

logger = logging.getLogger(__name__)

_MANIFEST_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class ManifestRepository(Protocol):
    def find_by_id(self, manifest_id: str) -> Manifest | None: ...

    def save(self, manifest: Manifest) -> None: ...


class InMemoryManifestRepository:
    def __init__(self, manifests: list[Manifest] | None = None) -> None:
        self._manifests = {manifest.id: manifest for manifest in manifests or []}

    def find_by_id(self, manifest_id: str) -> Manifest | None:
        return self._manifests.get(manifest_id)

    def save(self, manifest: Manifest) -> None:
        self._manifests[manifest.id] = manifest


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar next to ``path``."""
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a same-directory temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class FileManifestRepository:
    """One canonical-JSON file per manifest under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, manifest_id: str) -> Path:
        if not _MANIFEST_ID.match(manifest_id):
            raise ValueError(f"Invalid manifest id: {manifest_id!r}")
        return self.root / f"{manifest_id}.json"

    def find_by_id(self, manifest_id: str) -> Manifest | None:
        path = self._path(manifest_id)
        if not path.is_file():
            return None
        with _locked(path):
            text = path.read_text(encoding="utf-8")
        if not text.strip():
            logger.warning("Manifest file %s is empty", path)
            return None
        return Manifest.model_validate_json(text)

    def save(self, manifest: Manifest) -> None:
        path = self._path(manifest.id)
        with _locked(path):
            atomic_write_text(path, to_canonical_json(manifest))
