"""Local read-only cache of canonical atoms, molecules and atom-test links.

Local data is advisory: it mirrors the canonical store at ``pulled_at`` and is
replaced wholesale on every ``load``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field

from .canonical import to_canonical_json
from .manifests import atomic_write_text
from .models import Atom, AtomStatus, Molecule, utc_now


class AtomTestLink(BaseModel):
    atom_id: str
    test_file_path: str
    test_name: str

    @property
    def test_key(self) -> str:
        return f"{self.test_file_path}:{self.test_name}"


class CacheSnapshot(BaseModel):
    atoms: list[Atom] = Field(default_factory=list)
    molecules: list[Molecule] = Field(default_factory=list)
    atom_test_links: list[AtomTestLink] = Field(default_factory=list)
    snapshot_version: int = 0
    pulled_at: datetime = Field(default_factory=utc_now)
    server_url: str = ""
    project_id: str | None = None


class MainCache:
    def __init__(self) -> None:
        self._atoms: dict[str, Atom] = {}
        self._molecules: dict[str, Molecule] = {}
        self._links: list[AtomTestLink] = []
        self.snapshot_version = 0
        self.pulled_at: datetime | None = None
        self.server_url = ""
        self.project_id: str | None = None

    def load(self, snapshot: CacheSnapshot | dict) -> None:
        data = snapshot if isinstance(snapshot, CacheSnapshot) else CacheSnapshot.model_validate(snapshot)
        self._atoms = {atom.id: atom for atom in data.atoms}
        self._molecules = {molecule.id: molecule for molecule in data.molecules}
        self._links = list(data.atom_test_links)
        self.snapshot_version = data.snapshot_version
        self.pulled_at = data.pulled_at
        self.server_url = data.server_url
        self.project_id = data.project_id

    def export(self) -> CacheSnapshot:
        return CacheSnapshot(
            atoms=list(self._atoms.values()),
            molecules=list(self._molecules.values()),
            atom_test_links=list(self._links),
            snapshot_version=self.snapshot_version,
            pulled_at=self.pulled_at or utc_now(),
            server_url=self.server_url,
            project_id=self.project_id,
        )

    def save_to(self, path: str | Path) -> None:
        atomic_write_text(Path(path), to_canonical_json(self.export()))

    @classmethod
    def read_from(cls, path: str | Path) -> "MainCache":
        cache = cls()
        cache.load(CacheSnapshot.model_validate_json(Path(path).read_text(encoding="utf-8")))
        return cache

    def is_empty(self) -> bool:
        return not self._atoms

    def is_stale(self, max_age: timedelta = timedelta(hours=24)) -> bool:
        if self.pulled_at is None:
            return True
        return utc_now() - self.pulled_at > max_age

    def get_atom(self, atom_id: str) -> Atom | None:
        return self._atoms.get(atom_id)

    def has_atom(self, atom_id: str) -> bool:
        return atom_id in self._atoms

    def query_atoms(
        self,
        *,
        status: AtomStatus | None = None,
        category: str | None = None,
        search_term: str | None = None,
    ) -> list[Atom]:
        results = list(self._atoms.values())
        if status is not None:
            results = [atom for atom in results if atom.status == status]
        if category is not None:
            results = [atom for atom in results if atom.category == category]
        if search_term:
            term = search_term.lower()
            results = [atom for atom in results if term in atom.description.lower()]
        return results

    def committed_atoms(self) -> list[Atom]:
        return self.query_atoms(status=AtomStatus.COMMITTED)

    def get_molecule(self, molecule_id: str) -> Molecule | None:
        return self._molecules.get(molecule_id)

    def molecules_for_atom(self, atom_id: str) -> list[Molecule]:
        return [molecule for molecule in self._molecules.values() if atom_id in molecule.atom_ids]

    def links_for_atom(self, atom_id: str) -> list[AtomTestLink]:
        return [link for link in self._links if link.atom_id == atom_id]

    def atoms_for_test(self, file_path: str, test_name: str) -> list[Atom]:
        key = f"{file_path}:{test_name}"
        return [self._atoms[link.atom_id] for link in self._links if link.test_key == key and link.atom_id in self._atoms]

    def unlinked_atoms(self) -> list[Atom]:
        """Committed atoms with no linked test."""
        linked = {link.atom_id for link in self._links}
        return [atom for atom in self.committed_atoms() if atom.id not in linked]
