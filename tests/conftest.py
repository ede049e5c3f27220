from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from fakes import SAMPLE_FILES, ScriptedReasoning, SpyRepository

from atom_reconciler import InMemoryContentProvider, ReconciliationOrchestrator, RuntimeSettings


@pytest.fixture
def sample_provider() -> InMemoryContentProvider:
    return InMemoryContentProvider(SAMPLE_FILES)


@pytest.fixture
def spy_repository() -> SpyRepository:
    return SpyRepository()


@pytest.fixture
def make_orchestrator(
    tmp_path: Path,
    sample_provider: InMemoryContentProvider,
    spy_repository: SpyRepository,
) -> Iterator[Callable[..., ReconciliationOrchestrator]]:
    created: list[ReconciliationOrchestrator] = []

    def factory(**overrides: Any) -> ReconciliationOrchestrator:
        kwargs: dict[str, Any] = {
            "settings": RuntimeSettings(),
            "reasoning": ScriptedReasoning(),
            "repository": spy_repository,
            "content_provider": sample_provider,
            "state_root": tmp_path,
        }
        kwargs.update(overrides)
        orchestrator = ReconciliationOrchestrator(**kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.close()
