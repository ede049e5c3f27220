from importlib.metadata import PackageNotFoundError, version

from .cache import AtomTestLink, CacheSnapshot, MainCache
from .content import FilesystemContentProvider, InMemoryContentProvider
from .errors import (
    CheckpointNotFoundError,
    DuplicateRunError,
    GitCommandError,
    ManifestNotReadyError,
    ReconcilerError,
    RunCancelledError,
    RunNotFoundError,
    ToolExecutionError,
)
from .manifests import FileManifestRepository, InMemoryManifestRepository
from .models import (
    Atom,
    AtomDecision,
    HumanReviewInput,
    Manifest,
    ManifestStatus,
    Molecule,
    MoleculeDecision,
    OrphanTestInfo,
    ReconciliationInput,
    ReconciliationMode,
    ReconciliationOptions,
    ReconciliationPatch,
    ReconciliationResult,
    ReviewDecision,
    ReviewRequest,
    RunOutcome,
    RunStatus,
    validate_patch,
)
from .orchestrator import ReconciliationOrchestrator
from .progress import ProgressEmitter, ProgressEvent
from .reasoning import LangChainReasoningClient, ReasoningRequest, ReasoningResponse
from .repository import InMemoryRunRepository, SqliteRunRepository
from .settings import RuntimeSettings
from .tools import ToolRegistry


def get_version() -> str:
    try:
        return version("atom-reconciler")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Atom",
    "AtomDecision",
    "AtomTestLink",
    "CacheSnapshot",
    "CheckpointNotFoundError",
    "DuplicateRunError",
    "FileManifestRepository",
    "FilesystemContentProvider",
    "GitCommandError",
    "HumanReviewInput",
    "InMemoryContentProvider",
    "InMemoryManifestRepository",
    "InMemoryRunRepository",
    "LangChainReasoningClient",
    "MainCache",
    "Manifest",
    "ManifestNotReadyError",
    "ManifestStatus",
    "Molecule",
    "MoleculeDecision",
    "OrphanTestInfo",
    "ProgressEmitter",
    "ProgressEvent",
    "ReasoningRequest",
    "ReasoningResponse",
    "ReconcilerError",
    "ReconciliationInput",
    "ReconciliationMode",
    "ReconciliationOptions",
    "ReconciliationOrchestrator",
    "ReconciliationPatch",
    "ReconciliationResult",
    "ReviewDecision",
    "ReviewRequest",
    "RunCancelledError",
    "RunNotFoundError",
    "RunOutcome",
    "RunStatus",
    "RuntimeSettings",
    "SqliteRunRepository",
    "ToolExecutionError",
    "ToolRegistry",
    "get_version",
    "validate_patch",
]
