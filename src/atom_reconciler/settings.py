from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

CHECKPOINT_BACKENDS = ("memory", "sqlite")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    quality_threshold: float = 80.0
    max_tests: int = 5_000
    max_files: int = 10_000
    annotation_lookback: int = 5
    max_body_lines: int = 100
    batch_size: int = 5
    max_doc_chunks: int = 50
    progress_queue_size: int = 256
    recursion_limit: int = 100
    checkpoint_backend: str = "memory"
    checkpoint_db: str = ".reconciler/checkpoints.sqlite"
    run_db: str = ".reconciler/runs.sqlite"
    manifest_dir: str = ".reconciler/manifests"
    model_name: str = "gpt-4o-mini"
    llm_timeout: int = 120

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            quality_threshold=_get_env_float("RECONCILER_QUALITY_THRESHOLD", default=80.0, minimum=0.0, maximum=100.0),
            max_tests=_get_env_int("RECONCILER_MAX_TESTS", default=5_000, minimum=1),
            max_files=_get_env_int("RECONCILER_MAX_FILES", default=10_000, minimum=1),
            annotation_lookback=_get_env_int("RECONCILER_ANNOTATION_LOOKBACK", default=5, minimum=0, maximum=100),
            max_body_lines=_get_env_int("RECONCILER_MAX_BODY_LINES", default=100, minimum=1, maximum=10_000),
            batch_size=_get_env_int("RECONCILER_BATCH_SIZE", default=5, minimum=1, maximum=100),
            max_doc_chunks=_get_env_int("RECONCILER_MAX_DOC_CHUNKS", default=50, minimum=0),
            progress_queue_size=_get_env_int("RECONCILER_PROGRESS_QUEUE_SIZE", default=256, minimum=1),
            recursion_limit=_get_env_int("RECONCILER_RECURSION_LIMIT", default=100, minimum=25),
            checkpoint_backend=os.getenv("RECONCILER_CHECKPOINT_BACKEND", "memory"),
            checkpoint_db=os.getenv("RECONCILER_CHECKPOINT_DB", ".reconciler/checkpoints.sqlite"),
            run_db=os.getenv("RECONCILER_RUN_DB", ".reconciler/runs.sqlite"),
            manifest_dir=os.getenv("RECONCILER_MANIFEST_DIR", ".reconciler/manifests"),
            model_name=os.getenv("RECONCILER_MODEL", "gpt-4o-mini"),
            llm_timeout=_get_env_int("RECONCILER_LLM_TIMEOUT", default=120, minimum=1, maximum=3_600),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not 0.0 <= self.quality_threshold <= 100.0:
            raise ValueError(
                f"RECONCILER_QUALITY_THRESHOLD must be within [0, 100], got: {self.quality_threshold}"
            )

        backend = self.checkpoint_backend.strip().lower()
        if backend not in CHECKPOINT_BACKENDS:
            raise ValueError("RECONCILER_CHECKPOINT_BACKEND must be one of: memory, sqlite")

        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("RECONCILER_MODEL must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("RECONCILER_CHECKPOINT_DB must be non-empty")
        if not self.run_db.strip():
            raise ValueError("RECONCILER_RUN_DB must be non-empty")
        if not self.manifest_dir.strip():
            raise ValueError("RECONCILER_MANIFEST_DIR must be non-empty")

        return replace(self, checkpoint_backend=backend, model_name=model_name)

    def checkpoint_path(self, root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else root / path

    def run_db_path(self, root: Path) -> Path:
        path = Path(self.run_db)
        return path if path.is_absolute() else root / path

    def manifest_path(self, root: Path) -> Path:
        path = Path(self.manifest_dir)
        return path if path.is_absolute() else root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
