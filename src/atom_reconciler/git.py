from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from .errors import GitCommandError

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 30


def _run_git(root: str | Path, *args: str) -> str:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=str(root),
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitCommandError(f"git {' '.join(args)} failed: {exc}") from exc
    if completed.returncode != 0:
        raise GitCommandError(f"git {' '.join(args)} exited {completed.returncode}: {completed.stderr.strip()}")
    return completed.stdout


def is_git_repository(root: str | Path) -> bool:
    if not Path(root).is_dir():
        return False
    try:
        return _run_git(root, "rev-parse", "--is-inside-work-tree").strip() == "true"
    except GitCommandError:
        return False


def get_current_commit_hash(root: str | Path) -> str | None:
    try:
        return _run_git(root, "rev-parse", "HEAD").strip() or None
    except GitCommandError as exc:
        logger.debug("No commit hash for %s: %s", root, exc)
        return None


def get_changed_files(root: str | Path, base_ref: str, head_ref: str = "HEAD") -> list[str]:
    """Return root-relative paths changed between ``base_ref`` and ``head_ref``.

    Raises:
        GitCommandError: If git is unavailable or the refs cannot be resolved.
    """
    output = _run_git(root, "diff", "--name-only", "--relative", f"{base_ref}..{head_ref}")
    return [line.strip() for line in output.splitlines() if line.strip()]
