from __future__ import annotations


class ReconcilerError(RuntimeError):
    """Base class for reconciliation engine failures."""


class CheckpointNotFoundError(ReconcilerError, KeyError):
    """Raised when a run id has no checkpoint, or has no paused review to resume."""

    def __init__(self, run_id: str, reason: str = "no checkpoint recorded") -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Run {run_id!r} cannot be resumed: {reason}")

    def __str__(self) -> str:
        return f"Run {self.run_id!r} cannot be resumed: {self.reason}"


class RunCancelledError(ReconcilerError):
    """Cancellation signal. Propagates through the node wrapper unmodified."""

    def __init__(self, run_id: str, node: str | None = None) -> None:
        self.run_id = run_id
        self.node = node
        where = f" before {node}" if node else ""
        super().__init__(f"Run {run_id!r} cancelled{where}")


class ManifestNotReadyError(ReconcilerError):
    """Raised when a manifest is missing or not in the complete state."""


class ToolExecutionError(ReconcilerError):
    """Raised when a registered tool is missing or fails during execution."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Tool {tool_name!r} failed: {message}")


class GitCommandError(ReconcilerError):
    """Raised when a git invocation fails or times out."""


class DuplicateRunError(ReconcilerError):
    """Raised when a run row with the same run id already exists."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id!r} already exists")


class RunNotFoundError(ReconcilerError, KeyError):
    """Raised when updating a run row that does not exist."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id!r} not found")

    def __str__(self) -> str:
        return f"Run {self.run_id!r} not found"
