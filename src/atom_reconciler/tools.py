from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from langchain_core.tools import BaseTool

from .errors import RunCancelledError, ToolExecutionError

logger = logging.getLogger(__name__)

# Tool names the phase nodes look up. All of them are optional.
REPO_STRUCTURE_TOOL = "get_repo_structure"
ORPHAN_DISCOVERY_TOOL = "discover_orphans_fullscan"
TEST_ANALYSIS_TOOL = "get_test_analysis"


class ToolRegistry:
    """Name-addressed collection of LangChain tools used as optional accelerators.

    Phase nodes only call ``has_tool`` / ``execute_tool`` and always keep a
    local fallback, so an empty registry is a valid configuration.
    """

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        for item in tools:
            self.register(item)

    def register(self, item: BaseTool) -> None:
        if item.name in self._tools:
            logger.warning("Replacing registered tool %s", item.name)
        self._tools[item.name] = item

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def execute_tool(self, name: str, args: dict[str, Any]) -> Any:
        """Invoke a tool and decode JSON string results.

        Raises:
            ToolExecutionError: If the tool is not registered or raises.
            RunCancelledError: Propagated unwrapped when the tool cancels the run.
        """
        item = self._tools.get(name)
        if item is None:
            raise ToolExecutionError(name, "tool is not registered")
        try:
            raw = item.invoke(args)
        except RunCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - tool implementations are external
            raise ToolExecutionError(name, str(exc)) from exc
        return _decode_tool_output(raw)


def _decode_tool_output(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith(("{", "[")):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                return raw
    return raw
