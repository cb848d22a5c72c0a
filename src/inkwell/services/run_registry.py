"""In-memory record of the artifacts produced by each tool's latest run."""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock

__all__ = ["RunRegistry"]

LOGGER = logging.getLogger(__name__)


class RunRegistry:
    """Last-write-wins map from tool id to the artifact paths of its latest run.

    ``clear`` starts a fresh slate for a tool; paths from earlier runs are no
    longer listed, although the files stay on disk.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[str]] = {}
        self._lock = Lock()

    def clear(self, tool_id: str) -> None:
        with self._lock:
            self._entries[tool_id] = []
        LOGGER.debug("Run registry cleared for tool %s", tool_id)

    def record(self, tool_id: str, artifact_path: Path | str) -> None:
        path = str(artifact_path)
        with self._lock:
            self._entries.setdefault(tool_id, []).append(path)
        LOGGER.debug("Recorded artifact for %s: %s", tool_id, path)

    def list(self, tool_id: str) -> list[str]:
        with self._lock:
            return list(self._entries.get(tool_id, ()))

    def tools_with_artifacts(self) -> list[str]:
        with self._lock:
            return [tool_id for tool_id, paths in self._entries.items() if paths]
