"""Append-only log backends for the Memory Store.

One physical format for both namespaces: each entry is a self-describing
``(tag, payload)`` pair, appended and never rewritten. The JSONL backend
stores one ``{"tag": ..., "payload": ...}`` object per line.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator

from reactree.core.exceptions import StorageFatalError

logger = logging.getLogger("reactree.memory.backends")

WORKING = "working"
EPISODIC = "episodic"
NAMESPACES = (WORKING, EPISODIC)

LogEntry = tuple[str, dict[str, Any]]


class LogBackend(ABC):
    """Durable storage for two append-only logs."""

    @abstractmethod
    def append(self, namespace: str, tag: str, payload: dict[str, Any]) -> None:
        """Append one entry. Raises StorageFatalError on I/O failure."""

    @abstractmethod
    def entries(self, namespace: str) -> Iterator[LogEntry]:
        """Yield every entry of ``namespace`` in append order."""

    def close(self) -> None:
        """Release any held resources."""


def _check_namespace(namespace: str) -> None:
    if namespace not in NAMESPACES:
        raise ValueError(f"Unknown memory namespace '{namespace}'")


class InMemoryLogBackend(LogBackend):
    """Process-local logs for ephemeral runs."""

    def __init__(self):
        self._logs: dict[str, list[LogEntry]] = {ns: [] for ns in NAMESPACES}
        self._lock = threading.Lock()

    def append(self, namespace: str, tag: str, payload: dict[str, Any]) -> None:
        _check_namespace(namespace)
        # Round-trip through JSON so stored entries match what a file would hold.
        try:
            encoded = json.loads(json.dumps(payload, default=str))
        except (TypeError, ValueError) as e:
            raise StorageFatalError(f"Payload is not serializable: {e}") from e
        with self._lock:
            self._logs[namespace].append((tag, encoded))

    def entries(self, namespace: str) -> Iterator[LogEntry]:
        _check_namespace(namespace)
        with self._lock:
            snapshot = list(self._logs[namespace])
        yield from snapshot


class JsonlLogBackend(LogBackend):
    """Newline-delimited JSON files under a project root directory."""

    def __init__(
        self,
        root_dir: Path,
        working_log: str = "working_memory.jsonl",
        episodic_log: str = "episodic_memory.jsonl",
    ):
        self.root_dir = Path(root_dir)
        self._paths = {
            WORKING: self.root_dir / working_log,
            EPISODIC: self.root_dir / episodic_log,
        }
        self._lock = threading.Lock()

    def path_for(self, namespace: str) -> Path:
        _check_namespace(namespace)
        return self._paths[namespace]

    def append(self, namespace: str, tag: str, payload: dict[str, Any]) -> None:
        path = self.path_for(namespace)
        try:
            line = json.dumps({"tag": tag, "payload": payload}, ensure_ascii=True, default=str)
        except (TypeError, ValueError) as e:
            raise StorageFatalError(f"Payload is not serializable: {e}") from e
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
                    handle.flush()
            except OSError as e:
                raise StorageFatalError(f"Failed to append to {path}: {e}") from e

    def entries(self, namespace: str) -> Iterator[LogEntry]:
        path = self.path_for(namespace)
        if not path.exists():
            return
        try:
            with path.open("r", encoding="utf-8") as handle:
                for lineno, line in enumerate(handle, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        # A crash mid-append can leave a torn final line.
                        logger.warning("Skipping unreadable line %d in %s", lineno, path)
                        continue
                    if not isinstance(entry, dict) or "tag" not in entry:
                        logger.warning("Skipping untagged line %d in %s", lineno, path)
                        continue
                    yield entry["tag"], entry.get("payload") or {}
        except OSError as e:
            raise StorageFatalError(f"Failed to read {path}: {e}") from e
