"""Memory Store for ReAcTree.

Durable append-only storage with two logically separate namespaces:

- working memory: verified facts produced during a run, keyed by
  ``(run_id, fact_type)``; readers always see the most recent record
- episodic memory: one summary per finished run, looked up by request
  fingerprint prefix when planning a new run

Records are never mutated or deleted. A later record with the same
``fact_type`` supersedes the earlier one for readers, but both stay in the
log. Reads are served from an in-process index and never take a lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterator, Optional

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from reactree.core.exceptions import StorageFatalError
from reactree.core.models import EpisodeRecord, MemoryRecord
from reactree.memory.backends import EPISODIC, WORKING, LogBackend

logger = logging.getLogger("reactree.memory.store")

MEMORY_RECORD_TAG = "memory_record"
EPISODE_TAG = "episode"


class EpisodeQuery:
    """Lazy, finite, restartable view over matching episodes.

    Nothing is read until iteration starts, and every new iteration re-reads
    the log, so episodes written in between are visible. Ordered newest
    first.
    """

    def __init__(self, store: "MemoryStore", prefix: str, limit: Optional[int] = None):
        self._store = store
        self.prefix = prefix
        self.limit = limit

    def __iter__(self) -> Iterator[EpisodeRecord]:
        matches = [
            ep for ep in self._store._iter_episodes()
            if ep.request_fingerprint.startswith(self.prefix)
        ]
        # Stable sort keeps later appends ahead on timestamp ties.
        matches.reverse()
        matches.sort(key=lambda ep: ep.timestamp, reverse=True)
        for count, episode in enumerate(matches):
            if self.limit is not None and count >= self.limit:
                return
            yield episode

    def first(self) -> Optional[EpisodeRecord]:
        return next(iter(self), None)


class MemoryStore:
    """Working and episodic memory over a single LogBackend."""

    def __init__(self, backend: LogBackend):
        self.backend = backend
        self._write_lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._loaded = False
        self._history: dict[tuple[str, str], list[MemoryRecord]] = {}
        self._by_run: dict[str, dict[str, MemoryRecord]] = {}

    # -------------------------------------------------------------------
    # Working memory
    # -------------------------------------------------------------------

    def write(self, record: MemoryRecord) -> MemoryRecord:
        """Append a Memory Record.

        Raises:
            StorageFatalError: On any storage I/O failure. Fatal for the run.
        """
        self._ensure_loaded()
        try:
            data = record.model_dump(mode="json")
        except PydanticSerializationError as e:
            raise StorageFatalError(f"Fact '{record.fact_type}' is not serializable: {e}") from e
        with self._write_lock:
            self.backend.append(WORKING, MEMORY_RECORD_TAG, data)
            self._index(record)
        logger.debug(
            "Wrote fact '%s' for run %s (producer=%s)",
            record.fact_type, record.run_id, record.producer_node_id,
        )
        return record

    def read_latest(self, run_id: str, fact_type: str) -> Optional[MemoryRecord]:
        """Most recent record for ``fact_type`` in ``run_id``, or None."""
        self._ensure_loaded()
        return self._by_run.get(run_id, {}).get(fact_type)

    def snapshot(self, run_id: str) -> dict[str, Any]:
        """Latest payload per fact_type: what a Leaf sees of Working Memory."""
        self._ensure_loaded()
        latest = dict(self._by_run.get(run_id, {}))
        return {fact_type: rec.payload for fact_type, rec in latest.items()}

    def history(self, run_id: str, fact_type: str) -> list[MemoryRecord]:
        """Every record for ``fact_type`` in ``run_id``, newest first."""
        self._ensure_loaded()
        return list(reversed(self._history.get((run_id, fact_type), [])))

    def run_ids(self) -> list[str]:
        self._ensure_loaded()
        return list(self._by_run)

    # -------------------------------------------------------------------
    # Episodic memory
    # -------------------------------------------------------------------

    def write_episode(self, record: EpisodeRecord) -> bool:
        """Append an Episode Record.

        Idempotent per ``episode_id``: a retried write of an episode that is
        already in the log is a no-op.

        Returns:
            True if the record was appended, False if it was already present.
        """
        with self._write_lock:
            if self.get_episode(record.episode_id) is not None:
                logger.info("Episode %s already recorded, skipping", record.episode_id)
                return False
            self.backend.append(EPISODIC, EPISODE_TAG, record.model_dump(mode="json"))
        logger.info(
            "Recorded episode %s (outcome=%s, fingerprint='%s')",
            record.episode_id, record.outcome.value, record.request_fingerprint[:80],
        )
        return True

    def find_episodes(self, request_fingerprint_prefix: str, limit: Optional[int] = None) -> EpisodeQuery:
        """Episodes whose fingerprint starts with the prefix, newest first."""
        return EpisodeQuery(self, request_fingerprint_prefix, limit=limit)

    def get_episode(self, episode_id: str) -> Optional[EpisodeRecord]:
        for episode in self._iter_episodes():
            if episode.episode_id == episode_id:
                return episode
        return None

    def close(self) -> None:
        self.backend.close()

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _iter_episodes(self) -> Iterator[EpisodeRecord]:
        seen: set[str] = set()
        for tag, payload in self.backend.entries(EPISODIC):
            if tag != EPISODE_TAG:
                continue
            try:
                episode = EpisodeRecord.model_validate(payload)
            except ValidationError as e:
                logger.warning("Skipping malformed episode entry: %s", e)
                continue
            if episode.episode_id in seen:
                continue
            seen.add(episode.episode_id)
            yield episode

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._load_lock:
            if self._loaded:
                return
            count = 0
            for tag, payload in self.backend.entries(WORKING):
                if tag != MEMORY_RECORD_TAG:
                    continue
                try:
                    record = MemoryRecord.model_validate(payload)
                except ValidationError as e:
                    logger.warning("Skipping malformed memory record: %s", e)
                    continue
                self._index(record)
                count += 1
            self._loaded = True
            if count:
                logger.info("Loaded %d working-memory record(s)", count)

    def _index(self, record: MemoryRecord) -> None:
        key = (record.run_id, record.fact_type)
        self._history.setdefault(key, []).append(record)
        self._by_run.setdefault(record.run_id, {})[record.fact_type] = record
