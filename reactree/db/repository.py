"""PostgreSQL memory-log backend for ReAcTree.

All SQL for the memory logs lives here. Each namespace is one append-only
table; ``key`` carries the fact_type (working) or the request fingerprint
(episodic) so both can be filtered in SQL when inspecting a database by
hand.
"""

from __future__ import annotations

import json
from typing import Any, Iterator

from reactree.db.engine import DatabaseEngine
from reactree.memory.backends import EPISODIC, WORKING, LogBackend, LogEntry

_TABLES = {
    WORKING: "working_memory_log",
    EPISODIC: "episodic_memory_log",
}


class PostgresLogBackend(LogBackend):
    """LogBackend over the working_memory_log / episodic_memory_log tables.

    psycopg failures surface as DatabaseError, which is a StorageFatalError.
    """

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    def append(self, namespace: str, tag: str, payload: dict[str, Any]) -> None:
        encoded = json.dumps(payload, default=str)
        if namespace == WORKING:
            self.engine.execute(
                """INSERT INTO working_memory_log (tag, run_id, key, payload)
                   VALUES (%s, %s, %s, %s)""",
                [tag, payload.get("run_id"), payload.get("fact_type"), encoded],
            )
        elif namespace == EPISODIC:
            self.engine.execute(
                """INSERT INTO episodic_memory_log (tag, episode_id, key, payload)
                   VALUES (%s, %s, %s, %s)
                   ON CONFLICT DO NOTHING""",
                [tag, payload.get("episode_id"), payload.get("request_fingerprint"), encoded],
            )
        else:
            raise ValueError(f"Unknown memory namespace '{namespace}'")

    def entries(self, namespace: str) -> Iterator[LogEntry]:
        table = _TABLES.get(namespace)
        if table is None:
            raise ValueError(f"Unknown memory namespace '{namespace}'")
        rows = self.engine.fetch_all(f"SELECT tag, payload FROM {table} ORDER BY seq")
        for row in rows:
            payload = row["payload"]
            if isinstance(payload, str):
                payload = json.loads(payload)
            yield row["tag"], payload or {}

    def close(self) -> None:
        self.engine.close()
