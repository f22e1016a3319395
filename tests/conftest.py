"""Shared fixtures for ReAcTree tests.

Workers are real BaseWorker subclasses with scripted behavior; no mocking
library is used. Tests requiring PostgreSQL use a skip marker when it is
unavailable.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so DATABASE_URL is available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from reactree.core.config import AppConfig, DatabaseConfig, OrchestratorConfig, load_config
from reactree.core.models import WorkerResult
from reactree.gates.evaluator import QualityGateEvaluator
from reactree.memory.backends import InMemoryLogBackend, JsonlLogBackend
from reactree.memory.store import MemoryStore
from reactree.orchestrator.executor import ControlFlowExecutor
from reactree.orchestrator.feedback import FeedbackCoordinator
from reactree.tree.builder import build_tree
from reactree.workers.base import BaseWorker, WorkerInvocation, WorkerRegistry


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "reactree"),
            user=parsed.username or "reactree",
            password=parsed.password or "reactree",
        )
    return DatabaseConfig()


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    try:
        import psycopg
        config = _get_db_config()
        conn = psycopg.connect(config.connection_string, connect_timeout=5)
        conn.close()
        return True
    except Exception:
        return False


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)


# ---------------------------------------------------------------------------
# Scripted workers
# ---------------------------------------------------------------------------

class ScriptedWorker(BaseWorker):
    """Plays back a script of outcomes, one per call; the last one repeats.

    An outcome is a WorkerResult, an exception instance (raised), or any
    other value (returned as the successful output).
    """

    def __init__(self, name: str, *script: Any):
        super().__init__(name=name)
        self.script = list(script) or [{"ok": True}]
        self.invocations: list[WorkerInvocation] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.invocations)

    def process(self, invocation: WorkerInvocation) -> Any:
        with self._lock:
            index = min(len(self.invocations), len(self.script) - 1)
            self.invocations.append(invocation)
        outcome = self.script[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def failure(error: str = "boom", **kwargs: Any) -> WorkerResult:
    return WorkerResult(worker="scripted", status="failure", error=error, **kwargs)


class BlockingWorker(BaseWorker):
    """Waits on its cancellation token; records whether it was cancelled."""

    def __init__(self, name: str, seconds: float = 5.0, output: Any = None):
        super().__init__(name=name)
        self.seconds = seconds
        self.output = output if output is not None else {"finished": True}
        self.started = threading.Event()
        self.cancelled = threading.Event()

    def process(self, invocation: WorkerInvocation) -> Any:
        self.started.set()
        if invocation.token.wait(self.seconds):
            self.cancelled.set()
            invocation.check_cancelled()
        return self.output


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


def fast_config(**overrides: Any) -> OrchestratorConfig:
    """Orchestrator config with short polls and deadlines for tests."""
    values: dict[str, Any] = {
        "cancellation_poll_seconds": 0.01,
        "leaf_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return OrchestratorConfig(**values)


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return fast_config()


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore(InMemoryLogBackend())


@pytest.fixture
def jsonl_store(tmp_path: Path) -> MemoryStore:
    store = MemoryStore(JsonlLogBackend(tmp_path / "memory"))
    yield store
    store.close()


@pytest.fixture
def db_config() -> DatabaseConfig:
    return _get_db_config()


@pytest.fixture
def db_engine(db_config):
    """Real PostgreSQL engine: creates schema, yields, cleans up."""
    from reactree.db.engine import DatabaseEngine
    engine = DatabaseEngine(db_config)
    engine.initialize_schema()
    yield engine
    engine.close()


# ---------------------------------------------------------------------------
# Execution helpers
# ---------------------------------------------------------------------------

def execute_plan(
    plan: dict[str, Any],
    workers: list[BaseWorker],
    store: Optional[MemoryStore] = None,
    config: Optional[OrchestratorConfig] = None,
    evaluator: Optional[QualityGateEvaluator] = None,
    run_id: str = "run-1",
):
    """Build ``plan`` and execute it. Returns (root, executor)."""
    root = build_tree(plan)
    config = config or fast_config()
    executor = ControlFlowExecutor(
        run_id=run_id,
        store=store or MemoryStore(InMemoryLogBackend()),
        workers=WorkerRegistry(workers),
        coordinator=FeedbackCoordinator.for_run(root, config),
        evaluator=evaluator,
        config=config,
    )
    executor.execute(root)
    return root, executor


def leaf(node_id: str, worker: Optional[str] = None, **extra: Any) -> dict[str, Any]:
    """Plan shorthand for a Leaf."""
    return {"id": node_id, "kind": "Leaf", "worker": worker or node_id, **extra}
