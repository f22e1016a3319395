"""Component factory for ReAcTree.

Creates and wires every component (config, memory store, quality gates,
workers, episodic memory, metrics, orchestrator) so callers receive a
ready-to-run Orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from reactree.core.config import AppConfig, load_config
from reactree.core.exceptions import ConfigError
from reactree.gates.evaluator import QualityGateEvaluator
from reactree.memory.backends import InMemoryLogBackend, JsonlLogBackend, LogBackend
from reactree.memory.episodes import EpisodicMemory
from reactree.memory.store import MemoryStore
from reactree.orchestrator.metrics import WorkflowMetrics
from reactree.orchestrator.run import Orchestrator
from reactree.tree.builder import PlanTreeBuilder
from reactree.workers.base import BaseWorker, WorkerRegistry
from reactree.workers.http import HttpWorker, build_http_workers

logger = logging.getLogger("reactree.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; ``orchestrator`` already holds
    references to everything else.
    """

    config: AppConfig
    store: MemoryStore
    evaluator: QualityGateEvaluator
    workers: WorkerRegistry
    orchestrator: Orchestrator
    episodic: Optional[EpisodicMemory] = None
    metrics: Optional[WorkflowMetrics] = None
    http_workers: list[HttpWorker] = field(default_factory=list)


def create_backend(config: AppConfig, initialize_schema: bool = True) -> LogBackend:
    """Select the memory log backend named by ``memory.backend``."""
    backend = config.memory.backend.lower()
    if backend == "jsonl":
        return JsonlLogBackend(
            Path(config.memory.root_dir),
            working_log=config.memory.working_log,
            episodic_log=config.memory.episodic_log,
        )
    if backend == "memory":
        return InMemoryLogBackend()
    if backend in ("postgresql", "postgres"):
        from reactree.db.engine import DatabaseEngine
        from reactree.db.repository import PostgresLogBackend

        engine = DatabaseEngine(config.database)
        if initialize_schema:
            engine.initialize_schema()
        return PostgresLogBackend(engine)
    raise ConfigError(f"Unknown memory backend '{config.memory.backend}'")


class ComponentFactory:
    """Factory for creating and wiring all ReAcTree components.

    Usage:
        bundle = ComponentFactory.create(
            config_dir=Path("config"),
            workers=[MyWorker("planner")],
        )
        summary = bundle.orchestrator.run("add a user model", plan=plan)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        workers: Optional[list[BaseWorker]] = None,
        config: Optional[AppConfig] = None,
        initialize_schema: bool = True,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            workers: In-process workers to register next to the configured
                HTTP workers. A name given here wins over an HTTP worker.
            config: Pre-built config; skips loading from disk.
            initialize_schema: Whether to run schema.sql for the postgresql
                backend. Default True.
        """
        logger.info("Initializing components...")

        if config is None:
            config = load_config(config_dir=config_dir, env=env)

        store = MemoryStore(create_backend(config, initialize_schema=initialize_schema))
        logger.info("Memory store ready (backend=%s)", config.memory.backend)

        evaluator = QualityGateEvaluator.from_config(config.quality_gates)
        if evaluator.names:
            logger.info("Loaded %d quality gate(s): %s", len(evaluator.names), ", ".join(evaluator.names))

        http_workers = build_http_workers(config.workers.http)
        registry = WorkerRegistry(http_workers)
        for worker in workers or []:
            registry.register(worker)

        episodic = None
        if config.episodic.enabled:
            episodic = EpisodicMemory(store, lookup_limit=config.episodic.lookup_limit)

        metrics = WorkflowMetrics(Path(config.metrics.jsonl_path)) if config.metrics.enabled else None

        orchestrator = Orchestrator(
            store=store,
            workers=registry,
            evaluator=evaluator,
            config=config.orchestrator,
            tree_builder=PlanTreeBuilder(use_hints=config.episodic.apply_hints),
            episodic=episodic,
            metrics=metrics,
        )
        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            store=store,
            evaluator=evaluator,
            workers=registry,
            orchestrator=orchestrator,
            episodic=episodic,
            metrics=metrics,
            http_workers=http_workers,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        for worker in bundle.http_workers:
            worker.close()
        bundle.store.close()
        logger.info("All components shut down")
