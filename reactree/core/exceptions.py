"""Custom exception hierarchy for ReAcTree.

All exceptions inherit from ReactreeError so callers can catch broadly
or narrowly as needed.
"""

from typing import Optional


class ReactreeError(Exception):
    """Base exception for all ReAcTree errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(ReactreeError):
    """Invalid or missing configuration."""


class TreeDefinitionError(ConfigError):
    """A plan could not be turned into a valid task tree."""


class PolicyError(ConfigError):
    """Unknown or malformed quality gate policy."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(ReactreeError):
    """Memory Store operation failed."""


class StorageFatalError(StorageError):
    """Memory Store I/O failure. Aborts the whole run."""


class DatabaseError(StorageFatalError):
    """Failed database operation."""


class SchemaInitError(DatabaseError):
    """Failed to initialize database schema."""


class ConnectionError(DatabaseError):
    """Failed to connect to database."""


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class OrchestrationError(ReactreeError):
    """Structural failure while walking a task tree."""


class MemoryConflictError(OrchestrationError):
    """Two Parallel siblings wrote the same fact_type."""

    def __init__(self, fact_type: str, node_id: str, owner_node_id: str):
        self.fact_type = fact_type
        self.node_id = node_id
        self.owner_node_id = owner_node_id
        super().__init__(
            f"Node '{node_id}' wrote fact_type '{fact_type}' already owned by "
            f"parallel sibling branch of '{owner_node_id}'"
        )


class RunAbortedError(OrchestrationError):
    """The run must stop immediately.

    ``node_id`` names the node whose failure triggered the abort, if any.
    """

    def __init__(self, message: str = "run aborted", node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class RetryCeilingExceededError(RunAbortedError):
    """Run-wide retry ceiling exceeded; the feedback loop stops."""

    def __init__(self, total_retries: int, ceiling: int, node_id: Optional[str] = None):
        self.total_retries = total_retries
        self.ceiling = ceiling
        super().__init__(
            f"Run-wide retry ceiling exceeded ({total_retries} retries, ceiling {ceiling})",
            node_id=node_id,
        )


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------

class WorkerError(ReactreeError):
    """External worker invocation failure."""


class WorkerNotFoundError(WorkerError):
    """No worker registered under the requested name."""


class WorkerTimeoutError(WorkerError):
    """Worker exceeded its deadline."""


class WorkerCancelledError(WorkerError):
    """Worker abandoned its work after a cancellation signal."""
