"""Workflow metrics for ReAcTree.

After every run one line per node is appended to a JSONL file:
  {node_id, kind, run_id, duration_seconds, status, retry_count, timestamp}

``status`` is one of success, retried (succeeded after at least one
retry), failed or skipped. ``analyze_metrics`` aggregates the file per
node id so slow and flaky steps stand out across runs.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from reactree.core.models import NodeState
from reactree.tree.nodes import TaskNode, walk

logger = logging.getLogger("reactree.orchestrator.metrics")

TOP_N = 5
RECENT_N = 10


@dataclass
class NodeMetric:
    """One node's execution within one run."""
    node_id: str
    kind: str
    run_id: str
    duration_seconds: float = 0.0
    status: str = "skipped"  # "success", "retried", "failed", "skipped"
    retry_count: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"))

    @property
    def succeeded(self) -> bool:
        return self.status in ("success", "retried")


def _status_for(node: TaskNode, retries: int) -> str:
    if node.state == NodeState.SUCCEEDED:
        return "retried" if retries else "success"
    if node.state == NodeState.FAILED:
        return "failed"
    return "skipped"


class WorkflowMetrics:
    """Appends per-node metrics for finished runs to a JSONL file."""

    def __init__(self, jsonl_path: Path):
        self.jsonl_path = Path(jsonl_path)
        self._lock = threading.Lock()

    def collect(self, run_id: str, root: TaskNode, retry_counts: dict[str, int]) -> list[NodeMetric]:
        return [
            NodeMetric(
                node_id=node.id,
                kind=node.kind,
                run_id=run_id,
                duration_seconds=round(node.duration_seconds, 4),
                status=_status_for(node, retry_counts.get(node.id, 0)),
                retry_count=retry_counts.get(node.id, 0),
            )
            for node in walk(root)
        ]

    def record_run(self, run_id: str, root: TaskNode, retry_counts: dict[str, int]) -> list[NodeMetric]:
        """Append one metric line per node of ``root``.

        Raises:
            OSError: If the metrics file cannot be written.
        """
        metrics = self.collect(run_id, root, retry_counts)
        lines = "".join(json.dumps(asdict(m)) + "\n" for m in metrics)
        with self._lock:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as handle:
                handle.write(lines)
        logger.info("Recorded %d node metric(s) for run %s", len(metrics), run_id)
        return metrics


def load_metrics(jsonl_path: Path) -> list[NodeMetric]:
    path = Path(jsonl_path)
    if not path.exists():
        return []
    metrics: list[NodeMetric] = []
    with path.open("r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                metrics.append(NodeMetric(**json.loads(line)))
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning("Skipping bad metrics line %d in %s: %s", lineno, path, e)
    return metrics


def analyze_metrics(jsonl_path: Path) -> dict[str, Any]:
    """Aggregate the metrics file.

    Returns:
        Dict with ``nodes`` (per node id: runs, avg_duration_seconds,
        success_rate, avg_retries, total_retries), ``slowest`` and
        ``most_retried`` (top five), ``recent`` (last ten lines) and
        ``overall`` totals. Empty file -> ``{"total_executions": 0}``.
    """
    metrics = load_metrics(jsonl_path)
    if not metrics:
        return {"total_executions": 0}

    grouped: dict[str, list[NodeMetric]] = {}
    for metric in metrics:
        grouped.setdefault(metric.node_id, []).append(metric)

    nodes: dict[str, dict[str, Any]] = {}
    for node_id, rows in grouped.items():
        runs = len(rows)
        total_retries = sum(r.retry_count for r in rows)
        nodes[node_id] = {
            "kind": rows[-1].kind,
            "runs": runs,
            "avg_duration_seconds": round(sum(r.duration_seconds for r in rows) / runs, 4),
            "success_rate": round(100.0 * sum(1 for r in rows if r.succeeded) / runs, 1),
            "avg_retries": round(total_retries / runs, 2),
            "total_retries": total_retries,
        }

    slowest = sorted(nodes, key=lambda n: nodes[n]["avg_duration_seconds"], reverse=True)[:TOP_N]
    retried = [n for n in nodes if nodes[n]["total_retries"] > 0]
    most_retried = sorted(retried, key=lambda n: nodes[n]["total_retries"], reverse=True)[:TOP_N]

    successes = sum(1 for m in metrics if m.succeeded)
    failures = sum(1 for m in metrics if m.status == "failed")
    total_duration = sum(m.duration_seconds for m in metrics)

    return {
        "total_executions": len(metrics),
        "nodes": nodes,
        "slowest": [
            {"node_id": n, "avg_duration_seconds": nodes[n]["avg_duration_seconds"]} for n in slowest
        ],
        "most_retried": [
            {
                "node_id": n,
                "total_retries": nodes[n]["total_retries"],
                "avg_retries": nodes[n]["avg_retries"],
            }
            for n in most_retried
        ],
        "recent": [asdict(m) for m in reversed(metrics[-RECENT_N:])],
        "overall": {
            "runs": len({m.run_id for m in metrics}),
            "successes": successes,
            "failures": failures,
            "success_rate": round(100.0 * successes / len(metrics), 1),
            "total_duration_seconds": round(total_duration, 4),
            "avg_duration_seconds": round(total_duration / len(metrics), 4),
        },
    }


def latest_run_metrics(jsonl_path: Path, run_id: Optional[str] = None) -> list[NodeMetric]:
    """Metrics of one run (the most recently recorded one by default)."""
    metrics = load_metrics(jsonl_path)
    if not metrics:
        return []
    target = run_id or metrics[-1].run_id
    return [m for m in metrics if m.run_id == target]
