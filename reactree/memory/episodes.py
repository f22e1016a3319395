"""Episodic learning for ReAcTree.

Past runs are recorded as Episode Records keyed by a normalized request
fingerprint. When a new request arrives, the most relevant prior episode
is turned into ``PlanHints`` the tree builder may use to reorder work.
Hints are a read-only optimization: a missing or malformed episode never
stops a run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from reactree.core.models import EpisodeRecord, NodeKind, NodeState, RunOutcome
from reactree.memory.store import MemoryStore

logger = logging.getLogger("reactree.memory.episodes")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in",
    "into", "is", "it", "its", "of", "on", "or", "please", "that", "the",
    "this", "to", "with",
})


def fingerprint_request(request: str) -> str:
    """Normalize a free-form request into a prefix-searchable fingerprint.

    Lowercases, turns punctuation into spaces, drops stop words and
    collapses whitespace, so "Add the User model!" and "add user model"
    share a fingerprint.
    """
    words = _NON_ALNUM.sub(" ", request.lower()).split()
    return " ".join(w for w in words if w not in STOP_WORDS)


@dataclass
class PlanHints:
    """Shape hints derived from a prior episode."""
    episode_id: Optional[str] = None
    # Fallback id -> id of the child that succeeded last time
    fallback_winners: dict[str, str] = field(default_factory=dict)
    failed_nodes: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.fallback_winners and not self.failed_nodes

    @classmethod
    def from_episode(cls, episode: EpisodeRecord) -> "PlanHints":
        hints = cls(episode_id=episode.episode_id)
        try:
            hints._collect(episode.tree_shape_summary)
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "Ignoring malformed tree summary on episode %s: %s",
                episode.episode_id, e,
            )
            return cls(episode_id=episode.episode_id)
        return hints

    def _collect(self, summary: dict[str, Any]) -> None:
        if not summary:
            return
        node_id = summary["id"]
        children = summary.get("children") or []
        if summary.get("state") == NodeState.FAILED.value:
            self.failed_nodes.append(node_id)
        if summary.get("kind") == NodeKind.FALLBACK.value:
            for child in children:
                if child.get("state") == NodeState.SUCCEEDED.value:
                    self.fallback_winners[node_id] = child["id"]
                    break
        for child in children:
            self._collect(child)


class EpisodicMemory:
    """Plan-time lookup over the episodic namespace of a Memory Store."""

    def __init__(self, store: MemoryStore, lookup_limit: int = 5):
        self.store = store
        self.lookup_limit = lookup_limit

    def lookup(self, fingerprint: str) -> Optional[EpisodeRecord]:
        """Most recent Completed episode for the fingerprint, else the most recent one."""
        if not fingerprint:
            return None
        candidates = list(self.store.find_episodes(fingerprint, limit=self.lookup_limit))
        if not candidates:
            logger.debug("No prior episodes for '%s'", fingerprint[:80])
            return None
        for episode in candidates:
            if episode.outcome == RunOutcome.COMPLETED:
                return episode
        return candidates[0]

    def hints_for(self, fingerprint: str) -> Optional[PlanHints]:
        episode = self.lookup(fingerprint)
        if episode is None:
            return None
        hints = PlanHints.from_episode(episode)
        logger.info(
            "Seeding plan from episode %s (outcome=%s, %d fallback hint(s))",
            episode.episode_id, episode.outcome.value, len(hints.fallback_winners),
        )
        return hints
