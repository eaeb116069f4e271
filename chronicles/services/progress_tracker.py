from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, Mapping

from chronicles.database.models import Character, CharacterProgress
from chronicles.utils.config import Config, DEFAULT_STATS
from chronicles.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

CHOICES_MADE_FLAG = "choices_made"
ITEMS_FLAG = "items"


def clamp_stat(value: int) -> int:
    return max(Config.STAT_MIN, min(Config.STAT_MAX, value))


def normalize_stats(raw: Mapping[str, Any] | None) -> dict[str, int]:
    """Fill missing attributes with defaults and drop unknown ones."""
    stats = dict(DEFAULT_STATS)
    for name, value in (raw or {}).items():
        if name in stats and _is_number(value):
            stats[name] = int(value)
    return stats


def apply_deltas(stats: Mapping[str, int], deltas: Mapping[str, Any] | None) -> dict[str, int]:
    """Return a new stat map with every delta applied against ``stats``.

    Each delta is computed from the value in ``stats``, never from another
    delta of the same call. Unknown attributes and non-numeric deltas are
    ignored.
    """
    result = dict(stats)
    for name, delta in (deltas or {}).items():
        if name not in result or not _is_number(delta):
            continue
        result[name] = clamp_stat(stats[name] + int(delta))
    return result


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class CharacterProgressTracker:
    """Mutable per-session state of one participant."""

    def __init__(
        self,
        stats: Mapping[str, int] | None = None,
        xp: int = 0,
        visited_nodes: Iterable[int] | None = None,
        flags: Mapping[str, Any] | None = None,
    ):
        self.stats = normalize_stats(stats)
        self.xp = int(xp or 0)
        self.visited_nodes = list(visited_nodes or [])
        self.flags = copy.deepcopy(dict(flags or {}))

    @classmethod
    def from_character(cls, character: Character, start_node_id: int | None = None):
        visited = [start_node_id] if start_node_id is not None else []
        return cls(stats=character.stats, visited_nodes=visited)

    @classmethod
    def from_progress(cls, progress: CharacterProgress):
        return cls(
            stats=progress.stats_snapshot,
            xp=progress.xp_earned,
            visited_nodes=progress.nodes_visited,
            flags=progress.story_flags,
        )

    @property
    def items(self) -> list[str]:
        return list(self.flags.get(ITEMS_FLAG) or [])

    @property
    def choices_made(self) -> list[dict]:
        return list(self.flags.get(CHOICES_MADE_FLAG) or [])

    def apply_stat_deltas(self, deltas: Mapping[str, Any] | None) -> dict[str, int]:
        self.stats = apply_deltas(self.stats, deltas)
        return dict(self.stats)

    def check_requirement(self, stat: str, min_value: int) -> bool:
        return self.stats.get(stat, 0) >= min_value

    def requirement_deficit(self, stat: str, min_value: int) -> int:
        return max(min_value - self.stats.get(stat, 0), 0)

    def record_visit(self, node_id: int):
        self.visited_nodes.append(node_id)

    def has_visited(self, node_id: int) -> bool:
        return node_id in self.visited_nodes

    def record_choice(self, node_id: int, choice_text: str):
        history = self.choices_made
        history.append({
            "node_id": node_id,
            "choice_text": choice_text,
            "timestamp": utcnow().isoformat(),
        })
        self.flags[CHOICES_MADE_FLAG] = history

    def add_items(self, items: Iterable[str]):
        current = self.items
        current.extend(items)
        self.flags[ITEMS_FLAG] = current

    def merge_flags(self, patch: Mapping[str, Any] | None):
        for key, value in (patch or {}).items():
            self.flags[key] = copy.deepcopy(value)

    def award_xp(self, amount: int):
        if amount < 0:
            raise ValueError(f"XP awards must be non-negative, got {amount}")
        self.xp += int(amount)

    def snapshot(self) -> dict[str, Any]:
        return {
            "stats": dict(self.stats),
            "xp": self.xp,
            "visited_nodes": list(self.visited_nodes),
            "flags": copy.deepcopy(self.flags),
        }

    def write_to(self, progress: CharacterProgress):
        """Copy the tracked state onto a persisted progress row."""
        progress.stats_snapshot = dict(self.stats)
        progress.xp_earned = self.xp
        progress.nodes_visited = list(self.visited_nodes)
        progress.story_flags = copy.deepcopy(self.flags)
