import datetime

import pytest

from chronicles.database.models import Character, CharacterProgress
from chronicles.services.progress_tracker import (
    CharacterProgressTracker,
    apply_deltas,
    clamp_stat,
    normalize_stats,
)
from chronicles.utils.time_utils import utcnow


def _tracker(**stats):
    return CharacterProgressTracker(stats=stats)


# ── Stats ────────────────────────────────────────────────────


def test_clamp_stat_bounds():
    assert clamp_stat(0) == 1
    assert clamp_stat(11) == 10
    assert clamp_stat(6) == 6


def test_normalize_fills_defaults_and_drops_unknown():
    stats = normalize_stats({"strength": 7, "luck": 9})
    assert stats == {"strength": 7, "magic": 3, "charisma": 3, "wisdom": 3, "agility": 3}


def test_apply_deltas_clamps_each_stat():
    tracker = _tracker(strength=9, agility=2)
    tracker.apply_stat_deltas({"strength": 5, "agility": -4})
    assert tracker.stats["strength"] == 10
    assert tracker.stats["agility"] == 1


def test_apply_deltas_are_independent_within_one_call():
    before = {"strength": 4, "magic": 4, "charisma": 4, "wisdom": 4, "agility": 4}
    after = apply_deltas(before, {"strength": 3, "magic": -2})
    assert after["strength"] == 7
    assert after["magic"] == 2
    assert before["strength"] == 4


def test_apply_deltas_ignores_unknown_and_non_numeric():
    tracker = _tracker(strength=5)
    tracker.apply_stat_deltas({"luck": 3, "strength": "a lot", "magic": True})
    assert "luck" not in tracker.stats
    assert tracker.stats["strength"] == 5
    assert tracker.stats["magic"] == 3


# ── Requirements ─────────────────────────────────────────────


def test_check_requirement_is_inclusive():
    tracker = _tracker(strength=7)
    assert tracker.check_requirement("strength", 7)
    assert not tracker.check_requirement("strength", 8)


def test_requirement_deficit():
    tracker = _tracker(strength=5)
    assert tracker.requirement_deficit("strength", 7) == 2
    assert tracker.requirement_deficit("strength", 3) == 0


# ── History, items, flags, xp ────────────────────────────────


def test_record_choice_appends_history():
    tracker = _tracker()
    tracker.record_choice(4, "Open the door")
    tracker.record_choice(5, "Run")
    history = tracker.choices_made
    assert [h["choice_text"] for h in history] == ["Open the door", "Run"]
    assert history[0]["node_id"] == 4
    assert "timestamp" in history[0]

    stamp = datetime.datetime.fromisoformat(history[0]["timestamp"])
    assert stamp.tzinfo is None
    assert abs(utcnow() - stamp) < datetime.timedelta(minutes=1)


def test_add_items_and_merge_flags():
    tracker = _tracker()
    tracker.add_items(["Rope"])
    tracker.add_items(["Lantern"])
    tracker.merge_flags({"met_osk": True})
    assert tracker.items == ["Rope", "Lantern"]
    assert tracker.flags["met_osk"] is True


def test_award_xp_rejects_negative():
    tracker = _tracker()
    tracker.award_xp(15)
    with pytest.raises(ValueError):
        tracker.award_xp(-1)
    assert tracker.xp == 15


def test_visits():
    tracker = CharacterProgressTracker(visited_nodes=[1])
    tracker.record_visit(2)
    assert tracker.has_visited(2)
    assert not tracker.has_visited(3)


def test_snapshot_is_a_deep_copy():
    tracker = _tracker()
    tracker.add_items(["Rope"])
    snap = tracker.snapshot()
    snap["flags"]["items"].append("Stolen")
    snap["stats"]["strength"] = 10
    assert tracker.items == ["Rope"]
    assert tracker.stats["strength"] == 3


# ── ORM rows ─────────────────────────────────────────────────


def test_from_character_starts_at_start_node():
    character = Character(user_id=1, name="Ava", stats={"magic": 6}, xp=40)
    tracker = CharacterProgressTracker.from_character(character, start_node_id=12)
    assert tracker.visited_nodes == [12]
    assert tracker.stats["magic"] == 6
    assert tracker.xp == 0


def test_write_to_and_from_progress():
    tracker = _tracker(wisdom=8)
    tracker.award_xp(30)
    tracker.record_visit(3)
    tracker.merge_flags({"door_open": True})

    progress = CharacterProgress(session_id=1, character_id=1)
    tracker.write_to(progress)
    restored = CharacterProgressTracker.from_progress(progress)

    assert restored.stats == tracker.stats
    assert restored.xp == 30
    assert restored.visited_nodes == [3]
    assert restored.flags == {"door_open": True}
