import logging

from chronicles.services.effects import SessionSnapshot
from chronicles.services.trigger_engine import (
    TriggerEngine,
    TriggerEvent,
    TriggerRule,
    condition_met,
)

BASE_STATS = {"strength": 3, "magic": 3, "charisma": 3, "wisdom": 3, "agility": 3}


def _state(**kwargs):
    stats = dict(BASE_STATS)
    stats.update(kwargs.pop("stats", {}))
    return SessionSnapshot(stats=stats, **kwargs)


def _rule(rule_id, trigger_type, conditions, *events, name=None):
    return TriggerRule(
        id=rule_id,
        name=name or f"rule-{rule_id}",
        trigger_type=trigger_type,
        conditions=conditions,
        events=tuple(TriggerEvent(f"event-{i}", event_type, payload) for i, (event_type, payload) in enumerate(events)),
    )


CHARISMA_BONUS = _rule(
    1, "stat_threshold", {"stat": "charisma", "min_value": 8},
    ("award_xp", {"amount": 50}),
    ("show_message", {"message": "Silver tongue!"}),
)


# ── Firing ───────────────────────────────────────────────────


def test_trigger_fires_when_condition_holds():
    result = TriggerEngine([CHARISMA_BONUS], session_id=1).evaluate(_state(stats={"charisma": 8}))
    assert result.newly_fired_ids == [1]
    assert result.xp_bonus == 50
    assert result.messages == ["Silver tongue!"]
    assert result.fired_ids == frozenset({1})


def test_trigger_does_not_fire_below_threshold():
    result = TriggerEngine([CHARISMA_BONUS], session_id=1).evaluate(_state(stats={"charisma": 7}))
    assert result.fired == []
    assert result.xp_bonus == 0


def test_already_fired_trigger_is_skipped():
    result = TriggerEngine([CHARISMA_BONUS], session_id=1).evaluate(
        _state(stats={"charisma": 9}), fired_ids={1}
    )
    assert result.fired == []
    assert result.fired_ids == frozenset({1})


def test_effects_unlock_later_triggers_in_same_pass():
    grant = _rule(1, "node_reached", {"node_id": 5}, ("grant_item", {"item_name": "Old Key"}))
    use = _rule(2, "item_possessed", {"item_name": "old key"}, ("set_flag", {"flag_name": "vault_open", "flag_value": "true"}))

    result = TriggerEngine([grant, use], session_id=1).evaluate(_state(node_id=5))
    assert result.newly_fired_ids == [1, 2]
    assert result.items_granted == ["Old Key"]
    assert result.flag_updates == {"vault_open": True}


def test_declaration_order_matters():
    grant = _rule(1, "node_reached", {"node_id": 5}, ("grant_item", {"item_name": "Old Key"}))
    use = _rule(2, "item_possessed", {"item_name": "old key"}, ("set_flag", {"flag_name": "vault_open", "flag_value": "true"}))

    result = TriggerEngine([use, grant], session_id=1).evaluate(_state(node_id=5))
    assert result.newly_fired_ids == [1]


def test_stat_deltas_are_net_after_clamping():
    boost = _rule(1, "player_count", {"min_players": 1}, ("modify_stat", {"stat": "strength", "change": 5}))
    result = TriggerEngine([boost], session_id=1).evaluate(_state(stats={"strength": 9}))
    assert result.stat_deltas == {"strength": 1}
    assert result.state.stats["strength"] == 10


def test_presentation_events_still_fire_trigger():
    rule = _rule(1, "node_reached", {"node_id": 2}, ("unlock_path", {"node_id": 9}))
    result = TriggerEngine([rule], session_id=1).evaluate(_state(node_id=2))
    assert result.newly_fired_ids == [1]
    assert result.state == result.initial


# ── Faults ───────────────────────────────────────────────────


def test_malformed_trigger_is_skipped_and_logged(caplog):
    broken = _rule(1, "stat_threshold", {"min_value": 5}, ("award_xp", {"amount": 10}))
    unknown_event = _rule(2, "player_count", {"min_players": 1}, ("summon_dragon", {}))
    good = _rule(3, "player_count", {"min_players": 1}, ("award_xp", {"amount": 10}))

    with caplog.at_level(logging.WARNING, logger="chronicles.services.trigger_engine"):
        result = TriggerEngine([broken, unknown_event, good], session_id=1).evaluate(_state())

    assert result.newly_fired_ids == [3]
    assert result.xp_bonus == 10
    assert "Skipping malformed trigger 1" in caplog.text
    assert "Skipping malformed trigger 2" in caplog.text


def test_unknown_trigger_type_is_skipped():
    rule = _rule(1, "moon_phase", {}, ("award_xp", {"amount": 10}))
    result = TriggerEngine([rule], session_id=1).evaluate(_state())
    assert result.fired == []


# ── Conditions ───────────────────────────────────────────────


def test_random_chance_is_reproducible():
    rules = [_rule(i, "random_chance", {"probability": 50}, ("award_xp", {"amount": 1})) for i in range(1, 21)]
    state = _state(flags={"choices_made": [{"node_id": 1, "choice_text": "Go"}]})

    first = TriggerEngine(rules, session_id=7).evaluate(state)
    second = TriggerEngine(rules, session_id=7).evaluate(state)
    assert first.newly_fired_ids == second.newly_fired_ids


def test_random_chance_extremes():
    state = _state()
    assert condition_met("random_chance", {"probability": 100}, state, session_id=1, trigger_id=1)
    assert not condition_met("random_chance", {"probability": 0}, state, session_id=1, trigger_id=1)


def test_flag_conditions():
    state = _state(flags={"door_open": True, "mood": "grim"})
    assert condition_met("flag_set", {"flag_name": "door_open", "flag_value": "true"}, state)
    assert not condition_met("flag_set", {"flag_name": "door_open", "flag_value": "false"}, state)
    assert condition_met("flag_set", {"flag_name": "mood", "flag_value": "grim"}, state)
    assert condition_met("flag_not_set", {"flag_name": "lights_on"}, state)
    assert not condition_met("flag_not_set", {"flag_name": "door_open"}, state)


def test_relationship_and_faction_scores():
    state = _state(flags={"relationship_Osk": 5, "faction_Tidewardens": 2})
    assert condition_met("relationship_score", {"npc_name": "Osk", "min_score": 5}, state)
    assert not condition_met("faction_reputation", {"faction_name": "Tidewardens", "min_reputation": 3}, state)


def test_choice_made_matches_substring_case_insensitive():
    state = _state(flags={"choices_made": [{"node_id": 4, "choice_text": "Talk to the ferryman"}]})
    assert condition_met("choice_made", {"choice_text": "FERRYMAN"}, state)
    assert condition_met("choice_made", {"node_id": 4, "choice_text": "talk"}, state)
    assert not condition_met("choice_made", {"node_id": 5, "choice_text": "talk"}, state)


def test_player_count():
    assert condition_met("player_count", {"min_players": 3}, _state(player_count=3))
    assert not condition_met("player_count", {"min_players": 3}, _state(player_count=2))


def test_all_of_requires_every_part():
    conditions = {"conditions": [
        {"trigger_type": "stat_threshold", "conditions": {"stat": "magic", "min_value": 5}},
        {"trigger_type": "node_reached", "conditions": {"node_id": 3}},
    ]}
    assert condition_met("all_of", conditions, _state(stats={"magic": 5}, node_id=3))
    assert not condition_met("all_of", conditions, _state(stats={"magic": 5}, node_id=4))
