import pytest

from chronicles.services.effects import (
    FlagMerge,
    ItemGrant,
    Message,
    SessionSnapshot,
    StatDelta,
    XpBonus,
    apply_effect,
    effects_from_stat_map,
    parse_effect,
)

BASE_STATS = {"strength": 3, "magic": 3, "charisma": 3, "wisdom": 3, "agility": 3}


# ── Parsing ──────────────────────────────────────────────────


def test_parse_each_event_type():
    assert parse_effect("modify_stat", {"stat": "magic", "change": "2"}) == StatDelta("magic", 2)
    assert parse_effect("set_flag", {"flag_name": "door", "flag_value": "true"}) == FlagMerge({"door": True})
    assert parse_effect("set_flag", {"flag_name": "door", "flag_value": "false"}) == FlagMerge({"door": False})
    assert parse_effect("grant_item", {"item_name": "Rope"}) == ItemGrant("Rope")
    assert parse_effect("award_xp", {"amount": 50}) == XpBonus(50)
    assert parse_effect("show_message", {"message": "Hi"}) == Message("Hi")


def test_presentation_events_have_no_effect():
    assert parse_effect("unlock_path", {"node_id": 3}) is None
    assert parse_effect("spawn_node", {}) is None


@pytest.mark.parametrize("event_type, payload", [
    ("modify_stat", {"stat": "magic"}),
    ("grant_item", {}),
    ("award_xp", {"amount": -5}),
    ("award_xp", {"amount": "lots"}),
    ("teleport", {}),
    ("show_message", "not an object"),
])
def test_malformed_payloads_raise(event_type, payload):
    with pytest.raises(ValueError):
        parse_effect(event_type, payload)


def test_effects_from_stat_map_skips_non_numbers():
    effects = effects_from_stat_map({"strength": 1, "magic": "x", "agility": False})
    assert effects == [StatDelta("strength", 1)]


# ── Folding ──────────────────────────────────────────────────


def test_apply_effect_returns_new_state():
    state = SessionSnapshot(stats=BASE_STATS)
    state2 = apply_effect(state, StatDelta("strength", 20))
    assert state2.stats["strength"] == 10
    assert state.stats["strength"] == 3


def test_apply_flag_item_xp_and_message():
    state = SessionSnapshot(stats=BASE_STATS, flags={"a": 1})
    for effect in (FlagMerge({"b": 2}), ItemGrant("Rope"), XpBonus(25), XpBonus(5), Message("Boom")):
        state = apply_effect(state, effect)

    assert state.flags == {"a": 1, "b": 2}
    assert state.items == ("Rope",)
    assert state.xp_bonus == 30
    assert state.messages == ("Boom",)


def test_apply_unknown_effect_raises():
    with pytest.raises(TypeError):
        apply_effect(SessionSnapshot(stats=BASE_STATS), object())


def test_choices_made_reads_history_flag():
    state = SessionSnapshot(stats=BASE_STATS, flags={"choices_made": [{"node_id": 1, "choice_text": "Go"}]})
    assert state.choices_made[0]["choice_text"] == "Go"
