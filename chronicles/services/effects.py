"""
Effect variants produced by triggers and choices, and the pure state fold
they are applied with.

Authoring payloads use the event types of the trigger editor
(``modify_stat``, ``set_flag``, ``grant_item``, ``award_xp``,
``show_message``). ``unlock_path`` and ``spawn_node`` are presentation
events and carry no state change.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Union

from chronicles.services.progress_tracker import apply_deltas


@dataclass(frozen=True)
class StatDelta:
    stat: str
    change: int


@dataclass(frozen=True)
class FlagMerge:
    flags: Mapping[str, Any]


@dataclass(frozen=True)
class ItemGrant:
    item: str


@dataclass(frozen=True)
class XpBonus:
    amount: int


@dataclass(frozen=True)
class Message:
    text: str


Effect = Union[StatDelta, FlagMerge, ItemGrant, XpBonus, Message]

PRESENTATION_EVENTS = frozenset({"unlock_path", "spawn_node"})


def _coerce_flag_value(value: Any) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    return value


def _require(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or value == "":
        raise ValueError(f"missing '{key}'")
    return value


def parse_effect(event_type: str, payload: Mapping[str, Any] | None) -> Effect | None:
    """Build the effect for one authored event.

    Raises ``ValueError`` when the payload is malformed or the event type is
    unknown. Returns ``None`` for presentation-only events.
    """
    payload = payload or {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"payload must be an object, got {type(payload).__name__}")

    if event_type == "modify_stat":
        return StatDelta(stat=str(_require(payload, "stat")), change=int(_require(payload, "change")))
    if event_type == "set_flag":
        name = str(_require(payload, "flag_name"))
        return FlagMerge(flags={name: _coerce_flag_value(payload.get("flag_value"))})
    if event_type == "grant_item":
        return ItemGrant(item=str(_require(payload, "item_name")))
    if event_type == "award_xp":
        amount = int(_require(payload, "amount"))
        if amount < 0:
            raise ValueError("award_xp amount must be non-negative")
        return XpBonus(amount=amount)
    if event_type == "show_message":
        return Message(text=str(_require(payload, "message")))
    if event_type in PRESENTATION_EVENTS:
        return None
    raise ValueError(f"unknown event type '{event_type}'")


def effects_from_stat_map(stat_effect: Mapping[str, Any] | None) -> list[StatDelta]:
    """Turn a choice's ``{stat: delta}`` map into ``StatDelta`` effects."""
    effects = []
    for stat, change in (stat_effect or {}).items():
        if isinstance(change, bool) or not isinstance(change, (int, float)):
            continue
        effects.append(StatDelta(stat=stat, change=int(change)))
    return effects


@dataclass(frozen=True)
class SessionSnapshot:
    """The state triggers are evaluated against."""

    stats: Mapping[str, int]
    flags: Mapping[str, Any] = field(default_factory=dict)
    items: tuple = ()
    node_id: int | None = None
    player_count: int = 1
    xp_bonus: int = 0
    messages: tuple = ()

    @property
    def choices_made(self) -> list:
        return list(self.flags.get("choices_made") or [])


def apply_effect(state: SessionSnapshot, effect: Effect) -> SessionSnapshot:
    """Return the state with one effect folded in."""
    if isinstance(effect, StatDelta):
        return replace(state, stats=apply_deltas(state.stats, {effect.stat: effect.change}))
    if isinstance(effect, FlagMerge):
        flags = dict(state.flags)
        flags.update(copy.deepcopy(dict(effect.flags)))
        return replace(state, flags=flags)
    if isinstance(effect, ItemGrant):
        return replace(state, items=state.items + (effect.item,))
    if isinstance(effect, XpBonus):
        return replace(state, xp_bonus=state.xp_bonus + effect.amount)
    if isinstance(effect, Message):
        return replace(state, messages=state.messages + (effect.text,))
    raise TypeError(f"Unsupported effect {effect!r}")
