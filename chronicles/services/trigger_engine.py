"""
Trigger evaluation for play sessions.

Triggers are campaign scoped rules (a condition plus a list of events). After
every accepted choice the engine walks the campaign's triggers in
declaration order against the prospective session state. Each trigger whose
condition holds fires once: its effects are folded into the state before the
next trigger is checked, so one trigger can unlock another within the same
pass. Triggers already present in the fired set are skipped without
re-checking their condition.

Evaluation is pure and reproducible. ``random_chance`` triggers draw from a
generator seeded with the session, the trigger and the number of choices
made so far.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession

from chronicles.database.models import TriggerDefinition, TriggerLogEntry
from chronicles.errors import TriggerEvaluationFault
from chronicles.services.effects import (
    Effect,
    Message,
    SessionSnapshot,
    XpBonus,
    apply_effect,
    parse_effect,
)
from chronicles.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerEvent:
    name: str
    event_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerRule:
    id: int
    name: str
    trigger_type: str
    conditions: Mapping[str, Any] = field(default_factory=dict)
    events: tuple = ()

    @classmethod
    def from_model(cls, definition: TriggerDefinition) -> "TriggerRule":
        events = sorted(definition.events, key=lambda e: (e.position, e.id))
        return cls(
            id=definition.id,
            name=definition.name,
            trigger_type=definition.trigger_type,
            conditions=definition.conditions or {},
            events=tuple(TriggerEvent(e.name, e.event_type, e.payload or {}) for e in events),
        )


@dataclass
class FiredTrigger:
    trigger_id: int
    name: str
    trigger_type: str
    effects: list
    messages: list
    xp_bonus: int = 0


@dataclass
class TriggerResult:
    initial: SessionSnapshot
    state: SessionSnapshot
    fired: list[FiredTrigger]
    fired_ids: frozenset

    @property
    def newly_fired_ids(self) -> list[int]:
        return [f.trigger_id for f in self.fired]

    @property
    def stat_deltas(self) -> dict[str, int]:
        """Net change per stat after clamping."""
        return {
            stat: value - self.initial.stats.get(stat, 0)
            for stat, value in self.state.stats.items()
            if value != self.initial.stats.get(stat, 0)
        }

    @property
    def flag_updates(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.state.flags.items()
            if key not in self.initial.flags or self.initial.flags[key] != value
        }

    @property
    def items_granted(self) -> list[str]:
        return list(self.state.items[len(self.initial.items):])

    @property
    def xp_bonus(self) -> int:
        return self.state.xp_bonus - self.initial.xp_bonus

    @property
    def messages(self) -> list[str]:
        return list(self.state.messages[len(self.initial.messages):])


# ----- Conditions -----

def _number(conditions: Mapping[str, Any], key: str, default=None) -> float:
    value = conditions.get(key, default)
    if value is None or value == "" or isinstance(value, bool):
        raise ValueError(f"missing numeric '{key}'")
    return float(value)


def _text(conditions: Mapping[str, Any], key: str) -> str:
    value = conditions.get(key)
    if value is None or value == "":
        raise ValueError(f"missing '{key}'")
    return str(value)


def _flag_matches(current: Any, expected: Any) -> bool:
    if expected in ("true", True):
        return current is True
    if expected in ("false", False):
        return current is False
    if current is None:
        return False
    return str(current) == str(expected)


def _random_roll(session_id, trigger_id, state: SessionSnapshot) -> float:
    seed = f"{session_id}:{trigger_id}:{len(state.choices_made)}"
    return random.Random(seed).random() * 100


def condition_met(
    trigger_type: str,
    conditions: Mapping[str, Any],
    state: SessionSnapshot,
    *,
    session_id=None,
    trigger_id=None,
) -> bool:
    """Check one condition. Raises ``ValueError`` when it is malformed."""
    if not isinstance(conditions, Mapping):
        raise ValueError("conditions must be an object")

    if trigger_type == "stat_threshold":
        stat = _text(conditions, "stat")
        return state.stats.get(stat, 0) >= _number(conditions, "min_value")
    if trigger_type == "item_possessed":
        wanted = _text(conditions, "item_name").lower()
        return any(str(item).lower() == wanted for item in state.items)
    if trigger_type == "flag_set":
        name = _text(conditions, "flag_name")
        return _flag_matches(state.flags.get(name), conditions.get("flag_value", True))
    if trigger_type == "flag_not_set":
        name = _text(conditions, "flag_name")
        return not state.flags.get(name)
    if trigger_type == "relationship_score":
        npc = _text(conditions, "npc_name")
        current = state.flags.get(f"relationship_{npc}") or 0
        return float(current) >= _number(conditions, "min_score")
    if trigger_type == "faction_reputation":
        faction = _text(conditions, "faction_name")
        current = state.flags.get(f"faction_{faction}") or 0
        return float(current) >= _number(conditions, "min_reputation")
    if trigger_type == "choice_made":
        node_id = conditions.get("node_id")
        wanted = _text(conditions, "choice_text").lower()
        return any(
            (node_id is None or str(c.get("node_id")) == str(node_id))
            and wanted in str(c.get("choice_text", "")).lower()
            for c in state.choices_made
        )
    if trigger_type == "node_reached":
        return state.node_id is not None and str(state.node_id) == _text(conditions, "node_id")
    if trigger_type == "player_count":
        return state.player_count >= _number(conditions, "min_players", 1)
    if trigger_type == "random_chance":
        probability = _number(conditions, "probability")
        return _random_roll(session_id, trigger_id, state) < probability
    if trigger_type == "all_of":
        parts = conditions.get("conditions")
        if not isinstance(parts, list) or not parts:
            raise ValueError("all_of needs a non-empty 'conditions' list")
        return all(
            condition_met(
                _text(part, "trigger_type"),
                part.get("conditions") or {},
                state,
                session_id=session_id,
                trigger_id=trigger_id,
            )
            for part in parts
        )
    raise ValueError(f"unknown trigger type '{trigger_type}'")


class TriggerEngine:
    """Pure evaluator; persistence of the fired set lives in ``TriggerService``."""

    def __init__(self, rules: Sequence[TriggerRule], session_id=None):
        self.rules = list(rules)
        self.session_id = session_id

    def _check(self, rule: TriggerRule, state: SessionSnapshot) -> list[Effect] | None:
        """Return the rule's effects when it fires, ``None`` otherwise."""
        try:
            met = condition_met(
                rule.trigger_type,
                rule.conditions,
                state,
                session_id=self.session_id,
                trigger_id=rule.id,
            )
            if not met:
                return None
            effects = []
            for event in rule.events:
                effect = parse_effect(event.event_type, event.payload)
                if effect is not None:
                    effects.append(effect)
            return effects
        except (ValueError, TypeError, AttributeError) as e:
            raise TriggerEvaluationFault(rule.id, str(e)) from e

    def evaluate(self, state: SessionSnapshot, fired_ids: Iterable[int] = ()) -> TriggerResult:
        fired_set = set(fired_ids)
        current = state
        fired: list[FiredTrigger] = []

        for rule in self.rules:
            if rule.id in fired_set:
                continue
            try:
                effects = self._check(rule, current)
            except TriggerEvaluationFault as fault:
                logger.warning(f"Skipping malformed trigger {rule.id} ({rule.name}): {fault.reason}")
                continue
            if effects is None:
                continue

            for effect in effects:
                current = apply_effect(current, effect)

            fired_set.add(rule.id)
            fired.append(FiredTrigger(
                trigger_id=rule.id,
                name=rule.name,
                trigger_type=rule.trigger_type,
                effects=effects,
                messages=[e.text for e in effects if isinstance(e, Message)],
                xp_bonus=sum(e.amount for e in effects if isinstance(e, XpBonus)),
            ))
            logger.info(f"Trigger {rule.id} ({rule.name}) fired for session {self.session_id}")

        return TriggerResult(initial=state, state=current, fired=fired, fired_ids=frozenset(fired_set))


class TriggerService:
    """Loads a campaign's rules and keeps the per-session fired log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_rules(self, campaign_id: int) -> list[TriggerRule]:
        stmt = (
            select(TriggerDefinition)
            .where(
                TriggerDefinition.campaign_id == campaign_id,
                TriggerDefinition.is_active == True,
            )
            .order_by(TriggerDefinition.position, TriggerDefinition.id)
            .options(selectinload(TriggerDefinition.events))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return [TriggerRule.from_model(d) for d in result.scalars().all()]

    async def get_fired_ids(self, session_id: int) -> set[int]:
        stmt = select(TriggerLogEntry.trigger_id).where(TriggerLogEntry.session_id == session_id)
        result = await self.session.execute(stmt)
        return {row[0] for row in result.all()}

    async def get_log(self, session_id: int) -> list[TriggerLogEntry]:
        stmt = (
            select(TriggerLogEntry)
            .where(TriggerLogEntry.session_id == session_id)
            .order_by(TriggerLogEntry.fired_at, TriggerLogEntry.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def build_engine(self, campaign_id: int, session_id: int) -> TriggerEngine:
        return TriggerEngine(await self.get_rules(campaign_id), session_id=session_id)

    def record_fired(self, session_id: int, character_id: int | None, fired: Sequence[FiredTrigger]) -> list[TriggerLogEntry]:
        """Stage log rows for newly fired triggers. The caller commits."""
        now = utcnow()
        entries = []
        for item in fired:
            entry = TriggerLogEntry(
                session_id=session_id,
                trigger_id=item.trigger_id,
                character_id=character_id,
                fired_at=now,
                message="\n".join(item.messages) or None,
                context={
                    "trigger_name": item.name,
                    "trigger_type": item.trigger_type,
                    "xp_bonus": item.xp_bonus,
                    "effects": [type(e).__name__ for e in item.effects],
                },
            )
            self.session.add(entry)
            entries.append(entry)
        return entries
