"""
Session lifecycle, turn order and choice resolution.

All writes of one accepted choice (progress, session row, trigger log,
messages and, at the end of the story, the permanent character record)
are committed in a single transaction. The session row is written with a
conditional update on the state that was read, so when two clients race
for the same turn only the first write succeeds; the other attempt is
rolled back and reported as ``NotYourTurn``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from chronicles.database.models import (
    Campaign,
    Character,
    CharacterProgress,
    MessageType,
    NodeChoice,
    NodeType,
    PlaySession,
    SessionMessage,
    SessionMode,
    SessionParticipant,
    SessionStatus,
    StoryNode,
    TriggerLogEntry,
)
from chronicles.errors import (
    GraphLookupError,
    InvalidChoice,
    NotYourTurn,
    PersistenceFailure,
    RequirementNotMet,
    SessionFull,
    SessionNotActive,
    SessionNotFound,
)
from chronicles.services.effects import SessionSnapshot, apply_effect, effects_from_stat_map
from chronicles.services.progress_tracker import CharacterProgressTracker
from chronicles.services.story_graph import StoryGraph
from chronicles.services.sync_channel import SyncChannel, get_sync_channel
from chronicles.services.trigger_engine import TriggerResult, TriggerService
from chronicles.utils.config import Config
from chronicles.utils.text_utils import generate_session_code, normalize_session_code, sanitize_text
from chronicles.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def next_turn_user(turn_order: Sequence[int], current_user_id: Optional[int]) -> Optional[int]:
    """Round-robin successor of ``current_user_id`` in ``turn_order``.

    Falls back to the first entry when the current owner is not part of
    the order.
    """
    if not turn_order:
        return None
    if current_user_id not in turn_order:
        return turn_order[0]
    index = list(turn_order).index(current_user_id)
    return turn_order[(index + 1) % len(turn_order)]


@dataclass
class ChoiceOutcome:
    session: PlaySession
    progress: CharacterProgress
    node: Optional[StoryNode]
    choices: list = field(default_factory=list)
    completed: bool = False
    xp_gained: int = 0
    total_xp_awarded: int = 0
    trigger_messages: list = field(default_factory=list)
    fired_trigger_ids: list = field(default_factory=list)
    next_turn_player_id: Optional[int] = None


@dataclass
class ChoiceAvailability:
    choice: NodeChoice
    available: bool
    reason: Optional[str] = None


@dataclass
class SessionState:
    """Canonical view a client renders from."""

    session: PlaySession
    node: Optional[StoryNode]
    choices: list
    progress: Optional[CharacterProgress]
    participants: list
    fired_trigger_ids: set
    messages: list
    is_my_turn: bool
    trigger_log: list[TriggerLogEntry] = field(default_factory=list)


class SessionController:
    def __init__(self, session: AsyncSession, channel: SyncChannel | None = None):
        self.session = session
        self.channel = channel or get_sync_channel()
        self.triggers = TriggerService(session)

    # ----- Lookups -----

    async def _get_session(self, session_id: int) -> PlaySession:
        play_session = await self.session.get(PlaySession, session_id)
        if not play_session:
            raise SessionNotFound(session_id)
        return play_session

    async def _get_character(self, character_id: int) -> Character:
        character = await self.session.get(Character, character_id)
        if not character:
            raise GraphLookupError("character", character_id)
        return character

    async def _get_progress(self, session_id: int, character_id: int) -> CharacterProgress | None:
        return await self.session.get(CharacterProgress, (session_id, character_id))

    async def _get_participant(self, session_id: int, character_id: int) -> SessionParticipant | None:
        stmt = select(SessionParticipant).where(
            SessionParticipant.session_id == session_id,
            SessionParticipant.character_id == character_id,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_participants(self, session_id: int, active_only: bool = True) -> list[SessionParticipant]:
        """Participants in stable join order."""
        stmt = select(SessionParticipant).where(SessionParticipant.session_id == session_id)
        if active_only:
            stmt = stmt.where(SessionParticipant.is_active == True)
        stmt = (
            stmt.order_by(SessionParticipant.joined_at, SessionParticipant.id)
            .options(joinedload(SessionParticipant.character))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.unique().scalars().all())

    @staticmethod
    def turn_order(participants: Sequence[SessionParticipant]) -> list[int]:
        return list(dict.fromkeys(p.character.user_id for p in participants))

    async def _find_free_code(self) -> str:
        for _ in range(10):
            code = generate_session_code(Config.SESSION_CODE_LENGTH)
            stmt = select(PlaySession.id).where(PlaySession.session_code == code)
            if (await self.session.execute(stmt)).first() is None:
                return code
        raise PersistenceFailure("Could not allocate a unique session code")

    def _add_message(self, session_id: int, user_id: int, kind: MessageType, content: str) -> SessionMessage:
        message = SessionMessage(
            session_id=session_id,
            user_id=user_id,
            message_type=kind,
            content=content,
            created_at=utcnow(),
        )
        self.session.add(message)
        return message

    async def _commit(self, action: str):
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to persist {action}: {e}")
            raise PersistenceFailure(f"Failed to persist {action}") from e

    async def _broadcast(self, play_session: PlaySession, messages: Sequence[SessionMessage] = ()):
        await self.channel.publish_session(play_session)
        for message in messages:
            await self.channel.publish_message(message)

    # ----- Lifecycle -----

    async def start_session(self, campaign_id: int, character_id: int, mode=SessionMode.SOLO) -> PlaySession:
        mode = SessionMode(mode)
        graph = StoryGraph(self.session, campaign_id)
        campaign = await graph.get_campaign()
        if campaign.start_node_id is None:
            raise GraphLookupError("start node of campaign", campaign_id)
        start_node = await graph.get_node(campaign.start_node_id)
        character = await self._get_character(character_id)

        solo = mode == SessionMode.SOLO
        now = utcnow()
        try:
            play_session = PlaySession(
                campaign_id=campaign.id,
                created_by=character.user_id,
                mode=mode,
                status=SessionStatus.ACTIVE,
                current_node_id=start_node.id,
                max_players=1 if solo else Config.GROUP_MAX_PLAYERS,
                current_turn_player_id=None if solo else character.user_id,
                session_code=None if solo else await self._find_free_code(),
                started_at=now,
                last_played_at=now,
            )
            self.session.add(play_session)
            await self.session.flush()

            self.session.add(SessionParticipant(
                session_id=play_session.id,
                character_id=character.id,
                is_active=True,
                joined_at=now,
            ))
            progress = CharacterProgress(
                session_id=play_session.id,
                character_id=character.id,
                current_node_id=start_node.id,
            )
            CharacterProgressTracker.from_character(character, start_node.id).write_to(progress)
            self.session.add(progress)

            await self.session.execute(
                update(Campaign)
                .where(Campaign.id == campaign.id)
                .values(play_count=Campaign.play_count + 1)
                .execution_options(synchronize_session=False)
            )
            character.current_session_id = play_session.id

            messages = []
            if not solo:
                messages.append(self._add_message(
                    play_session.id, character.user_id, MessageType.SYSTEM,
                    f"{character.name} started the adventure!",
                ))
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to create session for campaign {campaign_id}: {e}")
            raise PersistenceFailure("Failed to start session") from e

        await self._commit("new session")
        await self.session.refresh(campaign)

        logger.info(
            f"Session {play_session.id} started by user {character.user_id} "
            f"({mode.value}) on campaign {campaign.id}"
        )
        await self._broadcast(play_session, messages)
        return play_session

    async def join_session(self, session_code: str, character_id: int) -> PlaySession:
        code = normalize_session_code(session_code)
        stmt = select(PlaySession).where(
            PlaySession.session_code == code,
            PlaySession.status == SessionStatus.ACTIVE,
        )
        play_session = (await self.session.execute(stmt)).scalars().first()
        if not play_session or play_session.mode == SessionMode.SOLO:
            raise SessionNotFound(code)

        character = await self._get_character(character_id)
        participant = await self._get_participant(play_session.id, character.id)
        if participant and participant.is_active:
            return play_session

        active = await self.get_participants(play_session.id)
        if len(active) >= play_session.max_players:
            raise SessionFull(play_session.id, play_session.max_players)

        now = utcnow()
        if participant:
            participant.is_active = True
        else:
            self.session.add(SessionParticipant(
                session_id=play_session.id,
                character_id=character.id,
                is_active=True,
                joined_at=now,
            ))

        if await self._get_progress(play_session.id, character.id) is None:
            progress = CharacterProgress(
                session_id=play_session.id,
                character_id=character.id,
                current_node_id=play_session.current_node_id,
            )
            CharacterProgressTracker.from_character(character, play_session.current_node_id).write_to(progress)
            self.session.add(progress)

        if play_session.current_turn_player_id is None:
            play_session.current_turn_player_id = character.user_id
        character.current_session_id = play_session.id
        message = self._add_message(
            play_session.id, character.user_id, MessageType.SYSTEM,
            f"{character.name} has joined the adventure!",
        )

        await self._commit("session join")
        logger.info(f"Character {character.id} joined session {play_session.id}")
        await self._broadcast(play_session, [message])
        return play_session

    async def leave_session(self, session_id: int, character_id: int) -> PlaySession:
        play_session = await self._get_session(session_id)
        character = await self._get_character(character_id)
        participant = await self._get_participant(session_id, character_id)
        if not participant or not participant.is_active:
            return play_session

        order = self.turn_order(await self.get_participants(session_id))
        participant.is_active = False
        if character.current_session_id == session_id:
            character.current_session_id = None

        if play_session.mode != SessionMode.SOLO and play_session.current_turn_player_id == character.user_id:
            successor = next_turn_user(order, character.user_id)
            play_session.current_turn_player_id = None if successor == character.user_id else successor

        messages = []
        if play_session.mode != SessionMode.SOLO:
            messages.append(self._add_message(
                session_id, character.user_id, MessageType.SYSTEM,
                f"{character.name} left the adventure.",
            ))

        await self._commit("session leave")
        logger.info(f"Character {character_id} left session {session_id}")
        await self._broadcast(play_session, messages)
        return play_session

    # ----- Choices -----

    def _is_turn_of(self, play_session: PlaySession, character: Character) -> bool:
        if play_session.mode == SessionMode.SOLO:
            return True
        return play_session.current_turn_player_id == character.user_id

    async def available_choices(self, session_id: int, character_id: int) -> list[ChoiceAvailability]:
        play_session = await self._get_session(session_id)
        character = await self._get_character(character_id)
        progress = await self._get_progress(session_id, character_id)
        tracker = (
            CharacterProgressTracker.from_progress(progress)
            if progress else CharacterProgressTracker.from_character(character)
        )
        if play_session.status != SessionStatus.ACTIVE or play_session.current_node_id is None:
            return []

        graph = StoryGraph(self.session, play_session.campaign_id)
        my_turn = self._is_turn_of(play_session, character)
        availability = []
        for choice in await graph.get_choices(play_session.current_node_id):
            if not my_turn:
                availability.append(ChoiceAvailability(choice, False, "Wait for your turn"))
                continue
            requirement = choice.stat_requirement or {}
            stat = requirement.get("stat")
            min_value = int(requirement.get("min_value", 0) or 0)
            if stat and not tracker.check_requirement(stat, min_value):
                availability.append(ChoiceAvailability(
                    choice, False,
                    f"Requires {min_value} {stat} (you have {tracker.stats.get(stat, 0)})",
                ))
                continue
            availability.append(ChoiceAvailability(choice, True))
        return availability

    async def submit_choice(self, session_id: int, character_id: int, choice_id: int) -> ChoiceOutcome:
        play_session = await self._get_session(session_id)
        if play_session.status != SessionStatus.ACTIVE:
            raise SessionNotActive(session_id, play_session.status.value)

        character = await self._get_character(character_id)
        participant = await self._get_participant(session_id, character_id)
        if not participant or not participant.is_active:
            raise InvalidChoice(f"Character {character_id} is not playing session {session_id}")

        read_turn = play_session.current_turn_player_id
        read_node_id = play_session.current_node_id
        mode = play_session.mode
        if not self._is_turn_of(play_session, character):
            raise NotYourTurn(read_turn, character.user_id)

        graph = StoryGraph(self.session, play_session.campaign_id)
        choice = await graph.get_choice(choice_id)
        if choice.node_id != read_node_id:
            raise InvalidChoice(f"Choice {choice_id} does not leave node {read_node_id}")

        progress = await self._get_progress(session_id, character_id)
        if progress is None:
            raise GraphLookupError("progress for character", character_id)
        tracker = CharacterProgressTracker.from_progress(progress)

        requirement = choice.stat_requirement or {}
        if requirement.get("stat"):
            stat = requirement["stat"]
            min_value = int(requirement.get("min_value", 0) or 0)
            if not tracker.check_requirement(stat, min_value):
                raise RequirementNotMet(stat, min_value, tracker.stats.get(stat, 0))

        current_node = await graph.get_node(read_node_id)
        target = await graph.get_node(choice.target_node_id) if choice.target_node_id is not None else None
        completed = (
            target is None
            or current_node.node_type == NodeType.ENDING
            or await graph.is_terminal(target)
        )

        if target is None:
            # Cualquier otro nodo ya pagó su recompensa al entrar
            campaign = await graph.get_campaign()
            xp_gained = (current_node.xp_reward or 0) if current_node.id == campaign.start_node_id else 0
        elif not tracker.has_visited(target.id):
            xp_gained = target.xp_reward or 0
        else:
            xp_gained = 0

        self._apply_choice_effects(tracker, choice)
        tracker.record_choice(current_node.id, choice.choice_text)

        active = await self.get_participants(session_id)
        trigger_result = await self._evaluate_triggers(play_session, tracker, target, len(active))
        tracker.apply_stat_deltas(trigger_result.stat_deltas)
        tracker.merge_flags(trigger_result.flag_updates)
        tracker.add_items(trigger_result.items_granted)
        xp_gained += trigger_result.xp_bonus

        tracker.award_xp(xp_gained)
        if target is not None:
            tracker.record_visit(target.id)

        next_turn = read_turn
        order = self.turn_order(active)
        if mode != SessionMode.SOLO and len(order) > 1:
            next_turn = next_turn_user(order, read_turn)

        now = utcnow()
        target_id = target.id if target is not None else None
        values = {
            "current_node_id": target_id,
            "last_played_at": now,
            "current_turn_player_id": next_turn,
        }
        if completed:
            values["status"] = SessionStatus.COMPLETED
            values["completed_at"] = now

        conditions = [
            PlaySession.id == session_id,
            PlaySession.status == SessionStatus.ACTIVE,
            PlaySession.current_node_id == read_node_id,
        ]
        conditions.append(
            PlaySession.current_turn_player_id.is_(None) if read_turn is None
            else PlaySession.current_turn_player_id == read_turn
        )

        messages: list[SessionMessage] = []
        total_awarded = 0
        acting_user = character.user_id
        try:
            result = await self.session.execute(
                update(PlaySession)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.session.rollback()
                logger.info(f"Choice on session {session_id} lost the race for user {acting_user}")
                if mode == SessionMode.SOLO:
                    raise InvalidChoice(f"Session {session_id} moved on before the choice was stored")
                raise NotYourTurn(read_turn, acting_user)

            tracker.write_to(progress)
            progress.current_node_id = target_id
            self.triggers.record_fired(session_id, character_id, trigger_result.fired)

            if mode != SessionMode.SOLO:
                messages.append(self._add_message(
                    session_id, acting_user, MessageType.ACTION,
                    f'{character.name} chose: "{choice.choice_text}"',
                ))
                for text in trigger_result.messages:
                    messages.append(self._add_message(session_id, acting_user, MessageType.SYSTEM, text))

            if completed:
                total_awarded = self._fold_completion(session_id, character, tracker)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to persist choice {choice_id} on session {session_id}: {e}")
            raise PersistenceFailure(f"Failed to persist choice on session {session_id}") from e

        await self._commit(f"choice {choice_id} on session {session_id}")
        await self.session.refresh(play_session)
        await self.session.refresh(progress)

        if completed:
            logger.info(f"Session {session_id} completed; character {character_id} earned {total_awarded} XP")
        else:
            logger.info(f"Session {session_id}: user {acting_user} moved {read_node_id} -> {target_id}")

        await self._broadcast(play_session, messages)
        return ChoiceOutcome(
            session=play_session,
            progress=progress,
            node=target,
            choices=await graph.get_choices(target.id) if target is not None and not completed else [],
            completed=completed,
            xp_gained=xp_gained,
            total_xp_awarded=total_awarded,
            trigger_messages=trigger_result.messages,
            fired_trigger_ids=trigger_result.newly_fired_ids,
            next_turn_player_id=play_session.current_turn_player_id,
        )

    @staticmethod
    def _apply_choice_effects(tracker: CharacterProgressTracker, choice: NodeChoice):
        state = SessionSnapshot(stats=dict(tracker.stats))
        for effect in effects_from_stat_map(choice.stat_effect):
            state = apply_effect(state, effect)
        tracker.stats = dict(state.stats)

    async def _evaluate_triggers(
        self,
        play_session: PlaySession,
        tracker: CharacterProgressTracker,
        target: Optional[StoryNode],
        player_count: int,
    ) -> TriggerResult:
        engine = await self.triggers.build_engine(play_session.campaign_id, play_session.id)
        fired_ids = await self.triggers.get_fired_ids(play_session.id)
        snapshot = SessionSnapshot(
            stats=dict(tracker.stats),
            flags=dict(tracker.flags),
            items=tuple(tracker.items),
            node_id=target.id if target is not None else None,
            player_count=max(player_count, 1),
        )
        return engine.evaluate(snapshot, fired_ids)

    @staticmethod
    def _fold_completion(session_id: int, character: Character, tracker: CharacterProgressTracker) -> int:
        """Move session progress into the permanent character. Returns the XP awarded."""
        total = tracker.xp + Config.COMPLETION_XP_BONUS
        character.xp = (character.xp or 0) + total
        character.stats = dict(tracker.stats)
        if character.current_session_id == session_id:
            character.current_session_id = None
        return total

    # ----- Messages and state -----

    async def post_message(self, session_id: int, user_id: int, content: str, kind=MessageType.CHAT) -> SessionMessage:
        kind = MessageType(kind)
        text = sanitize_text((content or "").strip())
        if not text:
            raise ValueError("Message content must not be empty")
        await self._get_session(session_id)

        message = self._add_message(session_id, user_id, kind, text)
        await self._commit(f"message on session {session_id}")
        await self.channel.publish_message(message)
        return message

    async def get_messages(self, session_id: int, limit: int | None = None) -> list[SessionMessage]:
        limit = limit or Config.MESSAGE_HISTORY_LIMIT
        stmt = (
            select(SessionMessage)
            .where(SessionMessage.session_id == session_id)
            .order_by(SessionMessage.created_at.desc(), SessionMessage.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(reversed(result.scalars().all()))

    async def load_state(self, session_id: int, character_id: int) -> SessionState:
        play_session = await self._get_session(session_id)
        character = await self._get_character(character_id)
        graph = StoryGraph(self.session, play_session.campaign_id)

        node = None
        choices = []
        if play_session.current_node_id is not None:
            node = await graph.get_node(play_session.current_node_id)
            choices = await graph.get_choices(node.id)

        return SessionState(
            session=play_session,
            node=node,
            choices=choices,
            progress=await self._get_progress(session_id, character_id),
            participants=await self.get_participants(session_id, active_only=False),
            fired_trigger_ids=await self.triggers.get_fired_ids(session_id),
            messages=await self.get_messages(session_id),
            is_my_turn=play_session.status == SessionStatus.ACTIVE and self._is_turn_of(play_session, character),
            trigger_log=await self.triggers.get_log(session_id),
        )
