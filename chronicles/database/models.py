# database/models.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    BigInteger,
    DateTime,
    Boolean,
    JSON,
    Text,
    ForeignKey,
    UniqueConstraint,
    Enum,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from .base import Base


class NodeType(enum.Enum):
    NARRATIVE = "narrative"
    CHOICE = "choice"
    COMBAT = "combat"
    ENDING = "ending"


class SessionMode(enum.Enum):
    SOLO = "solo"
    GROUP = "group"
    ASYNC = "async"


class SessionStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class MessageType(enum.Enum):
    CHAT = "chat"
    ACTION = "action"
    SYSTEM = "system"
    ROLL = "roll"


class Campaign(Base):
    """An authored story graph. Read-only during play except for ``play_count``."""

    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_node_id = Column(Integer, nullable=True)
    play_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=func.now())

    nodes = relationship(
        "StoryNode",
        back_populates="campaign",
        cascade="all, delete-orphan",
    )


class StoryNode(Base):
    __tablename__ = "story_nodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    # Clave local del archivo de campaña, usada por el cargador
    key = Column(String, nullable=True)
    node_type = Column(Enum(NodeType), default=NodeType.NARRATIVE, nullable=False)
    title = Column(String, nullable=True)
    # {"text": ..., "npc_name": ..., "npc_portrait": ..., "image_url": ...}
    content = Column(JSON, default=dict)
    xp_reward = Column(Integer, default=0, nullable=False)

    campaign = relationship("Campaign", back_populates="nodes")
    choices = relationship(
        "NodeChoice",
        back_populates="node",
        foreign_keys="NodeChoice.node_id",
        order_by="NodeChoice.order_index",
        cascade="all, delete-orphan",
    )

    @property
    def text(self) -> str:
        return (self.content or {}).get("text", "")


class NodeChoice(Base):
    __tablename__ = "node_choices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(Integer, ForeignKey("story_nodes.id"), nullable=False, index=True)
    order_index = Column(Integer, default=0, nullable=False)
    choice_text = Column(String, nullable=False)
    # Sin destino: la decisión termina la historia
    target_node_id = Column(Integer, ForeignKey("story_nodes.id"), nullable=True)
    stat_requirement = Column(JSON, nullable=True)  # {"stat": "strength", "min_value": 7}
    stat_effect = Column(JSON, nullable=True)  # {"charisma": 2, "agility": -1}

    node = relationship("StoryNode", back_populates="choices", foreign_keys=[node_id])


class Character(Base):
    """A player's character. Permanent stats and xp change only on completion."""

    __tablename__ = "characters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String, nullable=False)
    stats = Column(JSON, default=dict)
    xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)
    current_session_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class PlaySession(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    created_by = Column(BigInteger, nullable=False)
    mode = Column(Enum(SessionMode), default=SessionMode.SOLO, nullable=False)
    status = Column(Enum(SessionStatus), default=SessionStatus.ACTIVE, nullable=False)
    current_node_id = Column(Integer, nullable=True)
    max_players = Column(Integer, default=1, nullable=False)
    current_turn_player_id = Column(BigInteger, nullable=True)
    # Solo informativo: no hay lógica de expiración de turnos
    turn_deadline = Column(DateTime, nullable=True)
    session_code = Column(String(16), unique=True, nullable=True, index=True)
    started_at = Column(DateTime, default=func.now())
    last_played_at = Column(DateTime, default=func.now())
    completed_at = Column(DateTime, nullable=True)


class SessionParticipant(Base):
    __tablename__ = "session_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    joined_at = Column(DateTime, default=func.now())

    character = relationship("Character", lazy="joined")

    __table_args__ = (
        UniqueConstraint("session_id", "character_id", name="uix_session_participant"),
    )


class CharacterProgress(Base):
    __tablename__ = "character_progress"

    session_id = Column(Integer, ForeignKey("sessions.id"), primary_key=True)
    character_id = Column(Integer, ForeignKey("characters.id"), primary_key=True)
    current_node_id = Column(Integer, nullable=True)
    stats_snapshot = Column(JSON, default=dict)
    xp_earned = Column(Integer, default=0, nullable=False)
    nodes_visited = Column(JSON, default=list)
    # Incluye "choices_made" e "items"
    story_flags = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class TriggerDefinition(Base):
    """Campaign scoped rule evaluated after every choice."""

    __tablename__ = "trigger_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String, nullable=False)
    conditions = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    # Orden de evaluación dentro de la campaña
    position = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=func.now())

    events = relationship(
        "TriggeredEvent",
        back_populates="trigger",
        order_by="TriggeredEvent.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class TriggeredEvent(Base):
    """One effect fired by a trigger."""

    __tablename__ = "triggered_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trigger_id = Column(Integer, ForeignKey("trigger_definitions.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, default=dict)
    position = Column(Integer, default=0, nullable=False)

    trigger = relationship("TriggerDefinition", back_populates="events")


class TriggerLogEntry(Base):
    __tablename__ = "trigger_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    trigger_id = Column(Integer, ForeignKey("trigger_definitions.id"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=True)
    fired_at = Column(DateTime, default=func.now())
    message = Column(Text, nullable=True)
    context = Column(JSON, default=dict)

    # Un disparador se ejecuta como máximo una vez por sesión
    __table_args__ = (
        UniqueConstraint("session_id", "trigger_id", name="uix_trigger_log_session_trigger"),
    )


class SessionMessage(Base):
    """Append-only entry in a session's shared log."""

    __tablename__ = "session_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False)
    message_type = Column(Enum(MessageType), default=MessageType.CHAT, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=func.now())
