"""
Session fan-out for connected clients.

Every accepted mutation is published as one of two events:

- ``SessionReplaced``: the full canonical session row. Consumers replace
  their copy (last write wins) and fetch the announced node if they have
  not loaded it yet.
- ``MessageAppended``: one new entry of the session log. Consumers append.

Events for a session are delivered to each subscriber in publish order.
Subscribers either pass a callback or consume the ``Subscription`` as an
async iterator.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Union

from chronicles.database.models import PlaySession, SessionMessage

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def session_snapshot(play_session: PlaySession) -> dict[str, Any]:
    return {
        "id": play_session.id,
        "campaign_id": play_session.campaign_id,
        "created_by": play_session.created_by,
        "mode": play_session.mode.value,
        "status": play_session.status.value,
        "current_node_id": play_session.current_node_id,
        "max_players": play_session.max_players,
        "current_turn_player_id": play_session.current_turn_player_id,
        "turn_deadline": _iso(play_session.turn_deadline),
        "session_code": play_session.session_code,
        "started_at": _iso(play_session.started_at),
        "last_played_at": _iso(play_session.last_played_at),
        "completed_at": _iso(play_session.completed_at),
    }


def message_snapshot(message: SessionMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "session_id": message.session_id,
        "user_id": message.user_id,
        "message_type": message.message_type.value,
        "content": message.content,
        "created_at": _iso(message.created_at),
    }


@dataclass(frozen=True)
class SessionReplaced:
    session_id: int
    snapshot: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MessageAppended:
    session_id: int
    message: dict = field(default_factory=dict)


SessionEvent = Union[SessionReplaced, MessageAppended]
EventHandler = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(self, channel: "SyncChannel", session_id: int, on_event: EventHandler | None, client_id=None):
        self.channel = channel
        self.session_id = session_id
        self.on_event = on_event
        self.client_id = client_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def deliver(self, event: SessionEvent):
        if self.on_event is None:
            self.queue.put_nowait(event)
            return
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Un suscriptor defectuoso no debe romper la publicación
            logger.error(f"Subscriber of session {self.session_id} failed on {type(event).__name__}: {e}")

    async def get(self) -> SessionEvent:
        return await self.queue.get()

    def close(self):
        self.channel.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> SessionEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()


class SyncChannel:
    def __init__(self):
        self._subscriptions: dict[int, list[Subscription]] = {}
        self._history: dict[int, list[dict]] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def subscribe(self, session_id: int, on_event: EventHandler | None = None, client_id=None) -> Subscription:
        subscription = Subscription(self, session_id, on_event, client_id)
        self._subscriptions.setdefault(session_id, []).append(subscription)
        logger.debug(f"Client {client_id} subscribed to session {session_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscribers = self._subscriptions.get(subscription.session_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        subscription.closed = True

    async def publish(self, session_id: int, event: SessionEvent, origin=None) -> SessionEvent:
        """Deliver ``event`` to every subscriber of the session except ``origin``."""
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            if isinstance(event, MessageAppended):
                self._history.setdefault(session_id, []).append(dict(event.message))
            for subscription in list(self._subscriptions.get(session_id, [])):
                if origin is not None and subscription.client_id == origin:
                    continue
                await subscription.deliver(event)
        return event

    async def publish_session(self, play_session: PlaySession, origin=None) -> SessionEvent:
        return await self.publish(
            play_session.id, SessionReplaced(play_session.id, session_snapshot(play_session)), origin
        )

    async def publish_message(self, message: SessionMessage, origin=None) -> SessionEvent:
        return await self.publish(
            message.session_id, MessageAppended(message.session_id, message_snapshot(message)), origin
        )

    def history(self, session_id: int) -> list[dict]:
        return [dict(m) for m in self._history.get(session_id, [])]

    def subscriber_count(self, session_id: int) -> int:
        return len(self._subscriptions.get(session_id, []))

    def clear(self):
        """Drop every subscription and log. Useful for testing."""
        for subscribers in self._subscriptions.values():
            for subscription in subscribers:
                subscription.closed = True
        self._subscriptions.clear()
        self._history.clear()
        self._locks.clear()


# Global singleton instance
_sync_channel: SyncChannel | None = None


def get_sync_channel() -> SyncChannel:
    global _sync_channel
    if _sync_channel is None:
        _sync_channel = SyncChannel()
    return _sync_channel
