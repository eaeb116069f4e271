import logging

import pytest

from chronicles.services.sync_channel import (
    MessageAppended,
    SessionReplaced,
    SyncChannel,
    get_sync_channel,
)


def _message(session_id, content, message_id=1):
    return MessageAppended(session_id, {"id": message_id, "session_id": session_id, "content": content})


@pytest.mark.asyncio
async def test_events_arrive_in_publish_order():
    channel = SyncChannel()
    subscription = channel.subscribe(1)

    await channel.publish(1, SessionReplaced(1, {"current_node_id": 3}))
    await channel.publish(1, _message(1, "hello"))
    await channel.publish(1, SessionReplaced(1, {"current_node_id": 4}))

    received = [await subscription.get() for _ in range(3)]
    assert [type(e).__name__ for e in received] == ["SessionReplaced", "MessageAppended", "SessionReplaced"]
    assert received[2].snapshot["current_node_id"] == 4


@pytest.mark.asyncio
async def test_sessions_are_isolated():
    channel = SyncChannel()
    first = channel.subscribe(1)
    second = channel.subscribe(2)

    await channel.publish(1, _message(1, "only for one"))

    assert first.queue.qsize() == 1
    assert second.queue.empty()


@pytest.mark.asyncio
async def test_sync_and_async_callbacks():
    channel = SyncChannel()
    seen = []

    async def on_event_async(event):
        seen.append(("async", event.message["content"]))

    channel.subscribe(1, lambda event: seen.append(("sync", event.message["content"])))
    channel.subscribe(1, on_event_async)

    await channel.publish(1, _message(1, "hi"))
    assert seen == [("sync", "hi"), ("async", "hi")]


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_publish(caplog):
    channel = SyncChannel()
    healthy = channel.subscribe(1)

    def broken(event):
        raise RuntimeError("boom")

    channel.subscribe(1, broken)
    with caplog.at_level(logging.ERROR, logger="chronicles.services.sync_channel"):
        await channel.publish(1, _message(1, "still delivered"))

    assert (await healthy.get()).message["content"] == "still delivered"
    assert "boom" in caplog.text


@pytest.mark.asyncio
async def test_origin_is_skipped():
    channel = SyncChannel()
    author = channel.subscribe(1, client_id="ava")
    other = channel.subscribe(1, client_id="bram")

    await channel.publish(1, _message(1, "mine"), origin="ava")

    assert author.queue.empty()
    assert other.queue.qsize() == 1


@pytest.mark.asyncio
async def test_history_keeps_appended_messages():
    channel = SyncChannel()
    await channel.publish(1, _message(1, "one", 1))
    await channel.publish(1, SessionReplaced(1, {}))
    await channel.publish(1, _message(1, "two", 2))

    history = channel.history(1)
    assert [m["content"] for m in history] == ["one", "two"]

    history.clear()
    assert len(channel.history(1)) == 2


@pytest.mark.asyncio
async def test_unsubscribe_and_iteration_end():
    channel = SyncChannel()
    subscription = channel.subscribe(1)
    await channel.publish(1, _message(1, "last"))
    subscription.close()

    await channel.publish(1, _message(1, "after close"))
    assert channel.subscriber_count(1) == 0

    received = [event async for event in subscription]
    assert [e.message["content"] for e in received] == ["last"]


def test_get_sync_channel_is_a_singleton():
    assert get_sync_channel() is get_sync_channel()
