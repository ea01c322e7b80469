import asyncio

import pytest

from vectornode.bus.base import decode_envelope, encode_envelope
from vectornode.bus.events import ChangeEvent, EventType
from vectornode.bus.memory import InMemoryChangeBus


def test_event_wire_format():
    kb = ChangeEvent.kb_created("k1", "Hello")
    ctx = ChangeEvent.context_created("c1", "k1", "chunk")

    assert kb.to_payload() == {"type": "KB_CREATED", "id": "k1", "content": "Hello"}
    assert ctx.to_payload() == {"type": "CONTEXT_CREATED", "id": "c1", "kb_id": "k1", "text_chunk": "chunk"}
    assert ChangeEvent.from_json(ctx.to_json()) == ctx
    assert ChangeEvent.from_json(kb.to_json()) == kb


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"type": "KB_DELETED", "id": "x"}',
        '{"type": "KB_CREATED"}',
        '{"type": "CONTEXT_CREATED", "id": "c1", "text_chunk": "t"}',
    ],
)
def test_malformed_events_are_ignored(raw):
    assert ChangeEvent.from_json(raw) is None


def test_envelope_carries_attempts():
    ev = ChangeEvent.kb_created("k1", "x")
    assert decode_envelope(encode_envelope(ev, attempts=3)) == (ev, 3)
    assert decode_envelope("garbage") == (None, 0)
    assert decode_envelope('{"attempts": 2}') == (None, 0)


@pytest.mark.asyncio
async def test_receive_times_out_with_none():
    bus = InMemoryChangeBus()
    assert await bus.receive(timeout=0.01) is None


@pytest.mark.asyncio
async def test_nack_redelivers_with_incremented_attempts():
    bus = InMemoryChangeBus(max_attempts=3)
    await bus.publish(ChangeEvent.kb_created("k1", "x"))

    first = await bus.receive(timeout=0.1)
    assert first.attempts == 0
    assert await bus.nack(first) is True

    second = await bus.receive(timeout=0.1)
    assert second.event == first.event
    assert second.attempts == 1


@pytest.mark.asyncio
async def test_nack_past_max_attempts_dead_letters():
    bus = InMemoryChangeBus(max_attempts=2)
    await bus.publish(ChangeEvent.kb_created("k1", "x"))

    assert await bus.nack(await bus.receive(timeout=0.1)) is True
    assert await bus.nack(await bus.receive(timeout=0.1)) is False

    assert await bus.receive(timeout=0.01) is None
    assert [d.event.id for d in bus.dead_letters] == ["k1"]
    await asyncio.wait_for(bus.join(), timeout=1)


@pytest.mark.asyncio
async def test_delayed_nack_is_pending_until_requeued():
    bus = InMemoryChangeBus()
    await bus.publish(ChangeEvent.context_created("c1", "k1", "x"))
    await bus.nack(await bus.receive(timeout=0.1), delay=0.05)

    assert bus.pending() == 1
    assert await bus.receive(timeout=0.01) is None
    redelivered = await bus.receive(timeout=1.0)
    assert redelivered.event.type is EventType.CONTEXT_CREATED
    await bus.ack(redelivered)
    await asyncio.wait_for(bus.join(), timeout=1)
    assert bus.pending() == 0


@pytest.mark.asyncio
async def test_join_waits_for_delayed_retries():
    bus = InMemoryChangeBus()
    await bus.publish(ChangeEvent.kb_created("k1", "x"))
    await bus.nack(await bus.receive(timeout=0.1), delay=0.02)

    async def consume():
        d = await bus.receive(timeout=1.0)
        await bus.ack(d)

    consumer = asyncio.create_task(consume())
    await asyncio.wait_for(bus.join(), timeout=1)
    await consumer
    assert bus.pending() == 0


@pytest.mark.asyncio
async def test_redis_bus_publish_and_receive_envelopes():
    from unittest.mock import AsyncMock

    from vectornode.bus.redis_bus import RedisChangeBus

    ev = ChangeEvent.kb_created("k1", "Hello")
    client = AsyncMock()
    client.zrangebyscore.return_value = []
    client.blmove.return_value = encode_envelope(ev, attempts=2).encode()
    bus = RedisChangeBus(client, queue_name="q")

    await bus.publish(ev)
    client.lpush.assert_awaited_once_with("q", encode_envelope(ev))

    delivery = await bus.receive(timeout=0.1)
    assert (delivery.event, delivery.attempts) == (ev, 2)
    client.blmove.assert_awaited_once_with("q", "q:processing", 0.1, "RIGHT", "LEFT")

    await bus.ack(delivery)
    client.lrem.assert_awaited_once_with("q:processing", 1, delivery.token)


@pytest.mark.asyncio
async def test_redis_bus_drops_undecodable_envelopes():
    from unittest.mock import AsyncMock

    from vectornode.bus.redis_bus import RedisChangeBus

    client = AsyncMock()
    client.zrangebyscore.return_value = []
    client.blmove.return_value = b"garbage"
    bus = RedisChangeBus(client, queue_name="q")

    assert await bus.receive(timeout=0.1) is None
    client.lrem.assert_awaited_once_with("q:processing", 1, b"garbage")
