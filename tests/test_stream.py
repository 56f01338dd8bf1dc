import asyncio
import json
import threading

from broker import ChatBroker
from stream import KEEPALIVE, ChatStream, frame


def decode(chunk):
    assert chunk.endswith(b"\n")
    return json.loads(chunk)


async def never_disconnected():
    return False


async def always_disconnected():
    return True


def test_frame_is_one_json_line():
    chunk = frame({"type": "message", "message": {"id": "1", "content": "hi"}})
    assert chunk.count(b"\n") == 1
    assert decode(chunk) == {"type": "message", "message": {"id": "1", "content": "hi"}}


def test_ready_first_then_published_messages():
    broker = ChatBroker()

    async def scenario():
        live = ChatStream(broker, "t1", idle_seconds=1)
        live.open()
        events = live.events(never_disconnected)
        first = decode(await events.__anext__())
        assert broker.subscriber_count("t1") == 1

        broker.publish("t1", {"type": "message", "message": {"id": "m1"}})
        second = decode(await asyncio.wait_for(events.__anext__(), timeout=1))
        await events.aclose()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == {"type": "ready"}
    assert second == {"type": "message", "message": {"id": "m1"}}
    assert broker.thread_ids() == []


def test_events_published_from_worker_threads_are_delivered_in_order():
    broker = ChatBroker()

    async def scenario():
        live = ChatStream(broker, "t1", idle_seconds=1)
        events = live.events(never_disconnected)
        assert decode(await events.__anext__()) == {"type": "ready"}

        def publisher():
            for i in range(3):
                broker.publish("t1", {"type": "message", "message": {"id": str(i)}})

        worker = threading.Thread(target=publisher)
        worker.start()
        worker.join()
        got = [decode(await asyncio.wait_for(events.__anext__(), timeout=1)) for _ in range(3)]
        await events.aclose()
        return got

    got = asyncio.run(scenario())
    assert [e["message"]["id"] for e in got] == ["0", "1", "2"]


def test_disconnect_releases_subscription():
    broker = ChatBroker()

    async def scenario():
        live = ChatStream(broker, "t1", idle_seconds=0.01)
        chunks = [chunk async for chunk in live.events(always_disconnected)]
        return live, chunks

    live, chunks = asyncio.run(scenario())
    assert [decode(c) for c in chunks] == [{"type": "ready"}]
    assert live.closed
    assert broker.thread_ids() == []


def test_close_runs_once_across_concurrent_callers():
    broker = ChatBroker()
    other = broker.subscribe("t1", lambda e: None)

    async def scenario():
        live = ChatStream(broker, "t1")
        live.open()
        return live

    live = asyncio.run(scenario())
    assert broker.subscriber_count("t1") == 2

    results = []
    closers = [threading.Thread(target=lambda: results.append(live.close())) for _ in range(6)]
    for c in closers:
        c.start()
    for c in closers:
        c.join()

    assert results.count(True) == 1
    assert broker.subscriber_count("t1") == 1
    other()
    assert broker.thread_ids() == []


def test_publish_after_close_is_ignored():
    broker = ChatBroker()

    async def scenario():
        live = ChatStream(broker, "t1", idle_seconds=0.01)
        live.open()
        live.close()
        assert broker.publish("t1", {"type": "message"}) == 0
        return [chunk async for chunk in live.events(never_disconnected)]

    assert asyncio.run(scenario()) == []


def test_delivery_to_a_finished_loop_closes_the_stream():
    broker = ChatBroker()

    async def scenario():
        live = ChatStream(broker, "t1")
        live.open()
        return live

    live = asyncio.run(scenario())
    broker.publish("t1", {"type": "message"})
    assert live.closed
    assert broker.thread_ids() == []


def test_idle_stream_sends_keepalive_frames():
    broker = ChatBroker()

    async def scenario():
        events = ChatStream(broker, "t1", idle_seconds=0.01).events(never_disconnected)
        got = [decode(await events.__anext__()) for _ in range(3)]
        await events.aclose()
        return got

    assert asyncio.run(scenario()) == [{"type": "ready"}, KEEPALIVE, KEEPALIVE]
    assert broker.thread_ids() == []


def test_unstarted_stream_holds_no_subscription():
    broker = ChatBroker()

    async def scenario():
        live = ChatStream(broker, "t1")
        live.events(never_disconnected)
        return live

    live = asyncio.run(scenario())
    assert broker.thread_ids() == []
    assert live.close() is True
