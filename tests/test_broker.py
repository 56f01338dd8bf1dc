import threading

from broker import ChatBroker


def test_publish_reaches_subscriber_once():
    broker = ChatBroker()
    received = []
    broker.subscribe("t1", received.append)

    assert broker.publish("t1", {"type": "message", "n": 1}) == 1
    assert received == [{"type": "message", "n": 1}]


def test_publish_without_subscribers_is_dropped():
    broker = ChatBroker()
    assert broker.publish("nobody-listening", {"type": "message"}) == 0
    assert broker.thread_ids() == []


def test_unsubscribe_stops_delivery_and_removes_empty_entry():
    broker = ChatBroker()
    received = []
    unsubscribe = broker.subscribe("t1", received.append)
    unsubscribe()

    broker.publish("t1", "late")
    assert received == []
    assert "t1" not in broker.thread_ids()
    assert broker.subscriber_count("t1") == 0


def test_double_unsubscribe_is_a_no_op():
    broker = ChatBroker()
    first = broker.subscribe("t1", lambda e: None)
    second_received = []
    broker.subscribe("t1", second_received.append)

    first()
    first()
    assert broker.subscriber_count("t1") == 1
    broker.publish("t1", "still here")
    assert second_received == ["still here"]


def test_handle_removes_only_its_own_registration():
    broker = ChatBroker()
    received = []
    one = broker.subscribe("t1", received.append)
    broker.subscribe("t1", received.append)

    one()
    broker.publish("t1", "x")
    assert received == ["x"]


def test_registration_order_and_thread_isolation():
    broker = ChatBroker()
    calls = []
    broker.subscribe("t1", lambda e: calls.append(("a", e)))
    broker.subscribe("t1", lambda e: calls.append(("b", e)))
    broker.subscribe("t2", lambda e: calls.append(("other", e)))

    broker.publish("t1", 1)
    assert calls == [("a", 1), ("b", 1)]


def test_failing_subscriber_does_not_block_the_rest():
    broker = ChatBroker()
    received = []

    def boom(event):
        raise RuntimeError("viewer went away")

    broker.subscribe("t1", boom)
    broker.subscribe("t1", received.append)

    assert broker.publish("t1", "hello") == 2
    assert received == ["hello"]


def test_subscriber_may_unsubscribe_itself_during_publish():
    broker = ChatBroker()
    handles = {}

    def once(event):
        handles["me"]()

    handles["me"] = broker.subscribe("t1", once)
    broker.publish("t1", "x")
    assert broker.thread_ids() == []


def test_concurrent_subscribe_unsubscribe_leaves_no_entries():
    broker = ChatBroker()

    def churn(thread_id):
        for _ in range(200):
            unsubscribe = broker.subscribe(thread_id, lambda e: None)
            broker.publish(thread_id, "tick")
            unsubscribe()

    workers = [threading.Thread(target=churn, args=(f"t{i % 3}",)) for i in range(8)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    assert broker.thread_ids() == []
