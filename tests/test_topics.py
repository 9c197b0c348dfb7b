import threading

from transitcast.realtime.clock import ManualClock
from transitcast.realtime.topics import FEEDBACK_TOPIC, TopicRegistry, topic_name_for


def test_ensure_topic_is_idempotent():
    clock = ManualClock()
    registry = TopicRegistry(clock=clock)

    first = registry.ensure_topic("R1")
    clock.advance(60)
    second = registry.ensure_topic("R1")

    assert first.topic_name == "route_R1"
    assert second.created_at == first.created_at
    assert second.subscribers == frozenset()


def test_subscribe_creates_topic_lazily():
    registry = TopicRegistry()
    assert registry.get_topic("R1") is None

    assert registry.subscribe("R1", "c1") is True
    assert registry.subscribe("R1", "c1") is False
    assert registry.subscribers_of("R1") == frozenset({"c1"})


def test_unsubscribe_non_member_is_noop():
    registry = TopicRegistry()
    registry.subscribe("R1", "c1")

    assert registry.unsubscribe("R1", "c2") is False
    assert registry.unsubscribe("R9", "c1") is False
    assert registry.subscribers_of("R1") == frozenset({"c1"})


def test_empty_topic_stays_registered():
    registry = TopicRegistry()
    registry.subscribe("R1", "c1")
    registry.unsubscribe("R1", "c1")

    topic = registry.get_topic("R1")
    assert topic is not None
    assert topic.subscriber_count == 0


def test_subscribers_of_unknown_topic_is_empty():
    assert TopicRegistry().subscribers_of("nope") == frozenset()


def test_snapshot_is_detached_from_registry():
    registry = TopicRegistry()
    registry.subscribe("R1", "c1")
    snapshot = registry.subscribers_of("R1")

    registry.subscribe("R1", "c2")
    assert snapshot == frozenset({"c1"})


def test_reverse_index_and_unsubscribe_all():
    registry = TopicRegistry()
    registry.subscribe("R1", "c1")
    registry.subscribe("R2", "c1")
    registry.subscribe("R2", "c2")

    assert registry.topics_for("c1") == frozenset({"R1", "R2"})
    assert registry.unsubscribe_all("c1") == 2
    assert registry.topics_for("c1") == frozenset()
    assert registry.subscribers_of("R2") == frozenset({"c2"})
    assert registry.unsubscribe_all("c1") == 0


def test_stats():
    registry = TopicRegistry()
    registry.subscribe("R1", "c1")
    registry.subscribe("R1", "c2")
    registry.subscribe("R2", "c1")

    stats = registry.stats()
    assert stats["total_topics"] == 2
    assert stats["total_subscriptions"] == 3
    assert stats["total_clients"] == 2
    assert stats["topics"] == {"route_R1": 2, "route_R2": 1}


def test_feedback_topic_name():
    assert topic_name_for(FEEDBACK_TOPIC) == "feedback"


def test_concurrent_subscriptions_are_all_recorded():
    registry = TopicRegistry()

    def subscribe_many(offset):
        for i in range(200):
            registry.subscribe("R1", f"c{offset + i}")

    threads = [threading.Thread(target=subscribe_many, args=(n * 1000,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(registry.subscribers_of("R1")) == 800
    assert registry.stats()["total_clients"] == 800
