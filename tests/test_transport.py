import pytest

from tag_markers.errors import SubscriptionError
from tag_markers.transport import Topic


def test_publish_reaches_all_subscribers():
    topic = Topic("markers")
    a, b = [], []
    topic.subscribe(a.append)
    topic.subscribe(b.append)

    assert topic.publish("msg") == 2
    assert a == ["msg"] and b == ["msg"]


def test_status_callbacks_follow_subscriber_count():
    counts = []
    topic = Topic(
        "markers",
        on_connect=lambda t: counts.append(('+', t.get_num_subscribers())),
        on_disconnect=lambda t: counts.append(('-', t.get_num_subscribers()))
    )

    s1 = topic.subscribe(lambda m: None)
    s2 = topic.subscribe(lambda m: None)
    s1.shutdown()
    s1.shutdown()
    s2.shutdown()

    assert counts == [('+', 1), ('+', 2), ('-', 1), ('-', 0)]
    assert not s1.active


def test_closed_topic_rejects_subscribers():
    topic = Topic("image")
    received = []
    topic.subscribe(received.append)
    topic.close()

    assert topic.get_num_subscribers() == 0
    assert topic.publish("frame") == 0
    assert received == []
    with pytest.raises(SubscriptionError):
        topic.subscribe(received.append)
