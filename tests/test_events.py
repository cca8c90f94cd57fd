"""Tests for the change broadcast hub."""
import json

import pytest
from simple_websocket import ConnectionClosed

from pkg.taskboard import events
from pkg.taskboard.events import EventHub, encode_event


def test_encode_event_shape():
    assert json.loads(encode_event(events.TASK_DELETED, {"id": 4})) == {
        "type": "task_deleted", "payload": {"id": 4},
    }
    assert json.loads(encode_event(events.TASK_UPDATED)) == {"type": "task_updated"}


def test_publish_reaches_every_connection(hub, make_conn):
    a, b = make_conn(), make_conn()
    hub.register(a)
    hub.register(b)

    delivered = hub.publish(events.TASK_CREATED, {"id": 1})

    assert delivered == 2
    for conn in (a, b):
        assert len(conn.sent) == 1
        assert json.loads(conn.sent[0]) == {"type": "task_created", "payload": {"id": 1}}


def test_failed_send_drops_only_that_connection(hub, make_conn):
    good, bad = make_conn(), make_conn(fail_send=True)
    hub.register(good)
    hub.register(bad)

    assert hub.publish(events.TASK_UPDATED, {"id": 2}) == 1
    assert hub.connection_count() == 1

    hub.publish(events.TASK_UPDATED, {"id": 2})
    assert len(good.sent) == 2


def test_publish_with_no_connections(hub):
    assert hub.publish(events.COMMENT_CREATED, {"taskId": 1}) == 0


def test_invalid_event_type_raises(hub, make_conn):
    conn = make_conn()
    hub.register(conn)
    with pytest.raises(ValueError):
        hub.publish("task_exploded", {})
    assert conn.sent == []


def test_subscribers_receive_events(hub):
    seen = []
    hub.subscribe(lambda event_type, payload: seen.append((event_type, payload)))
    hub.publish(events.TASK_DELETED, {"id": 9})
    assert seen == [("task_deleted", {"id": 9})]


def test_subscriber_error_is_swallowed(hub, make_conn):
    conn = make_conn()
    hub.register(conn)

    def broken(event_type, payload):
        raise RuntimeError("boom")

    hub.subscribe(broken)
    assert hub.publish(events.TASK_CREATED, {"id": 1}) == 1


def test_serve_unregisters_on_clean_close(hub, make_conn):
    conn = make_conn(incoming=['{"hello": "server"}', "not json"])
    hub.serve(conn)
    assert hub.connection_count() == 0


def test_serve_unregisters_on_connection_closed(hub, make_conn):
    conn = make_conn(incoming=[ConnectionClosed()])
    hub.serve(conn)
    assert hub.connection_count() == 0


def test_close_closes_all_connections(hub, make_conn):
    a, b = make_conn(), make_conn()
    hub.register(a)
    hub.register(b)
    hub.close()
    assert a.closed and b.closed
    assert hub.connection_count() == 0
