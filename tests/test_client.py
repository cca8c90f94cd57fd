"""
Tests for the board client: HTTP wrapper, reconciliation and the
reconnecting channel listener.
"""
import json
import queue
import threading
from unittest.mock import MagicMock

import pytest
from simple_websocket import ConnectionClosed

from pkg.taskboard.client import BoardClient, BoardSync, ChannelListener
from pkg.taskboard.errors import InternalError, InvalidInput, NotFound, Unauthorized
from pkg.taskboard.schema import Task, TaskStatus


def card(task_id, status=TaskStatus.TODO, position=0):
    return Task(id=task_id, title=f"T{task_id}", creator_id="alice", status=status, position=position)


def response(status=200, body=None):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.reason = "Reason"
    r.content = b"" if body is None else json.dumps(body).encode()
    r.json.return_value = body
    if body is None:
        r.json.side_effect = ValueError("no body")
    return r


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BoardClient
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBoardClient:

    def make(self, *responses, **kwargs):
        session = MagicMock()
        session.headers = {}
        session.request.side_effect = list(responses)
        return BoardClient("http://board.local:3000/", "bob", session=session, **kwargs), session

    def test_identity_headers(self):
        client, session = self.make(api_key="k")
        assert session.headers == {"X-User-Id": "bob", "X-API-Key": "k"}
        assert client.channel_headers() == {"X-User-Id": "bob", "X-API-Key": "k"}

    def test_list_tasks_sends_filters(self):
        client, session = self.make(response(200, [card(1).to_dict()]))
        tasks = client.list_tasks(assignee_id="bob", status=TaskStatus.DONE)

        assert [t.id for t in tasks] == [1]
        method, url = session.request.call_args[0]
        assert (method, url) == ("GET", "http://board.local:3000/api/tasks")
        assert session.request.call_args[1]["params"] == {"assigneeId": "bob", "status": "done"}

    def test_delete_returns_none_on_204(self):
        client, _ = self.make(response(204))
        assert client.delete_task(3) is None

    def test_error_status_maps_to_board_error(self):
        client, _ = self.make(response(400, {"error": "invalid_input", "message": "Invalid data",
                                             "errors": [{"field": "title", "message": "Required"}]}))
        with pytest.raises(InvalidInput) as exc:
            client.create_task({})
        assert exc.value.errors == [{"field": "title", "message": "Required"}]

    def test_unauthorized(self):
        client, _ = self.make(response(401, {"error": "unauthorized", "message": "Unauthorized"}))
        with pytest.raises(Unauthorized):
            client.get_task(1)

    def test_non_json_error_body(self):
        client, _ = self.make(response(502))
        with pytest.raises(InternalError) as exc:
            client.get_task(1)
        assert exc.value.message == "Reason"

    def test_list_error_body(self):
        client, _ = self.make(response(400, ["not", "an", "object"]))
        with pytest.raises(InvalidInput) as exc:
            client.create_task({})
        assert exc.value.message == "Reason"

    def test_non_json_success_body(self):
        r = response(200)
        r.content = b"<html>proxy page</html>"
        client, _ = self.make(r)
        with pytest.raises(InternalError):
            client.get_task(1)

    def test_network_failure(self):
        import requests
        session = MagicMock()
        session.headers = {}
        session.request.side_effect = requests.ConnectionError("refused")
        client = BoardClient("http://board.local", "bob", session=session)
        with pytest.raises(InternalError):
            client.list_tasks()

    def test_channel_url(self):
        assert BoardClient("http://h:3000", "u", session=MagicMock()).channel_url() == "ws://h:3000/ws"
        assert BoardClient("https://h", "u", session=MagicMock()).channel_url() == "wss://h/ws"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BoardSync
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def api():
    api = MagicMock(spec=BoardClient)
    api.list_tasks.return_value = [
        card(1, TaskStatus.TODO, 1),
        card(2, TaskStatus.TODO, 2),
        card(3, TaskStatus.DONE, 1),
    ]
    api.list_comments.return_value = []
    return api


@pytest.fixture
def sync(api):
    sync = BoardSync(api, on_error=MagicMock())
    sync.refresh()
    api.list_tasks.reset_mock()
    return sync


def test_refresh_fills_columns(sync):
    columns = sync.columns()
    assert [t.id for t in columns[TaskStatus.TODO]] == [1, 2]
    assert [t.id for t in columns[TaskStatus.DONE]] == [3]
    assert columns[TaskStatus.REVIEW] == []


def test_task_event_triggers_refetch(sync, api):
    for event in ("task_created", "task_updated", "task_deleted"):
        sync.handle_message(json.dumps({"type": event, "payload": {"id": 1}}))
    assert api.list_tasks.call_count == 3


def test_payload_is_never_applied_directly(sync, api):
    sync.handle_message(json.dumps({"type": "task_updated",
                                    "payload": {"id": 1, "title": "from payload"}}))
    assert sync.columns()[TaskStatus.TODO][0].title == "T1"


def test_comment_event_refreshes_open_task_only(sync, api):
    sync.handle_message(json.dumps({"type": "comment_created", "payload": {"taskId": 1}}))
    api.list_comments.assert_not_called()

    sync.open_task(1)
    api.list_comments.reset_mock()
    sync.handle_message(json.dumps({"type": "comment_created", "payload": {"taskId": 2}}))
    api.list_comments.assert_not_called()

    api.list_comments.return_value = [{"id": 9, "content": "hi"}]
    sync.handle_message(json.dumps({"type": "comment_created", "payload": {"taskId": 1}}))
    api.list_comments.assert_called_once_with(1)
    assert sync.comments == [{"id": 9, "content": "hi"}]
    api.list_tasks.assert_not_called()


def test_malformed_and_unknown_messages_are_ignored(sync, api):
    sync.handle_message("not json")
    sync.handle_message(json.dumps({"payload": {}}))
    sync.handle_message(json.dumps({"type": "project_created"}))
    api.list_tasks.assert_not_called()
    api.list_comments.assert_not_called()


def test_move_sends_status_and_index(sync, api):
    assert sync.move_task(3, TaskStatus.TODO, 0) is True
    api.update_task.assert_called_once_with(3, {"status": "todo", "position": 0})
    api.list_tasks.assert_called_once()


def test_move_is_shown_optimistically(api):
    seen = []
    sync = BoardSync(api, on_change=lambda s: seen.append([t.id for t in s.columns()[TaskStatus.TODO]]))
    sync.refresh()
    seen.clear()

    sync.move_task(3, TaskStatus.TODO, 0)
    # first change is the local move, before the server round-trip
    assert seen[0] == [3, 1, 2]


def test_drop_in_place_sends_nothing(sync, api):
    assert sync.move_task(2, TaskStatus.TODO, 1) is False
    api.update_task.assert_not_called()


def test_rejected_move_rolls_back(sync, api):
    api.update_task.side_effect = InvalidInput("Invalid data")
    assert sync.move_task(1, TaskStatus.REVIEW, 0) is False

    columns = sync.columns()
    assert [t.id for t in columns[TaskStatus.TODO]] == [1, 2]
    assert columns[TaskStatus.REVIEW] == []
    sync.on_error.assert_called_once()


def test_rejected_move_keeps_events_seen_meanwhile(sync, api):
    fresh = [card(1, TaskStatus.TODO, 1), card(2, TaskStatus.TODO, 2),
             card(3, TaskStatus.DONE, 1), card(7, TaskStatus.TODO, 3)]

    def patch_then_fail(task_id, patch):
        # another client created task 7 while our PATCH was in flight
        api.list_tasks.return_value = fresh
        sync.handle_message(json.dumps({"type": "task_created", "payload": {"id": 7}}))
        raise InvalidInput("Invalid data")

    api.update_task.side_effect = patch_then_fail
    assert sync.move_task(1, TaskStatus.REVIEW, 0) is False

    assert [t.id for t in sync.columns()[TaskStatus.TODO]] == [1, 2, 7]
    assert sync.columns()[TaskStatus.REVIEW] == []


def test_rejected_move_restores_snapshot_when_offline(sync, api):
    api.update_task.side_effect = InvalidInput("Invalid data")
    api.list_tasks.side_effect = InternalError("GET /api/tasks failed")

    assert sync.move_task(1, TaskStatus.REVIEW, 0) is False

    assert [t.id for t in sync.columns()[TaskStatus.TODO]] == [1, 2]
    assert sync.columns()[TaskStatus.REVIEW] == []
    sync.on_error.assert_called_once()


def test_move_of_unknown_card(sync, api):
    assert sync.move_task(99, TaskStatus.DONE, 0) is False
    assert isinstance(sync.on_error.call_args[0][0], NotFound)
    api.update_task.assert_not_called()


def test_unauthorized_sets_needs_login(sync, api):
    api.list_tasks.side_effect = Unauthorized("Unauthorized")
    assert sync.refresh() is False
    assert sync.needs_login is True
    assert [t.id for t in sync.columns()[TaskStatus.TODO]] == [1, 2]


def test_resync_refreshes_tasks_and_open_comments(sync, api):
    sync.open_task(2)
    api.list_comments.reset_mock()
    sync.resync()
    api.list_tasks.assert_called_once()
    api.list_comments.assert_called_once_with(2)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ChannelListener
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class QueueConnection:
    """Websocket stand-in fed from a queue; ConnectionClosed items end it."""

    def __init__(self, items):
        self.items = queue.Queue()
        for item in items:
            self.items.put(item)
        self.closed = False

    def receive(self, timeout=None):
        try:
            item = self.items.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


def test_listener_reconnects_after_close():
    first = QueueConnection(['{"type": "task_created"}', ConnectionClosed()])
    second = QueueConnection(['{"type": "task_deleted"}'])
    conns = iter([first, second])
    received, connects = [], []
    done = threading.Event()

    def on_message(raw):
        received.append(json.loads(raw)["type"])
        if len(received) == 2:
            done.set()

    listener = ChannelListener(
        "ws://board.local/ws",
        on_message=on_message,
        on_connect=lambda: connects.append(True),
        backoff=0.01,
        poll_interval=0.05,
        connect=lambda url, headers: next(conns),
    )
    listener.start()
    try:
        assert done.wait(5)
    finally:
        listener.stop()

    assert received == ["task_created", "task_deleted"]
    assert len(connects) == 2
    assert first.closed


def test_listener_retries_failed_connect():
    attempts = []
    ready = threading.Event()

    def connect(url, headers):
        attempts.append(headers)
        if len(attempts) < 3:
            raise ConnectionRefusedError("not yet")
        ready.set()
        return QueueConnection([])

    listener = ChannelListener("ws://board.local/ws", on_message=lambda raw: None,
                               backoff=0.01, poll_interval=0.05,
                               headers={"X-User-Id": "bob"}, connect=connect)
    listener.start()
    try:
        assert ready.wait(5)
        assert listener.connected.wait(5)
    finally:
        listener.stop()

    assert len(attempts) == 3
    assert attempts[0] == {"X-User-Id": "bob"}
    assert not listener.connected.is_set()


def test_callback_errors_do_not_kill_listener():
    done = threading.Event()
    calls = []

    def on_message(raw):
        calls.append(raw)
        if len(calls) == 1:
            raise RuntimeError("handler bug")
        done.set()

    conn = QueueConnection(["a", "b"])
    listener = ChannelListener("ws://x/ws", on_message=on_message, backoff=0.01,
                               poll_interval=0.05, connect=lambda url, headers: conn)
    listener.start()
    try:
        assert done.wait(5)
    finally:
        listener.stop()
    assert calls == ["a", "b"]
