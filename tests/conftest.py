"""Shared fixtures for the task board tests."""

import pytest

from kanban_server import create_app
from pkg.taskboard.config import Config
from pkg.taskboard.events import EventHub
from pkg.taskboard.mutations import BoardService
from pkg.taskboard.schema import User
from pkg.taskboard.store import TaskStore


class FakeConnection:
    """Stands in for a websocket: records what the hub sends."""

    def __init__(self, incoming=None, fail_send=False):
        self.sent = []
        self.incoming = list(incoming or [])
        self.fail_send = fail_send
        self.closed = False

    def send(self, message):
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(message)

    def receive(self, timeout=None):
        if self.incoming:
            item = self.incoming.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return None

    def close(self, reason=None, message=None):
        self.closed = True


@pytest.fixture
def config(tmp_path):
    return Config(db_path=str(tmp_path / "board.db"))


@pytest.fixture
def store(config):
    store = TaskStore(config.db_path)
    store.upsert_user(User(id="alice", first_name="Alice", is_approved=True, is_admin=True))
    store.upsert_user(User(id="bob", first_name="Bob", is_approved=True))
    store.upsert_user(User(id="carol", first_name="Carol", is_approved=False))
    return store


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def service(store, hub, config):
    return BoardService(store, hub, config)


@pytest.fixture
def app(config, store, hub):
    app = create_app(config, store=store, hub=hub)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def as_alice():
    return {"X-User-Id": "alice"}


@pytest.fixture
def as_bob():
    return {"X-User-Id": "bob"}


@pytest.fixture
def make_conn():
    return FakeConnection
