"""
Change broadcast: pushes coarse "something changed" notifications to every
connected websocket client.

Messages are JSON objects {type, payload}. The payload is a hint only;
clients re-fetch authoritative state on receipt. Delivery is best-effort:
no backlog, no replay, no self-exclusion. A failed send drops that one
connection and never reaches the code that published the event.

The hub is created by the server factory and passed to the mutation
layer and the websocket route; its lifetime is the server process.
"""
import json
import logging
import threading
from typing import Any, Callable, List

from simple_websocket import ConnectionClosed

logger = logging.getLogger(__name__)

TASK_CREATED = "task_created"
TASK_UPDATED = "task_updated"
TASK_DELETED = "task_deleted"
COMMENT_CREATED = "comment_created"

EVENT_TYPES = {TASK_CREATED, TASK_UPDATED, TASK_DELETED, COMMENT_CREATED}
TASK_EVENTS = {TASK_CREATED, TASK_UPDATED, TASK_DELETED}


def encode_event(event_type: str, payload: Any = None) -> str:
    message = {"type": event_type}
    if payload is not None:
        message["payload"] = payload
    return json.dumps(message)


class EventHub:
    """Registry of live connections plus in-process subscribers."""

    def __init__(self):
        self._connections: set = set()
        self._lock = threading.Lock()
        self.subscribers: List[Callable] = []

    def register(self, conn) -> None:
        with self._lock:
            self._connections.add(conn)
        logger.info(f"Client connected ({self.connection_count()} open)")

    def unregister(self, conn) -> None:
        with self._lock:
            self._connections.discard(conn)
        logger.info(f"Client disconnected ({self.connection_count()} open)")

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def subscribe(self, callback: Callable[[str, Any], None]) -> None:
        """Register an in-process callback(event_type, payload)."""
        self.subscribers.append(callback)

    def publish(self, event_type: str, payload: Any = None) -> int:
        """
        Send one event to every connection. Returns the number of
        connections it was written to.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Invalid event type: {event_type}")

        message = encode_event(event_type, payload)
        with self._lock:
            targets = list(self._connections)

        delivered = 0
        for conn in targets:
            try:
                conn.send(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping connection after failed send: {e}")
                with self._lock:
                    self._connections.discard(conn)

        for callback in self.subscribers:
            try:
                callback(event_type, payload)
            except Exception as e:
                logger.warning(f"Error in {event_type} subscriber: {e}")

        logger.debug(f"Broadcast {event_type} to {delivered}/{len(targets)} clients")
        return delivered

    def serve(self, ws) -> None:
        """
        Handle one websocket connection until the peer goes away.

        Clients have nothing to say on this channel; anything they send is
        parsed and logged only.
        """
        self.register(ws)
        try:
            while True:
                raw = ws.receive()
                if raw is None:
                    break
                try:
                    logger.debug(f"Received client message: {json.loads(raw)}")
                except (TypeError, ValueError):
                    logger.debug("Ignoring malformed client message")
        except ConnectionClosed:
            pass
        finally:
            self.unregister(ws)

    def close(self) -> None:
        """Close every open connection (server shutdown)."""
        with self._lock:
            targets = list(self._connections)
            self._connections.clear()
        for conn in targets:
            try:
                conn.close()
            except Exception as e:
                logger.debug(f"Error closing connection: {e}")
