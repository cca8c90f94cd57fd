"""
Board client: HTTP access to the API plus client-side reconciliation.

The client never patches its cache from broadcast payloads. Any task
event invalidates the cached board and the full task list is fetched
again, so what is displayed is always the server's last committed
order. Drag-and-drop moves are shown optimistically and replaced by the
next fetch, which also runs when the server refuses a move.

Components:
    BoardClient - requests wrapper for the JSON API
    BoardSync - cached board, event handling, optimistic moves
    ChannelListener - websocket reader thread with fixed-backoff reconnect
"""
import json
import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import requests
import simple_websocket
from simple_websocket import ConnectionClosed

from .auth import API_KEY_HEADER, USER_HEADER
from .errors import BoardError, InternalError, NotFound, Unauthorized, error_for_status
from .events import COMMENT_CREATED, TASK_EVENTS
from .positions import group_by_status, is_noop_move, locate, move_patch
from .schema import Task, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF = 3.0


class BoardClient:
    """Thin JSON API client. HTTP errors come back as BoardError subclasses."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        api_key: str = "",
        session: Optional[requests.Session] = None,
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({USER_HEADER: user_id})
        if api_key:
            self.session.headers.update({API_KEY_HEADER: api_key})

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            r = self.session.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise InternalError(f"{method} {path} failed: {e}") from e

        if not r.ok:
            try:
                data = r.json()
            except ValueError:
                data = {}
            if not isinstance(data, dict):
                data = {}
            raise error_for_status(
                r.status_code, data.get("message") or r.reason, data.get("errors")
            )
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise InternalError(f"{method} {path} returned a non-JSON body") from e

    # ── Tasks ──

    def list_tasks(
        self,
        project_id: Optional[int] = None,
        assignee_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> List[Task]:
        params = {}
        if project_id is not None:
            params["projectId"] = project_id
        if assignee_id is not None:
            params["assigneeId"] = assignee_id
        if status is not None:
            params["status"] = status.value
        return [Task.from_dict(t) for t in self._request("GET", "/api/tasks", params=params)]

    def get_task(self, task_id: int) -> Task:
        return Task.from_dict(self._request("GET", f"/api/tasks/{task_id}"))

    def create_task(self, fields: Dict[str, Any]) -> Task:
        return Task.from_dict(self._request("POST", "/api/tasks", json=fields))

    def update_task(self, task_id: int, patch: Dict[str, Any]) -> Task:
        return Task.from_dict(self._request("PATCH", f"/api/tasks/{task_id}", json=patch))

    def delete_task(self, task_id: int) -> None:
        self._request("DELETE", f"/api/tasks/{task_id}")

    # ── Comments ──

    def list_comments(self, task_id: int) -> List[dict]:
        return self._request("GET", f"/api/tasks/{task_id}/comments")

    def add_comment(self, task_id: int, content: str) -> dict:
        return self._request("POST", f"/api/tasks/{task_id}/comments", json={"content": content})

    def channel_url(self) -> str:
        """Websocket URL of the broadcast channel."""
        if self.base_url.startswith("https://"):
            url = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            url = "ws://" + self.base_url[len("http://"):]
        else:
            url = self.base_url
        return f"{url}/ws"

    def channel_headers(self) -> Dict[str, str]:
        headers = {USER_HEADER: self.user_id}
        if self.api_key:
            headers[API_KEY_HEADER] = self.api_key
        return headers


class BoardSync:
    """
    Client-side board state kept in step with the server.

    Safe to drive from a UI thread and a ChannelListener thread at once.
    Re-fetches are idempotent, so duplicate or reordered events (for
    example our own broadcast arriving before or after the PATCH
    response) only cost an extra request.
    """

    def __init__(
        self,
        client: BoardClient,
        on_change: Optional[Callable[["BoardSync"], None]] = None,
        on_error: Optional[Callable[[BoardError], None]] = None,
    ):
        self.client = client
        self.on_change = on_change
        self.on_error = on_error
        self.tasks: List[Task] = []
        self.open_task_id: Optional[int] = None
        self.comments: List[dict] = []
        self.needs_login = False
        self._lock = threading.RLock()

    # ── Reads ──

    def columns(self) -> Dict[TaskStatus, List[Task]]:
        with self._lock:
            return group_by_status(self.tasks)

    def refresh(self) -> bool:
        """Replace the cache with the server's task list. Returns False on error."""
        try:
            tasks = self.client.list_tasks()
        except BoardError as e:
            self._report(e)
            return False
        with self._lock:
            self.tasks = tasks
        self._changed()
        return True

    def refresh_comments(self) -> bool:
        task_id = self.open_task_id
        if task_id is None:
            return False
        try:
            comments = self.client.list_comments(task_id)
        except BoardError as e:
            self._report(e)
            return False
        with self._lock:
            # The drawer may have switched tasks while we were fetching
            if self.open_task_id == task_id:
                self.comments = comments
        self._changed()
        return True

    def resync(self) -> None:
        """Full resynchronisation, used after (re)connecting the channel."""
        self.refresh()
        self.refresh_comments()

    def open_task(self, task_id: int) -> None:
        with self._lock:
            self.open_task_id = task_id
            self.comments = []
        self.refresh_comments()

    def close_task(self) -> None:
        with self._lock:
            self.open_task_id = None
            self.comments = []

    # ── Events ──

    def handle_message(self, raw: str) -> None:
        """React to one broadcast message."""
        try:
            message = json.loads(raw)
            event_type = message["type"]
        except (TypeError, ValueError, KeyError) as e:
            logger.debug(f"Ignoring malformed channel message: {e}")
            return

        if event_type in TASK_EVENTS:
            self.refresh()
        elif event_type == COMMENT_CREATED:
            payload = message.get("payload") or {}
            task_id = payload.get("taskId") if isinstance(payload, dict) else None
            if self.open_task_id is not None and task_id in (None, self.open_task_id):
                self.refresh_comments()
        else:
            logger.debug(f"Ignoring unknown event type: {event_type}")

    # ── Moves ──

    def move_task(self, task_id: int, dst_status: TaskStatus, dst_index: int) -> bool:
        """
        Move a card to dst_index (0-based) of dst_status.

        Returns True if the server accepted the move. Dropping a card where
        it already is sends nothing and returns False.
        """
        with self._lock:
            where = locate(group_by_status(self.tasks), task_id)
            if where is None:
                self._report(NotFound(f"Task {task_id} is not on the board"))
                return False
            src_status, src_index = where
            if is_noop_move(src_status, src_index, dst_status, dst_index):
                return False
            patch = move_patch(dst_status, dst_index)
            snapshot = list(self.tasks)
            self.tasks = _apply_local_move(self.tasks, task_id, dst_status, dst_index)
        self._changed()

        try:
            self.client.update_task(
                task_id, {"status": patch["status"].value, "position": patch["position"]}
            )
        except BoardError as e:
            # Other events may have landed during the request; prefer the
            # server's state over the pre-move snapshot
            try:
                tasks = self.client.list_tasks()
            except BoardError:
                tasks = snapshot
            with self._lock:
                self.tasks = tasks
            self._changed()
            self._report(e)
            return False

        self.refresh()
        return True

    # ── Internals ──

    def _changed(self) -> None:
        if self.on_change:
            try:
                self.on_change(self)
            except Exception as e:
                logger.warning(f"Error in board change callback: {e}")

    def _report(self, error: BoardError) -> None:
        if isinstance(error, Unauthorized):
            self.needs_login = True
        logger.warning(f"Board sync error: {error.message}")
        if self.on_error:
            self.on_error(error)

    def listen(self, backoff: float = DEFAULT_BACKOFF) -> "ChannelListener":
        """Start a ChannelListener that feeds this board."""
        listener = ChannelListener(
            self.client.channel_url(),
            on_message=self.handle_message,
            on_connect=self.resync,
            backoff=backoff,
            headers=self.client.channel_headers(),
        )
        listener.start()
        return listener


def _apply_local_move(
    tasks: List[Task], task_id: int, dst_status: TaskStatus, dst_index: int
) -> List[Task]:
    """
    Speculative board after a drop: the card sits at dst_index and the
    affected columns are renumbered locally. Never sent to the server.
    """
    columns = group_by_status(tasks)
    src_status, src_index = locate(columns, task_id)
    card = columns[src_status].pop(src_index)
    dst_col = columns[dst_status]
    dst_col.insert(min(dst_index, len(dst_col)), replace(card, status=dst_status))

    moved = {}
    for status in {src_status, dst_status}:
        for index, task in enumerate(columns[status]):
            moved[task.id] = replace(task, position=index)
    return [moved.get(t.id, t) for t in tasks]


class ChannelListener:
    """
    Reads the broadcast channel on a daemon thread.

    On every successful (re)connect on_connect runs; events missed while
    disconnected are never replayed, so on_connect must resynchronise.
    After the channel drops, waits a fixed backoff and reconnects.
    """

    def __init__(
        self,
        url: str,
        on_message: Callable[[str], None],
        on_connect: Optional[Callable[[], None]] = None,
        backoff: float = DEFAULT_BACKOFF,
        headers: Optional[Dict[str, str]] = None,
        connect: Optional[Callable[..., Any]] = None,
        poll_interval: float = 1.0,
    ):
        self.url = url
        self.on_message = on_message
        self.on_connect = on_connect
        self.backoff = backoff
        self.headers = headers or {}
        self.poll_interval = poll_interval
        self._connect = connect or simple_websocket.Client.connect
        self._stop = threading.Event()
        self.connected = threading.Event()
        self._ws = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="board-channel", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                logger.debug(f"Error closing channel: {e}")
        if self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                ws = self._connect(self.url, headers=self.headers)
            except Exception as e:
                logger.info(f"Channel connect to {self.url} failed ({e}), retrying in {self.backoff}s")
                self._stop.wait(self.backoff)
                continue

            self._ws = ws
            self.connected.set()
            logger.info(f"Channel connected: {self.url}")
            self._dispatch(self.on_connect)
            try:
                while not self._stop.is_set():
                    data = ws.receive(timeout=self.poll_interval)
                    if data is not None:
                        self._dispatch(self.on_message, data)
            except ConnectionClosed:
                logger.info("Channel closed by server")
            finally:
                self.connected.clear()
                self._ws = None
                try:
                    ws.close()
                except Exception as e:
                    logger.debug(f"Error closing channel: {e}")

            if not self._stop.is_set():
                self._stop.wait(self.backoff)

    @staticmethod
    def _dispatch(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"Channel callback error: {e}")
