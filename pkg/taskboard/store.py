"""
Task board storage backend (SQLite).

Owns the canonical task, user, project and comment records. The store
serializes writes at the SQLite level; each public method is one
transaction. Storage failures are logged and re-raised as StoreError.
"""
import sqlite3
import json
import logging
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any
from datetime import datetime

from .errors import InvalidInput, NotFound, StoreError
from .positions import next_position
from .schema import (
    Comment, Project, Task, TaskPriority, TaskStatus, User,
    DEFAULT_PROJECT_COLOR, utc_now,
)

logger = logging.getLogger(__name__)

# Columns a task patch may touch
TASK_FIELDS = (
    "title", "description", "status", "priority", "due_date", "position",
    "project_id", "assignee_id", "labels",
)
PROJECT_FIELDS = ("name", "description", "color")


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _to_column(value: Any) -> Any:
    """Convert a Python value into what SQLite stores."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    if isinstance(value, bool):
        return 1 if value else 0
    return value


class TaskStore:
    """SQLite-backed store for the task board."""

    def __init__(self, db_path: str = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "taskboard.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _transaction(self, action: str, immediate: bool = False):
        """One connection, one transaction; sqlite errors become StoreError."""
        conn = _connect(self.db_path)
        try:
            with conn:
                if immediate:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Error {action}: {e}")
            raise StoreError(f"Storage failure while {action}") from e
        finally:
            conn.close()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._transaction("creating schema") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE,
                    first_name TEXT,
                    last_name TEXT,
                    profile_image_url TEXT,
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    is_approved INTEGER NOT NULL DEFAULT 0,
                    xp INTEGER NOT NULL DEFAULT 0 CHECK (xp >= 0),
                    level INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT,
                    color TEXT NOT NULL DEFAULT '{DEFAULT_PROJECT_COLOR}',
                    owner_id TEXT NOT NULL REFERENCES users(id),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'backlog',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    due_date TEXT,
                    position INTEGER NOT NULL DEFAULT 0,
                    project_id INTEGER REFERENCES projects(id) ON DELETE CASCADE,
                    assignee_id TEXT REFERENCES users(id),
                    creator_id TEXT NOT NULL REFERENCES users(id),
                    labels TEXT NOT NULL DEFAULT '[]',  -- JSON list
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS comments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content TEXT NOT NULL,
                    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                    author_id TEXT NOT NULL REFERENCES users(id),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_position ON tasks(status, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks(assignee_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_comments_task ON comments(task_id, created_at)")

    # ── Tasks ────────────────────────────────────────────────────────────

    def create_task(self, data: Dict[str, Any]) -> Task:
        """
        Insert a new task at the end of its status column.

        Any position in data is ignored; the store assigns max + 1 for the
        task's status inside the same write transaction.
        """
        missing = [f for f in ("title", "creator_id") if not data.get(f)]
        if missing:
            raise InvalidInput(
                "Missing required fields",
                errors=[{"field": f, "message": "Required"} for f in missing],
            )

        status = data.get("status") or TaskStatus.BACKLOG
        now = utc_now().isoformat()
        values = {
            "title": data["title"],
            "description": data.get("description"),
            "status": status,
            "priority": data.get("priority") or TaskPriority.MEDIUM,
            "due_date": data.get("due_date"),
            "project_id": data.get("project_id"),
            "assignee_id": data.get("assignee_id"),
            "creator_id": data["creator_id"],
            "labels": data.get("labels") or [],
        }

        with self._transaction("creating task", immediate=True) as conn:
            max_pos = self._max_position(conn, _to_column(status))
            values["position"] = next_position(max_pos)
            columns = list(values) + ["created_at", "updated_at"]
            params = [_to_column(values[c]) for c in values] + [now, now]
            cur = conn.execute(
                f"INSERT INTO tasks ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                params,
            )
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (cur.lastrowid,)).fetchone()
        return Task.from_row(dict(row))

    def update_task(self, task_id: int, patch: Dict[str, Any]) -> Task:
        """Apply a partial update. Raises NotFound for unknown ids."""
        self._check_task_fields(patch)
        with self._transaction(f"updating task {task_id}") as conn:
            row = self._apply_patch(conn, task_id, patch)
        return Task.from_row(dict(row))

    def insert_task(self, task_id: int, patch: Dict[str, Any]) -> Task:
        """
        Apply a move patch with insert semantics.

        patch["position"] is a 0-based index into the destination column.
        The moved task is placed there and the whole column is renumbered
        0..n-1, all in one write transaction.
        """
        self._check_task_fields(patch)
        index = patch["position"]
        with self._transaction(f"inserting task {task_id}", immediate=True) as conn:
            row = self._apply_patch(conn, task_id, patch)
            siblings = [
                r[0] for r in conn.execute(
                    "SELECT id FROM tasks WHERE status = ? AND id != ? "
                    "ORDER BY position ASC, id ASC",
                    (row["status"], task_id),
                )
            ]
            siblings.insert(min(index, len(siblings)), task_id)
            conn.executemany(
                "UPDATE tasks SET position = ? WHERE id = ?",
                [(pos, tid) for pos, tid in enumerate(siblings)],
            )
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return Task.from_row(dict(row))

    @staticmethod
    def _check_task_fields(patch: Dict[str, Any]) -> None:
        unknown = set(patch) - set(TASK_FIELDS)
        if unknown:
            raise InvalidInput(f"Unknown task fields: {', '.join(sorted(unknown))}")

    @staticmethod
    def _apply_patch(conn: sqlite3.Connection, task_id: int, patch: Dict[str, Any]) -> sqlite3.Row:
        assignments = [f"{key} = ?" for key in patch] + ["updated_at = ?"]
        params = [_to_column(v) for v in patch.values()] + [utc_now().isoformat(), task_id]
        cur = conn.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params
        )
        if cur.rowcount == 0:
            raise NotFound(f"Task {task_id} not found")
        return conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

    def delete_task(self, task_id: int) -> bool:
        """Delete a task and (by cascade) its comments. Returns whether a row existed."""
        with self._transaction(f"deleting task {task_id}") as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return cur.rowcount > 0

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._transaction(f"retrieving task {task_id}") as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return Task.from_row(dict(row)) if row else None

    def get_tasks(
        self,
        project_id: Optional[int] = None,
        assignee_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> List[Task]:
        """List tasks matching every given filter, ordered by position then id."""
        clauses, params = [], []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if assignee_id is not None:
            clauses.append("assignee_id = ?")
            params.append(assignee_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(_to_column(status))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction("listing tasks") as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks {where} ORDER BY position ASC, id ASC", params
            ).fetchall()
        return [Task.from_row(dict(r)) for r in rows]

    def get_tasks_detailed(self, **filters) -> List[Dict[str, Any]]:
        """get_tasks in wire form with the assignee and project records embedded."""
        tasks = self.get_tasks(**filters)
        users = self._lookup("users", {t.assignee_id for t in tasks if t.assignee_id})
        projects = self._lookup("projects", {t.project_id for t in tasks if t.project_id})
        result = []
        for task in tasks:
            data = task.to_dict()
            assignee = users.get(task.assignee_id)
            project = projects.get(task.project_id)
            data["assignee"] = User.from_row(assignee).to_dict() if assignee else None
            data["project"] = Project.from_row(project).to_dict() if project else None
            result.append(data)
        return result

    def _lookup(self, table: str, ids: set) -> Dict[Any, Dict[str, Any]]:
        """Fetch rows of table by primary key, keyed by id."""
        if not ids:
            return {}
        with self._transaction(f"looking up {table}") as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE id IN ({', '.join('?' for _ in ids)})",
                list(ids),
            ).fetchall()
        return {r["id"]: dict(r) for r in rows}

    def get_max_position(self, status: TaskStatus) -> int:
        """Highest position used in a status column, 0 when the column is empty."""
        with self._transaction(f"reading max position for {status}") as conn:
            return self._max_position(conn, _to_column(status))

    @staticmethod
    def _max_position(conn: sqlite3.Connection, status: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(position), 0) FROM tasks WHERE status = ?", (status,)
        ).fetchone()
        return row[0]

    def count_tasks(self) -> int:
        with self._transaction("counting tasks") as conn:
            return conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]

    # ── Users ────────────────────────────────────────────────────────────

    def upsert_user(self, user: User) -> User:
        """Insert or update profile and role fields. XP and level are left alone on update."""
        now = utc_now().isoformat()
        with self._transaction(f"saving user {user.id}") as conn:
            conn.execute("""
                INSERT INTO users
                (id, email, first_name, last_name, profile_image_url,
                 is_admin, is_approved, xp, level, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email=excluded.email,
                    first_name=excluded.first_name,
                    last_name=excluded.last_name,
                    profile_image_url=excluded.profile_image_url,
                    is_admin=excluded.is_admin,
                    is_approved=excluded.is_approved,
                    updated_at=excluded.updated_at
            """, (
                user.id, user.email, user.first_name, user.last_name,
                user.profile_image_url, int(user.is_admin), int(user.is_approved),
                user.xp, user.level, now, now,
            ))
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user.id,)).fetchone()
        return User.from_row(dict(row))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._transaction(f"retrieving user {user_id}") as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(dict(row)) if row else None

    def list_users(self) -> List[User]:
        with self._transaction("listing users") as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY first_name ASC, id ASC"
            ).fetchall()
        return [User.from_row(dict(r)) for r in rows]

    def award_xp(self, user_id: str, xp: int, level: int) -> Optional[User]:
        """Persist new gamification counters for a user."""
        with self._transaction(f"awarding xp to {user_id}") as conn:
            cur = conn.execute(
                "UPDATE users SET xp = ?, level = ?, updated_at = ? WHERE id = ?",
                (xp, level, utc_now().isoformat(), user_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(dict(row))

    def get_leaderboard(self, limit: int = 10) -> List[User]:
        with self._transaction("reading leaderboard") as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY xp DESC, id ASC LIMIT ?", (limit,)
            ).fetchall()
        return [User.from_row(dict(r)) for r in rows]

    # ── Projects ─────────────────────────────────────────────────────────

    def create_project(self, data: Dict[str, Any]) -> Project:
        now = utc_now().isoformat()
        with self._transaction("creating project") as conn:
            cur = conn.execute(
                "INSERT INTO projects (name, description, color, owner_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (data["name"], data.get("description"),
                 data.get("color") or DEFAULT_PROJECT_COLOR, data["owner_id"], now, now),
            )
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (cur.lastrowid,)).fetchone()
        return Project.from_row(dict(row))

    def get_project(self, project_id: int) -> Optional[Project]:
        with self._transaction(f"retrieving project {project_id}") as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return Project.from_row(dict(row)) if row else None

    def list_projects(self, owner_id: str) -> List[Project]:
        """Projects owned by a user, newest first."""
        with self._transaction(f"listing projects for {owner_id}") as conn:
            rows = conn.execute(
                "SELECT * FROM projects WHERE owner_id = ? ORDER BY created_at DESC, id DESC",
                (owner_id,),
            ).fetchall()
        return [Project.from_row(dict(r)) for r in rows]

    def update_project(self, project_id: int, patch: Dict[str, Any]) -> Project:
        unknown = set(patch) - set(PROJECT_FIELDS)
        if unknown:
            raise InvalidInput(f"Unknown project fields: {', '.join(sorted(unknown))}")
        assignments = [f"{key} = ?" for key in patch] + ["updated_at = ?"]
        params = list(patch.values()) + [utc_now().isoformat(), project_id]
        with self._transaction(f"updating project {project_id}") as conn:
            cur = conn.execute(
                f"UPDATE projects SET {', '.join(assignments)} WHERE id = ?", params
            )
            if cur.rowcount == 0:
                raise NotFound(f"Project {project_id} not found")
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return Project.from_row(dict(row))

    def delete_project(self, project_id: int) -> bool:
        """Delete a project; its tasks (and their comments) cascade."""
        with self._transaction(f"deleting project {project_id}") as conn:
            cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            return cur.rowcount > 0

    # ── Comments ─────────────────────────────────────────────────────────

    def create_comment(self, data: Dict[str, Any]) -> Comment:
        now = utc_now().isoformat()
        with self._transaction("creating comment") as conn:
            cur = conn.execute(
                "INSERT INTO comments (content, task_id, author_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (data["content"], data["task_id"], data["author_id"], now, now),
            )
            row = conn.execute("SELECT * FROM comments WHERE id = ?", (cur.lastrowid,)).fetchone()
        return Comment.from_row(dict(row))

    def get_comments(self, task_id: int) -> List[Comment]:
        """Comments on a task, oldest first."""
        with self._transaction(f"listing comments for task {task_id}") as conn:
            rows = conn.execute(
                "SELECT * FROM comments WHERE task_id = ? ORDER BY created_at ASC, id ASC",
                (task_id,),
            ).fetchall()
        return [Comment.from_row(dict(r)) for r in rows]

    def get_comments_detailed(self, task_id: int) -> List[Dict[str, Any]]:
        """get_comments in wire form with the author record embedded."""
        comments = self.get_comments(task_id)
        authors = self._lookup("users", {c.author_id for c in comments})
        result = []
        for comment in comments:
            data = comment.to_dict()
            author = authors.get(comment.author_id)
            data["author"] = User.from_row(author).to_dict() if author else None
            result.append(data)
        return result

    def delete_comment(self, comment_id: int) -> bool:
        with self._transaction(f"deleting comment {comment_id}") as conn:
            cur = conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            return cur.rowcount > 0
