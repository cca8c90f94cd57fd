"""
Task board schema: tasks, projects, comments and users.

Task workflow (one Kanban column per status):
  Backlog → To Do → In Progress → Review → Done

Done is the terminal status; entering it awards XP to the assignee.
Records serialize to camelCase JSON for the HTTP API and are rebuilt
from snake_case SQLite rows by the store.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import json


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, datetime) else value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (trailing Z allowed) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStatus(Enum):
    """Workflow stages, in board order."""
    BACKLOG = "backlog"
    TODO = "todo"
    INPROGRESS = "inprogress"
    REVIEW = "review"
    DONE = "done"              # Terminal

    @classmethod
    def from_str(cls, value: str) -> "TaskStatus":
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return cls.BACKLOG

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]


STATUS_LABELS = {
    TaskStatus.BACKLOG: "Backlog",
    TaskStatus.TODO: "To Do",
    TaskStatus.INPROGRESS: "In Progress",
    TaskStatus.REVIEW: "Review",
    TaskStatus.DONE: "Done",
}

TERMINAL_STATUS = TaskStatus.DONE


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_str(cls, value: str) -> "TaskPriority":
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return cls.MEDIUM


DEFAULT_PROJECT_COLOR = "#0891b2"


@dataclass
class Task:
    """A single card on the board."""

    id: int
    title: str
    creator_id: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.BACKLOG
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    position: int = 0              # Order within the status column
    project_id: Optional[int] = None
    assignee_id: Optional[str] = None
    labels: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_done(self) -> bool:
        return self.status == TERMINAL_STATUS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "dueDate": _iso(self.due_date),
            "position": self.position,
            "projectId": self.project_id,
            "assigneeId": self.assignee_id,
            "creatorId": self.creator_id,
            "labels": list(self.labels),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Rebuild a task from its wire (camelCase) form."""
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            creator_id=data.get("creatorId", ""),
            description=data.get("description"),
            status=TaskStatus.from_str(data.get("status", "backlog")),
            priority=TaskPriority.from_str(data.get("priority", "medium")),
            due_date=parse_timestamp(data.get("dueDate")),
            position=int(data.get("position") or 0),
            project_id=data.get("projectId"),
            assignee_id=data.get("assigneeId"),
            labels=list(data.get("labels") or []),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
            updated_at=parse_timestamp(data.get("updatedAt")) or utc_now(),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Task":
        """Rebuild a task from a SQLite row."""
        labels = row.get("labels") or "[]"
        if isinstance(labels, str):
            try:
                labels = json.loads(labels)
            except json.JSONDecodeError:
                labels = []
        return cls(
            id=row["id"],
            title=row["title"],
            creator_id=row["creator_id"],
            description=row.get("description"),
            status=TaskStatus(row["status"]),
            priority=TaskPriority(row["priority"]),
            due_date=parse_timestamp(row.get("due_date")),
            position=row["position"],
            project_id=row.get("project_id"),
            assignee_id=row.get("assignee_id"),
            labels=labels,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class Project:
    id: int
    name: str
    owner_id: str
    description: Optional[str] = None
    color: str = DEFAULT_PROJECT_COLOR
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "ownerId": self.owner_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Project":
        return cls(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            description=row.get("description"),
            color=row.get("color") or DEFAULT_PROJECT_COLOR,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class Comment:
    id: int
    content: str
    task_id: int
    author_id: str
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "taskId": self.task_id,
            "authorId": self.author_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Comment":
        return cls(
            id=row["id"],
            content=row["content"],
            task_id=row["task_id"],
            author_id=row["author_id"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class User:
    """Board member with role flags and gamification counters."""

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    is_admin: bool = False
    is_approved: bool = False
    xp: int = 0
    level: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "profileImageUrl": self.profile_image_url,
            "isAdmin": self.is_admin,
            "isApproved": self.is_approved,
            "xp": self.xp,
            "level": self.level,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        return cls(
            id=row["id"],
            email=row.get("email"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            profile_image_url=row.get("profile_image_url"),
            is_admin=bool(row.get("is_admin", 0)),
            is_approved=bool(row.get("is_approved", 0)),
            xp=row.get("xp") or 0,
            level=row.get("level") or 1,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )
