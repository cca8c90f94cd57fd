"""
Board service: the one place where API requests turn into store writes.

Every mutation runs the same pipeline:

    validate body → normalise sentinels → check references
      → store write (position policy on create/move)
      → XP side effect (task updates only, best-effort)
      → broadcast one change event

Validation completes before anything is written. A failure of the
primary write propagates (StoreError → 500). A failure of the XP write
is logged and the request still succeeds; there is no transaction
spanning both writes.
"""
import logging
from typing import Any, Dict, List, Optional

from . import events
from .auth import Identity
from .config import Config
from .errors import Forbidden, InvalidInput, NotFound
from .gamification import award_completion
from .positions import PositionMode
from .schema import Comment, Project, Task, User
from .store import TaskStore
from .validation import (
    COMMENT_SCHEMA, PROJECT_SCHEMA, TASK_CREATE_SCHEMA, TASK_QUERY_SCHEMA,
    TASK_UPDATE_SCHEMA, Validator,
)

logger = logging.getLogger(__name__)


class BoardService:
    """Validates, persists and broadcasts board mutations."""

    def __init__(self, store: TaskStore, hub: events.EventHub, config: Optional[Config] = None):
        self.store = store
        self.hub = hub
        self.config = config or Config()
        self.validator = Validator()

    # ── Tasks ────────────────────────────────────────────────────────────

    def list_tasks(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        # Empty query parameters mean "no filter"
        query = {k: v for k, v in query.items() if v not in ("", None)}
        filters = self.validator.validate(query, TASK_QUERY_SCHEMA, partial=True)
        return self.store.get_tasks_detailed(**filters)

    def get_task(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFound("Task not found")
        return task

    def create_task(self, identity: Identity, body: Any) -> Task:
        data = self.validator.validate(body, TASK_CREATE_SCHEMA)
        # New tasks always go to the end of their column
        data.pop("position", None)
        self._check_references(data)
        data["creator_id"] = identity.id

        task = self.store.create_task(data)
        logger.info(
            f"Task {task.id} created by {identity.id} "
            f"in {task.status.value} at position {task.position}"
        )
        self.hub.publish(events.TASK_CREATED, task.to_dict())
        return task

    def update_task(self, task_id: int, body: Any) -> Task:
        patch = self.validator.validate(body, TASK_UPDATE_SCHEMA, partial=True)

        before = self.store.get_task(task_id)
        if before is None:
            raise NotFound("Task not found")
        self._check_references(patch)

        if "position" in patch and self.config.move_mode == PositionMode.INSERT:
            task = self.store.insert_task(task_id, patch)
        else:
            task = self.store.update_task(task_id, patch)
        self._award_xp(before, patch.get("status"))

        self.hub.publish(events.TASK_UPDATED, task.to_dict())
        return task

    def delete_task(self, task_id: int) -> None:
        existed = self.store.delete_task(task_id)
        if not existed:
            logger.debug(f"Delete of missing task {task_id} treated as success")
        self.hub.publish(events.TASK_DELETED, {"id": task_id})

    def _award_xp(self, before: Task, requested_status) -> None:
        try:
            award_completion(
                self.store, before, requested_status,
                award=self.config.xp_award,
                xp_per_level=self.config.xp_per_level,
            )
        except Exception as e:
            logger.warning(f"XP award for task {before.id} failed, task update kept: {e}")

    def _check_references(self, data: Dict[str, Any]) -> None:
        errors = []
        assignee_id = data.get("assignee_id")
        if assignee_id is not None and self.store.get_user(assignee_id) is None:
            errors.append({"field": "assigneeId", "message": f"Unknown user: {assignee_id}"})
        project_id = data.get("project_id")
        if project_id is not None and self.store.get_project(project_id) is None:
            errors.append({"field": "projectId", "message": f"Unknown project: {project_id}"})
        if errors:
            raise InvalidInput("Invalid data", errors=errors)

    # ── Comments ─────────────────────────────────────────────────────────

    def list_comments(self, task_id: int) -> List[Dict[str, Any]]:
        return self.store.get_comments_detailed(task_id)

    def add_comment(self, identity: Identity, task_id: int, body: Any) -> Comment:
        data = self.validator.validate(body, COMMENT_SCHEMA)
        if self.store.get_task(task_id) is None:
            raise NotFound("Task not found")

        comment = self.store.create_comment({
            "content": data["content"],
            "task_id": task_id,
            "author_id": identity.id,
        })
        self.hub.publish(events.COMMENT_CREATED, comment.to_dict())
        return comment

    def delete_comment(self, comment_id: int) -> None:
        self.store.delete_comment(comment_id)

    # ── Projects ─────────────────────────────────────────────────────────

    def list_projects(self, identity: Identity) -> List[Project]:
        return self.store.list_projects(identity.id)

    def get_project(self, project_id: int) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def create_project(self, identity: Identity, body: Any) -> Project:
        data = self.validator.validate(body, PROJECT_SCHEMA)
        data["owner_id"] = identity.id
        return self.store.create_project(data)

    def update_project(self, identity: Identity, project_id: int, body: Any) -> Project:
        patch = self.validator.validate(body, PROJECT_SCHEMA, partial=True)
        self._check_owner(identity, self.get_project(project_id))
        return self.store.update_project(project_id, patch)

    def delete_project(self, identity: Identity, project_id: int) -> None:
        project = self.store.get_project(project_id)
        if project is None:
            return
        self._check_owner(identity, project)
        self.store.delete_project(project_id)

    @staticmethod
    def _check_owner(identity: Identity, project: Project) -> None:
        if project.owner_id != identity.id and not identity.is_admin:
            raise Forbidden("Only the project owner can change this project")

    # ── Users ────────────────────────────────────────────────────────────

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def leaderboard(self, limit: int = 10) -> List[User]:
        return self.store.get_leaderboard(limit)
