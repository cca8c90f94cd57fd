"""
XP awarded when a task is completed.

Only the edge into Done counts: the status the task had before the
update is compared with the requested status. Re-saving a done task,
or moving it out of Done, changes nothing (XP never decreases).
"""
import logging
from typing import Optional

from .schema import Task, TaskStatus, TERMINAL_STATUS, User

logger = logging.getLogger(__name__)

XP_AWARD = 10
XP_PER_LEVEL = 100


def level_for(xp: int, xp_per_level: int = XP_PER_LEVEL) -> int:
    return xp // xp_per_level + 1


def is_completion(before: TaskStatus, requested: Optional[TaskStatus]) -> bool:
    return requested == TERMINAL_STATUS and before != TERMINAL_STATUS


def award_completion(
    store,
    task_before: Task,
    requested_status: Optional[TaskStatus],
    award: int = XP_AWARD,
    xp_per_level: int = XP_PER_LEVEL,
) -> Optional[User]:
    """
    Apply the completion reward for one task update.

    Args:
        store: TaskStore used to read and write the assignee
        task_before: the task as it was before the update was applied
        requested_status: status in the update request (None if absent)

    Returns:
        The updated assignee, or None when nothing was awarded.
    """
    if not is_completion(task_before.status, requested_status):
        return None
    if not task_before.assignee_id:
        return None

    user = store.get_user(task_before.assignee_id)
    if user is None:
        logger.warning(
            f"Task {task_before.id} completed but assignee "
            f"{task_before.assignee_id} does not exist"
        )
        return None

    new_xp = (user.xp or 0) + award
    new_level = level_for(new_xp, xp_per_level)
    updated = store.award_xp(user.id, new_xp, new_level)
    logger.info(
        f"Awarded {award} XP to {user.id} for task {task_before.id} "
        f"(xp={new_xp}, level={new_level})"
    )
    return updated
