"""
Position assignment for Kanban columns.

A column is the set of tasks sharing one status. Positions only need to
order a column, they are not kept contiguous:

  create → append: max(position in column) + 1
  move   → the client's 0-based drop index, written verbatim

Two moves into the same column/index can leave duplicate positions, so
every read orders by (position, id).
"""
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .schema import Task, TaskStatus


class PositionMode(Enum):
    """How a move treats the other tasks in the destination column."""
    OVERWRITE = "overwrite"   # set the moved task's position, touch nothing else
    INSERT = "insert"         # shift siblings at >= index down by one first

    @classmethod
    def from_str(cls, value: str) -> "PositionMode":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Invalid position mode: {value!r}. "
                f"Allowed: {', '.join(m.value for m in cls)}"
            )


def next_position(max_position: Optional[int]) -> int:
    """Position for a task appended to a column whose highest position is max_position."""
    return (max_position or 0) + 1


def column_sort_key(task: Task):
    return (task.position, task.id)


def order_column(tasks: Iterable[Task]) -> List[Task]:
    """Tasks in display order; equal positions fall back to id."""
    return sorted(tasks, key=column_sort_key)


def group_by_status(tasks: Iterable[Task]) -> Dict[TaskStatus, List[Task]]:
    """Split tasks into ordered columns, one per status (empty columns included)."""
    columns: Dict[TaskStatus, List[Task]] = {status: [] for status in TaskStatus}
    for task in tasks:
        columns[task.status].append(task)
    return {status: order_column(col) for status, col in columns.items()}


def is_noop_move(
    src_status: TaskStatus, src_index: int,
    dst_status: TaskStatus, dst_index: int,
) -> bool:
    """Dropping a card back where it was does not warrant a request."""
    return src_status == dst_status and src_index == dst_index


def move_patch(dst_status: TaskStatus, dst_index: int) -> dict:
    """Partial update for a drag-and-drop move."""
    if dst_index < 0:
        raise ValueError(f"Drop index must be >= 0, got {dst_index}")
    return {"status": dst_status, "position": dst_index}


def locate(columns: Dict[TaskStatus, List[Task]], task_id: int):
    """Return (status, index) of task_id within grouped columns, or None."""
    for status, col in columns.items():
        for index, task in enumerate(col):
            if task.id == task_id:
                return status, index
    return None
