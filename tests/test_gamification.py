"""Tests for the XP award on task completion."""
from unittest.mock import MagicMock

from pkg.taskboard.gamification import award_completion, is_completion, level_for
from pkg.taskboard.schema import TaskStatus


def test_level_for():
    assert level_for(0) == 1
    assert level_for(99) == 1
    assert level_for(100) == 2
    assert level_for(105) == 2
    assert level_for(250, xp_per_level=50) == 6


def test_completion_is_an_edge():
    assert is_completion(TaskStatus.REVIEW, TaskStatus.DONE)
    assert is_completion(TaskStatus.BACKLOG, TaskStatus.DONE)
    assert not is_completion(TaskStatus.DONE, TaskStatus.DONE)
    assert not is_completion(TaskStatus.DONE, TaskStatus.TODO)
    assert not is_completion(TaskStatus.TODO, None)


def test_award_crosses_level(store):
    store.award_xp("bob", 95, 1)
    task = store.create_task({"title": "Ship", "creator_id": "alice", "assignee_id": "bob",
                              "status": TaskStatus.REVIEW})

    user = award_completion(store, task, TaskStatus.DONE)

    assert user.xp == 105
    assert user.level == 2
    assert store.get_user("bob").xp == 105


def test_already_done_does_not_award_again(store):
    store.award_xp("bob", 95, 1)
    task = store.create_task({"title": "Ship", "creator_id": "alice", "assignee_id": "bob"})
    award_completion(store, task, TaskStatus.DONE)
    done = store.update_task(task.id, {"status": TaskStatus.DONE})

    assert award_completion(store, done, TaskStatus.DONE) is None
    assert store.get_user("bob").xp == 105


def test_leaving_done_keeps_xp(store):
    store.award_xp("bob", 40, 1)
    task = store.create_task({"title": "Reopen", "creator_id": "alice", "assignee_id": "bob",
                              "status": TaskStatus.DONE})
    assert award_completion(store, task, TaskStatus.TODO) is None
    assert store.get_user("bob").xp == 40


def test_unassigned_task_awards_nothing():
    store = MagicMock()
    task = MagicMock(status=TaskStatus.TODO, assignee_id=None)
    assert award_completion(store, task, TaskStatus.DONE) is None
    store.get_user.assert_not_called()
    store.award_xp.assert_not_called()


def test_custom_award_amount(store):
    task = store.create_task({"title": "Big", "creator_id": "alice", "assignee_id": "bob"})
    user = award_completion(store, task, TaskStatus.DONE, award=250)
    assert user.xp == 250
    assert user.level == 3
