"""
Completion status, eligibility rules and activity filtering.
"""

import asyncio

import pytest

from engage.core.cache_reader import CacheReader
from engage.core.completion import (
    APPROVED_TASK_REASON,
    FORM_DONE_REASON,
    PENDING_TASK_REASON,
    QUIZ_DONE_REASON,
    CompletionManager,
    can_approve_submission,
    can_submit_task_from_submissions,
    filter_activities,
)
from engage.core.invalidation import Invalidator
from engage.core.keys import Keys, Paths, full_path


@pytest.fixture
def manager(read_through, cache, clock):
    reader = CacheReader(read_through, cache, clock=clock)
    return CompletionManager(reader, cache, Invalidator(cache), clock=clock)


def _set_completions(read_through, user_id, blob):
    asyncio.run(read_through.set(full_path(Paths.completions(user_id)), blob))


ACTIVITIES = [
    {"id": "t-new", "itemType": "task"},
    {"id": "t-pending", "itemType": "task"},
    {"id": "t-approved", "itemType": "task"},
    {"id": "t-rejected", "itemType": "task"},
    {"id": "q-done", "itemType": "quiz"},
    {"quizId": "q-new", "itemType": "quiz"},
    {"id": "f-done", "type": "form"},
]

STATUS = {
    "tasks": {
        "t-pending": {"completed": True, "status": "pending"},
        "t-approved": {"completed": True, "status": "approved"},
        "t-rejected": {"completed": True, "status": "rejected"},
    },
    "quizzes": {"q-done": {"completed": True, "score": 4}},
    "forms": {"f-done": {"completed": True}},
}


class TestFilterActivities:

    def test_pending_view(self):
        pending = filter_activities(ACTIVITIES, STATUS, "pending")
        ids = [a.get("id") or a.get("quizId") for a in pending]
        assert ids == ["t-new", "t-rejected", "q-new"]

    def test_completed_view(self):
        completed = filter_activities(ACTIVITIES, STATUS, "completed")
        assert [a["id"] for a in completed] == ["t-approved", "q-done", "f-done"]

    def test_pending_task_is_in_neither_view(self):
        pending = filter_activities(ACTIVITIES, STATUS, "pending")
        completed = filter_activities(ACTIVITIES, STATUS, "completed")
        assert all(a.get("id") != "t-pending" for a in pending + completed)

    def test_non_list_input(self):
        assert filter_activities(None, STATUS) == []
        assert filter_activities({"id": "t1"}, STATUS) == []
        assert filter_activities("tasks", STATUS) == []

    def test_missing_status_means_all_pending(self):
        assert len(filter_activities(ACTIVITIES, None, "pending")) == len(ACTIVITIES)

    def test_available_as_static_method(self):
        assert CompletionManager.filter_activities(ACTIVITIES, STATUS, "completed")


class TestSubmissionHelpers:

    def test_task_from_submissions(self):
        submissions = [
            {"taskId": "t1", "status": "rejected"},
            {"taskId": "t2", "status": "pending"},
            {"taskId": "t3", "status": "approved"},
        ]
        assert can_submit_task_from_submissions(submissions, "t1").allowed
        assert can_submit_task_from_submissions(submissions, "t2").reason == PENDING_TASK_REASON
        assert can_submit_task_from_submissions(submissions, "t3").reason == APPROVED_TASK_REASON
        assert can_submit_task_from_submissions(None, "t1").allowed

    def test_can_approve_submission(self):
        assert not can_approve_submission(None)
        assert can_approve_submission({"status": "approved"}).reason == "This submission has already been approved"
        assert can_approve_submission({"status": "pending"})
        assert can_approve_submission({"status": "rejected"})


class TestCompletionManager:

    def test_task_eligibility_follows_status(self, manager, read_through):
        _set_completions(read_through, "u1", STATUS)

        async def scenario():
            return (
                await manager.can_submit_task("u1", "t-new"),
                await manager.can_submit_task("u1", "t-pending"),
                await manager.can_submit_task("u1", "t-approved"),
                await manager.can_submit_task("u1", "t-rejected"),
            )

        new, pending, approved, rejected = asyncio.run(scenario())
        assert new.allowed and new.reason == ""
        assert (pending.allowed, pending.reason) == (False, PENDING_TASK_REASON)
        assert (approved.allowed, approved.reason) == (False, APPROVED_TASK_REASON)
        assert rejected.allowed

    def test_quiz_and_form_completion_is_binary(self, manager, read_through):
        _set_completions(read_through, "u1", STATUS)

        async def scenario():
            return (
                await manager.can_start_quiz("u1", "q-done"),
                await manager.can_start_quiz("u1", "q-new"),
                await manager.can_submit_form("u1", "f-done"),
                await manager.eligibility("u1", "forms", "f-other"),
            )

        quiz_done, quiz_new, form_done, form_other = asyncio.run(scenario())
        assert quiz_done.reason == QUIZ_DONE_REASON
        assert quiz_new.allowed
        assert form_done.reason == FORM_DONE_REASON
        assert form_other.allowed

    def test_eligibility_is_read_fresh(self, manager, read_through):
        _set_completions(read_through, "u1", {"tasks": {}})
        assert asyncio.run(manager.can_submit_task("u1", "t1")).allowed

        _set_completions(read_through, "u1", {"tasks": {"t1": {"completed": True, "status": "pending"}}})
        assert not asyncio.run(manager.can_submit_task("u1", "t1")).allowed

    def test_local_mark_blocks_before_aggregation(self, manager, clock):
        record = manager.mark_completed_locally("u1", "quiz", "q1", {"score": 3})

        assert record == {"completed": True, "score": 3, "lastUpdated": clock()}
        result = asyncio.run(manager.can_start_quiz("u1", "q1"))
        assert result.reason == QUIZ_DONE_REASON

    def test_newer_authoritative_record_wins(self, manager, read_through, clock):
        manager.mark_completed_locally("u1", "task", "t1", {"status": "pending"})
        _set_completions(read_through, "u1", {
            "tasks": {"t1": {"completed": True, "status": "rejected", "lastUpdated": clock() + 1}}
        })

        assert asyncio.run(manager.can_submit_task("u1", "t1")).allowed

    def test_older_authoritative_record_loses(self, manager, read_through, clock):
        _set_completions(read_through, "u1", {"tasks": {}})
        clock.advance(100)
        manager.mark_completed_locally("u1", "task", "t1", {"status": "pending"})
        _set_completions(read_through, "u1", {
            "tasks": {"t1": {"completed": True, "status": "rejected", "lastUpdated": clock() - 50}}
        })

        assert asyncio.run(manager.can_submit_task("u1", "t1")).reason == PENDING_TASK_REASON

    def test_unavailable_store_allows_with_empty_status(self, manager, read_through):
        read_through.available = False
        status = asyncio.run(manager.completion_status("u1"))
        assert status["error"]
        assert asyncio.run(manager.is_completed("u1", "quiz", "q1")) is None

    def test_clear_completion_caches(self, manager, cache):
        cache.set(Keys.completions("u1"), {"tasks": {}})
        cleared = manager.clear_completion_caches("u1", "task", "t1")

        assert Keys.completions("u1").render() in cleared
        assert cache.get(Keys.completions("u1")) is None
