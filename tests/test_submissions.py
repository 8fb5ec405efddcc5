"""
Attendee submission flow against the SQLite durable store, with the local
aggregation stand-in projecting into the read-through store.
"""

import asyncio
import logging

from engage.core.completion import PENDING_TASK_REASON, QUIZ_DONE_REASON
from engage.core.invalidation import MutationEvent
from engage.core.keys import LIST_FACETS, Keys, Paths, full_path
from engage.core.submissions import ALREADY_PROCESSING, score_quiz
from engage.core.types import ActivityType
from conftest import QUIZ


def _pending_ids(services, user_id="u1"):
    items = services.read_through.peek(full_path(Paths.pending_activities(user_id))) or []
    return [item["id"] for item in items]


def test_score_quiz():
    score, graded = score_quiz(QUIZ, {"q-a": "1", "q-b": " paris "})
    assert score == 10
    assert [g["isCorrect"] for g in graded] == [True, True]

    score, graded = score_quiz(QUIZ, {"q-a": 2})
    assert score == 0
    assert graded[1]["answer"] is None


def test_seeded_pending_list(seeded):
    assert sorted(_pending_ids(seeded)) == ["f1", "q1", "t1"]


def test_submit_task(seeded):
    coordinator = seeded.submissions

    async def scenario():
        await coordinator.load_pending("u1")
        first = await coordinator.submit_task("u1", "t1", {"userName": "Alice", "fileURL": "https://x/photo.jpg"})
        second = await coordinator.submit_task("u1", "t1", {"userName": "Alice"})
        eligibility = await seeded.completions.can_submit_task("u1", "t1")
        return first, second, eligibility

    first, second, eligibility = asyncio.run(scenario())

    assert first.ok
    assert first.message == "Submission successful! Waiting for approval."
    submission_id = first.data["submission_id"]
    stored = asyncio.run(seeded.durable.get("submissions", submission_id))
    assert stored["status"] == "pending"
    assert stored["taskId"] == "t1"

    assert second.level == "error"
    assert second.message == PENDING_TASK_REASON
    assert not eligibility.allowed

    # Optimistic view and the aggregated list agree
    assert "t1" not in [i["id"] for i in coordinator.pending_views["u1"]]
    assert "t1" not in _pending_ids(seeded)
    assert seeded.tracker.pending_count() == 0
    assert seeded.durable.count("submissions") == 1


def test_submit_quiz_awards_points(seeded):
    coordinator = seeded.submissions

    async def scenario():
        first = await coordinator.submit_quiz("u1", "q1", {"answers": {"q-a": 1, "q-b": "Paris"}})
        second = await coordinator.submit_quiz("u1", "q1", {"answers": {}})
        user = await seeded.durable.get("users", "u1")
        return first, second, user

    first, second, user = asyncio.run(scenario())

    assert first.ok
    assert first.message == "Quiz submitted! You earned 10 points."
    assert user["points"] == 10
    assert second.level == "info"
    assert second.message == QUIZ_DONE_REASON

    completions = seeded.read_through.peek(full_path(Paths.completions("u1")))
    assert completions["quizzes"]["q1"]["score"] == 10


def test_submit_form_requires_data(seeded):
    async def scenario():
        empty = await seeded.submissions.submit_form("u1", "f1", {"formData": {}})
        filled = await seeded.submissions.submit_form("u1", "f1", {"formData": {"rating": "5"}})
        user = await seeded.durable.get("users", "u1")
        return empty, filled, user

    empty, filled, user = asyncio.run(scenario())

    assert empty.level == "error"
    assert empty.message.startswith("No form data collected")
    assert filled.ok
    assert filled.message == "Form submitted successfully!"
    assert user["points"] == 5


def test_submit_dispatches_by_type(seeded):
    outcome = asyncio.run(seeded.submissions.submit("u1", "forms", "f1", {"formData": {"a": "b"}}))
    assert outcome.message == "Form submitted successfully!"


def test_unknown_activity(seeded):
    outcome = asyncio.run(seeded.submissions.submit_task("u1", "missing"))
    assert outcome.level == "error"
    assert outcome.message == "Task not found"


def test_failed_write_rolls_back(seeded):
    coordinator = seeded.submissions
    seeded.durable.read_only_collections.add("submissions")

    async def scenario():
        await coordinator.load_pending("u1")
        outcome = await coordinator.submit_task("u1", "t1")
        eligibility = await seeded.completions.can_submit_task("u1", "t1")
        return outcome, eligibility

    outcome, eligibility = asyncio.run(scenario())

    assert outcome.level == "error"
    assert outcome.message == "Failed to submit task. Please try again."
    assert "t1" in [i["id"] for i in coordinator.pending_views["u1"]]
    assert seeded.session_cache.get(Keys.optimistic_pending("u1")) is None
    assert seeded.tracker.pending_count() == 0
    assert eligibility.allowed


def test_concurrent_duplicate_submission(seeded):
    coordinator = seeded.submissions
    original_add = seeded.durable.add

    async def scenario():
        gate = asyncio.Event()

        async def gated_add(collection, data):
            await gate.wait()
            return await original_add(collection, data)

        seeded.durable.add = gated_add
        first = asyncio.ensure_future(coordinator.submit_task("u1", "t1"))
        await asyncio.sleep(0)
        busy = coordinator.is_processing("u1", "task", "t1")
        second = await coordinator.submit_task("u1", "t1")
        gate.set()
        return busy, await first, second

    busy, first, second = asyncio.run(scenario())

    assert busy
    assert first.ok
    assert second.level == "info"
    assert second.message == ALREADY_PROCESSING
    assert seeded.durable.count("submissions") == 1
    assert not coordinator.is_processing()


def test_points_failure_still_records_submission(seeded):
    outcome = asyncio.run(seeded.submissions.submit_quiz("ghost", "q1", {"answers": {"q-a": 1}}))

    assert outcome.ok
    assert outcome.message == "Quiz submitted but failed to award points"
    assert seeded.durable.count("submissions") == 1


def test_refresh_after_submission(seeded):
    refreshed = []
    seeded.submissions.on_refresh = lambda user_id, items: refreshed.append((user_id, items))

    async def scenario():
        await seeded.submissions.submit_task("u1", "t1")
        return await seeded.submissions.refresh_after_submission("u1", "task")

    items = asyncio.run(scenario())
    assert "t1" not in [i["id"] for i in items]
    assert refreshed and refreshed[0][0] == "u1"


def test_fallback_refresh_is_scheduled(seeded):
    refreshed = []
    seeded.submissions.refresh_delay_ms = 10
    seeded.submissions.on_refresh = lambda user_id, items: refreshed.append(user_id)

    async def scenario():
        await seeded.submissions.submit_form("u1", "f1", {"formData": {"a": "b"}})
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert refreshed == ["u1"]


def test_failed_fallback_refresh_is_logged(seeded, caplog):
    seeded.submissions.refresh_delay_ms = 10

    def broken(user_id, items):
        raise RuntimeError("render failed")

    seeded.submissions.on_refresh = broken

    async def scenario():
        await seeded.submissions.submit_form("u1", "f1", {"formData": {"a": "b"}})
        await asyncio.sleep(0.1)

    with caplog.at_level(logging.ERROR, logger="engage"):
        asyncio.run(scenario())

    assert "Fallback refresh for u1 failed: render failed" in caplog.text


def test_session_state_and_read_through_values_use_separate_caches(seeded):
    coordinator = seeded.submissions
    original_add = seeded.durable.add

    async def scenario():
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def gated_add(collection, data):
            entered.set()
            await gate.wait()
            return await original_add(collection, data)

        await coordinator.load_pending("u1")
        seeded.durable.add = gated_add
        submitting = asyncio.ensure_future(coordinator.submit_task("u1", "t1"))
        await entered.wait()
        in_flight = seeded.session_cache.get(Keys.optimistic_pending("u1"))
        gate.set()
        await submitting
        await coordinator.load_pending("u1")
        await seeded.reader.leaderboard()
        return in_flight

    in_flight = asyncio.run(scenario())

    assert "t1" not in [item["id"] for item in in_flight]
    assert seeded.local_cache.get(Keys.optimistic_pending("u1")) is None
    assert seeded.session_cache.get(Keys.local_completions("u1"))["tasks"]["t1"]["status"] == "pending"
    assert seeded.local_cache.get(Keys.local_completions("u1")) is None
    assert seeded.local_cache.get(Keys.pending_activities("u1")) is not None
    assert seeded.session_cache.get(Keys.pending_activities("u1")) is None
    assert seeded.local_cache.get(Keys.leaderboard()) is not None
    assert seeded.session_cache.get(Keys.leaderboard()) is None


def test_every_cached_value_is_cleared_for_its_user(seeded):
    reader = seeded.reader
    coordinator = seeded.submissions
    original_add = seeded.durable.add

    async def scenario():
        await coordinator.submit_quiz("u1", "q1", {"answers": {"q-a": 1}})
        for facet in LIST_FACETS:
            await reader.pending_activities("u1", facet)
            await reader.completed_activities("u1", facet)
        await reader.completion_status("u1")
        await reader.leaderboard()
        await reader.user_rank("u1")
        await reader.attendee_directory()
        for activity_type in ActivityType:
            await reader.activity_list(activity_type)

        gate = asyncio.Event()
        entered = asyncio.Event()

        async def gated_add(collection, data):
            entered.set()
            await gate.wait()
            return await original_add(collection, data)

        seeded.durable.add = gated_add
        submitting = asyncio.ensure_future(coordinator.submit_form("u1", "f1", {"formData": {"a": "b"}}))
        await entered.wait()
        filled = (list(seeded.local_cache.storage.keys()), list(seeded.session_cache.storage.keys()))

        seeded.invalidator.invalidate(MutationEvent.ALL, "u1")
        emptied = (list(seeded.local_cache.storage.keys()), list(seeded.session_cache.storage.keys()))

        gate.set()
        await submitting
        return filled, emptied

    (persistent_keys, session_keys), emptied = asyncio.run(scenario())

    assert Keys.optimistic_pending("u1").render() in session_keys
    assert Keys.local_completions("u1").render() in session_keys
    assert Keys.pending_version("u1", "tasks").render() in persistent_keys
    assert Keys.user_rank("u1").render() in persistent_keys
    assert emptied == ([], [])
