"""
Admin review: loading the submission list, approve/reject with optimistic
removal, duplicate-click protection and failure rollback.
"""

import asyncio

import pytest

from engage.core.keys import Paths, full_path
from conftest import task_submission


@pytest.fixture
def pending_id(seeded, clock):
    return asyncio.run(seeded.durable.add("submissions", task_submission(clock)))


def _ids(items):
    return [item["id"] for item in items]


class TestLoad:

    def test_load_pending(self, seeded, pending_id):
        review = seeded.review
        submissions = asyncio.run(review.load("pending"))

        assert _ids(submissions) == [pending_id]
        assert submissions[0]["userName"] == "Alice"
        assert review.counts() == {"pending": 1, "approved": 0, "rejected": 0}
        assert not review.loading
        assert review.reconciler.watched() == [Paths.submissions_by_status("pending")]

    def test_load_all_sorts_newest_first(self, seeded, clock, pending_id):
        clock.advance(1000)
        newer = asyncio.run(seeded.durable.add("submissions", task_submission(clock, user_id="u2")))

        submissions = asyncio.run(seeded.review.load("all"))

        assert _ids(submissions) == [newer, pending_id]
        assert len(seeded.review.reconciler.watched()) == 3

    def test_stale_index_entries_are_dropped(self, seeded, pending_id):
        async def scenario():
            await seeded.read_through.update({
                full_path(Paths.submissions_by_status("pending") + "/stale"): True,
                full_path(Paths.submission_metadata("stale")): {"id": "stale", "status": "approved", "submittedAt": 1},
                full_path(Paths.submissions_by_status("pending") + "/ghost"): True,
            })
            return await seeded.review.load("pending")

        assert _ids(asyncio.run(scenario())) == [pending_id]

    def test_load_is_skipped_while_loading(self, seeded, pending_id):
        review = seeded.review
        review.reconciler.loading = True
        reads = seeded.read_through.read_count

        assert asyncio.run(review.load("pending")) == []
        assert seeded.read_through.read_count == reads

    def test_switching_filter_replaces_watches(self, seeded, pending_id):
        review = seeded.review
        asyncio.run(review.load("pending"))
        asyncio.run(review.load("approved"))

        assert review.reconciler.watched() == [Paths.submissions_by_status("approved")]
        assert seeded.read_through.listener_count(full_path(Paths.submissions_by_status("pending"))) == 0


class TestApprove:

    def test_approve_awards_points(self, seeded, pending_id):
        review = seeded.review

        async def scenario():
            await review.load("pending")
            outcome = await review.handle_approve(pending_id, "admin")
            submission = await seeded.durable.get("submissions", pending_id)
            user = await seeded.durable.get("users", "u1")
            return outcome, submission, user

        outcome, submission, user = asyncio.run(scenario())

        assert outcome.ok
        assert outcome.message == "Submission approved and 10 points awarded"
        assert submission["status"] == "approved"
        assert submission["reviewedBy"] == "admin"
        assert submission["pointsAwarded"] == 10
        assert user["points"] == 10
        assert review.submissions == []
        assert seeded.tracker.pending_count() == 0
        assert pending_id in seeded.read_through.peek(full_path(Paths.submissions_by_status("approved")))
        completed = seeded.read_through.peek(full_path(Paths.completed_activities("u1")))
        assert [item["id"] for item in completed] == ["t1"]

    def test_duplicate_click_writes_once(self, seeded, pending_id):
        review = seeded.review
        original_update = seeded.durable.update

        async def scenario():
            await review.load("pending")
            gate = asyncio.Event()

            async def gated_update(collection, doc_id, patch):
                await gate.wait()
                return await original_update(collection, doc_id, patch)

            seeded.durable.update = gated_update
            first = asyncio.ensure_future(review.handle_approve(pending_id, "admin"))
            await asyncio.sleep(0)
            busy = review.reconciler.is_busy()
            second = await review.handle_approve(pending_id, "admin")
            gate.set()
            return busy, await first, second

        busy, first, second = asyncio.run(scenario())
        user = asyncio.run(seeded.durable.get("users", "u1"))

        assert busy
        assert first.ok
        assert second.level == "info"
        assert second.message == "Processing... Please wait"
        assert user["points"] == 10
        assert not review.processing_submissions

    def test_permission_denied_rolls_back(self, seeded, pending_id):
        review = seeded.review
        seeded.durable.read_only_collections.add("submissions")

        async def scenario():
            await review.load("pending")
            return await review.handle_approve(pending_id, "admin")

        outcome = asyncio.run(scenario())

        assert outcome.level == "error"
        assert outcome.message == (
            "Failed to approve submission: Permission denied. Please ensure you are logged in as an admin."
        )
        assert outcome.data["code"] == "permission-denied"
        assert _ids(review.submissions) == [pending_id]
        assert seeded.tracker.pending_count() == 0

    def test_failure_reloads_when_list_is_old(self, seeded, clock, pending_id):
        review = seeded.review
        seeded.durable.read_only_collections.add("submissions")

        async def scenario():
            await review.load("pending")
            first_load = review.reconciler.last_load_at
            clock.advance(5000)
            await review.handle_approve(pending_id, "admin")
            return first_load

        first_load = asyncio.run(scenario())
        assert review.reconciler.last_load_at > first_load
        assert _ids(review.submissions) == [pending_id]

    def test_missing_task_restores_row(self, seeded, clock):
        review = seeded.review
        orphan = asyncio.run(seeded.durable.add("submissions", task_submission(clock, task_id="gone")))

        async def scenario():
            await review.load("pending")
            return await review.handle_approve(orphan, "admin")

        outcome = asyncio.run(scenario())
        assert outcome.message == "Task not found. Cannot award points."
        assert _ids(review.submissions) == [orphan]

    def test_not_in_current_list(self, seeded, pending_id):
        outcome = asyncio.run(seeded.review.handle_approve("nope", "admin"))
        assert outcome.level == "error"
        assert outcome.message == "Submission not found in current list"

    def test_already_approved(self, seeded, pending_id):
        async def scenario():
            await seeded.durable.update("submissions", pending_id, {"status": "approved"})
            return await seeded.review.approve_submission(pending_id, "admin", {"id": pending_id, "type": "task"})

        outcome = asyncio.run(scenario())
        assert outcome.level == "info"
        assert outcome.message == "This submission has already been approved"

    def test_approved_elsewhere_restores_row(self, seeded, pending_id):
        review = seeded.review

        async def scenario():
            await review.load("pending")
            await seeded.durable.update("submissions", pending_id, {"status": "approved"})
            return await review.handle_approve(pending_id, "admin")

        outcome = asyncio.run(scenario())
        user = asyncio.run(seeded.durable.get("users", "u1"))

        assert outcome.level == "info"
        assert outcome.message == "This submission has already been approved"
        # Nothing was written, so the optimistic removal is undone
        assert _ids(review.submissions) == [pending_id]
        assert seeded.tracker.pending_count() == 0
        assert user["points"] == 0

    def test_forms_and_quizzes_are_not_reviewed(self, seeded):
        async def scenario():
            form = await seeded.review.approve_submission("s1", "admin", {"id": "s1", "type": "form"})
            quiz = await seeded.review.approve_submission("s2", "admin", {"id": "s2", "type": "quiz"})
            return form, quiz

        form, quiz = asyncio.run(scenario())
        assert form.message == "Form submissions are automatically recorded"
        assert quiz.level == "info"


class TestReject:

    def test_reject_allows_resubmission(self, seeded, pending_id):
        review = seeded.review

        async def scenario():
            await review.load("pending")
            outcome = await review.handle_reject(pending_id, "admin", "Blurry photo")
            submission = await seeded.durable.get("submissions", pending_id)
            eligibility = await seeded.completions.can_submit_task("u1", "t1")
            return outcome, submission, eligibility

        outcome, submission, eligibility = asyncio.run(scenario())

        assert outcome.ok
        assert outcome.message == "Submission rejected. User can resubmit."
        assert submission["status"] == "rejected"
        assert submission["rejectionReason"] == "Blurry photo"
        assert eligibility.allowed
        pending = seeded.read_through.peek(full_path(Paths.pending_activities("u1")))
        assert "t1" in [item["id"] for item in pending]

    def test_forms_cannot_be_rejected(self, seeded):
        outcome = asyncio.run(seeded.review.reject_submission("s1", "admin", "", {"id": "s1", "type": "form"}))
        assert outcome.level == "info"
        assert outcome.message == "Form submissions cannot be rejected"

    def test_reject_on_approved_tab_keeps_row(self, seeded, pending_id):
        review = seeded.review

        async def scenario():
            await seeded.durable.update("submissions", pending_id, {"status": "approved"})
            await review.load("approved")
            return await review.handle_reject(pending_id, "admin", "Reversed")

        outcome = asyncio.run(scenario())
        assert outcome.ok
        # Only the pending tab removes rows optimistically
        assert _ids(review.submissions) == [pending_id]


def test_push_reloads_after_quiet_window(seeded, clock, pending_id):
    review = seeded.review

    async def scenario():
        await review.load("pending")
        clock.advance(100)
        await seeded.durable.add("submissions", task_submission(clock, user_id="u2"))
        await asyncio.sleep(0.05)
        await review.reconciler.debouncer.drain()
        return list(review.submissions)

    submissions = asyncio.run(scenario())
    assert len(submissions) == 2
    assert review.reconciler.reload_count == 1


def test_push_inside_quiet_window_is_ignored(seeded, clock, pending_id):
    review = seeded.review

    async def scenario():
        await review.load("pending")
        await seeded.durable.add("submissions", task_submission(clock, user_id="u2"))
        await asyncio.sleep(0.05)
        await review.reconciler.debouncer.drain()
        return list(review.submissions)

    submissions = asyncio.run(scenario())
    assert len(submissions) == 1
    assert review.reconciler.reload_count == 0
