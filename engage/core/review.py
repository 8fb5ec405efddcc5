"""
Admin review of submissions: approve or reject, with the pending view updated
optimistically and kept in sync with the read-through indexes.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

from .cache_reader import CacheReader
from .completion import can_approve_submission
from .config import RECONCILE_DEBOUNCE_MS, RECONCILE_QUIET_WINDOW_MS
from .invalidation import Invalidator, MutationEvent
from .keys import Paths
from .optimistic import OptimisticTracker
from .reconcile import RealtimeReconciler
from .stores import DocumentNotFoundError, IDurableStore, IReadThroughStore, StoreError
from .submissions import add_points
from .types import ActionOutcome, ActivityType, SubmissionStatus, now_ms
from ..util.logging import logger

REVIEW_STATUSES = [SubmissionStatus.PENDING, SubmissionStatus.APPROVED, SubmissionStatus.REJECTED]

# Minimum gap since the last load before a failed action reloads the list
FAILURE_RELOAD_GAP_MS = 1000


class ReviewError(Exception):
    """An authoritative review write failed; message is fit to show the admin."""

    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(message)
        self.message = message
        self.code = code


def review_error_message(error: Exception, default: str) -> str:
    code = getattr(error, "code", None)
    if code == "permission-denied":
        return "Permission denied. Please ensure you are logged in as an admin."
    if code == "not-found":
        return "Submission not found in database. It may have been deleted."
    return str(error) or default


def _statuses_for(status_filter: str) -> List[SubmissionStatus]:
    if status_filter == "all":
        return list(REVIEW_STATUSES)
    return [SubmissionStatus(status_filter)]


class ReviewCoordinator:
    """Admin submission list with approve/reject actions."""

    def __init__(self, durable: IDurableStore, read_through: IReadThroughStore, reader: CacheReader,
                 tracker: OptimisticTracker, invalidator: Invalidator, clock: Callable[[], int] = now_ms,
                 debounce_ms: int = RECONCILE_DEBOUNCE_MS, quiet_ms: int = RECONCILE_QUIET_WINDOW_MS):
        self.durable = durable
        self.reader = reader
        self.tracker = tracker
        self.invalidator = invalidator
        self.clock = clock
        self.submissions: List[Dict[str, Any]] = []
        self.active_tab = SubmissionStatus.PENDING.value
        self.processing_submissions: Set[str] = set()
        self.reconciler = RealtimeReconciler(
            read_through,
            reload=self._reload_from_push,
            clock=clock,
            debounce_ms=debounce_ms,
            quiet_ms=quiet_ms,
            is_busy=lambda: bool(self.processing_submissions),
        )
        self._watched_filter: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.reconciler.loading

    async def fetch_submissions(self, status_filter: str = "all") -> List[Dict[str, Any]]:
        ids = []
        for status in _statuses_for(status_filter):
            ids.extend(await self.reader.submission_ids(status))
        if not ids:
            return []

        metadata = await asyncio.gather(*(self.reader.submission_metadata(i) for i in ids))
        submissions = sorted(
            (m for m in metadata if m is not None),
            key=lambda m: m.get("submittedAt") or 0,
            reverse=True,
        )
        if status_filter != "all":
            # The index can briefly disagree with the metadata
            submissions = [s for s in submissions if (s.get("status") or "pending") == status_filter]
        return submissions

    async def load(self, status_filter: str = None) -> List[Dict[str, Any]]:
        if self.loading:
            return self.submissions

        status_filter = status_filter or self.active_tab
        self.active_tab = status_filter
        self.reconciler.loading = True
        try:
            self.submissions = await self.fetch_submissions(status_filter)
            for status in _statuses_for(status_filter):
                count = sum(1 for s in self.submissions if s.get("status") == status.value)
                self.reconciler.set_count(Paths.submissions_by_status(status), count)
        finally:
            self.reconciler.loading = False
            self.reconciler.mark_loaded()

        if self._watched_filter != status_filter:
            self.reconciler.unwatch_all()
            for status in _statuses_for(status_filter):
                await self.reconciler.watch(Paths.submissions_by_status(status))
            self._watched_filter = status_filter
            # Watching reads the index again; pushes from that are ours too
            self.reconciler.mark_loaded()

        logger.log_operation("load_submissions", "success", {
            "filter": status_filter, "count": len(self.submissions)
        })
        return self.submissions

    async def _reload_from_push(self, path: str) -> None:
        await self.load(self.active_tab)

    def counts(self) -> Dict[str, int]:
        return {
            status.value: self.reconciler.last_count(Paths.submissions_by_status(status)) or 0
            for status in REVIEW_STATUSES
        }

    def close(self) -> None:
        self.reconciler.unwatch_all()
        self._watched_filter = None

    def _find(self, submission_id: str) -> Optional[Dict[str, Any]]:
        for submission in self.submissions:
            if submission.get("id") == submission_id:
                return submission
        return None

    async def handle_approve(self, submission_id: str, reviewer: str) -> ActionOutcome:
        return await self._handle("approve", submission_id, reviewer,
                                  lambda snapshot: self.approve_submission(submission_id, reviewer, snapshot))

    async def handle_reject(self, submission_id: str, reviewer: str, reason: str = "") -> ActionOutcome:
        return await self._handle("reject", submission_id, reviewer,
                                  lambda snapshot: self.reject_submission(submission_id, reviewer, reason, snapshot))

    async def _handle(self, action: str, submission_id: str, reviewer: str, write) -> ActionOutcome:
        if submission_id in self.processing_submissions:
            return ActionOutcome.info("Processing... Please wait")
        self.processing_submissions.add(submission_id)

        try:
            submission = self._find(submission_id)
            if submission is None:
                return ActionOutcome.error("Submission not found in current list")
            snapshot = dict(submission)

            operation_id = None
            if self.active_tab == SubmissionStatus.PENDING.value:
                operation_id = self.tracker.remove_item("submission", submission_id, target=self.submissions)

            try:
                outcome = await write(snapshot)
            except ReviewError as e:
                if operation_id:
                    self.tracker.rollback(operation_id)
                if not self.loading and self._since_last_load() > FAILURE_RELOAD_GAP_MS:
                    await self.load(self.active_tab)
                return ActionOutcome.error(f"Failed to {action} submission: {e.message}", code=e.code)
            except Exception:
                if operation_id:
                    self.tracker.rollback(operation_id)
                raise

            if operation_id:
                if not outcome.ok and not outcome.data.get("status_written"):
                    # Nothing was written; the row goes back
                    self.tracker.rollback(operation_id)
                else:
                    self.tracker.confirm(operation_id)
            return outcome
        finally:
            self.processing_submissions.discard(submission_id)

    def _since_last_load(self) -> int:
        if self.reconciler.last_load_at is None:
            return FAILURE_RELOAD_GAP_MS + 1
        return self.clock() - self.reconciler.last_load_at

    async def _resolve(self, submission_id: str, submission: Optional[Dict[str, Any]]):
        if submission is not None:
            return submission
        found = self._find(submission_id)
        if found is not None:
            return found
        try:
            return await self.durable.get("submissions", submission_id)
        except StoreError as e:
            logger.error(f"Failed to fetch submission {submission_id}: {e}")
            raise ReviewError("Failed to fetch submission data", getattr(e, "code", "unknown")) from e

    async def approve_submission(self, submission_id: str, reviewer: str,
                                 submission: Dict[str, Any] = None) -> ActionOutcome:
        if not submission_id:
            return ActionOutcome.error("Invalid submission ID")
        submission = await self._resolve(submission_id, submission)
        if submission is None:
            return ActionOutcome.error("Submission not found in database")

        eligibility = can_approve_submission(submission)
        if not eligibility:
            return ActionOutcome.info(eligibility.reason)

        submission_type = ActivityType.parse(submission.get("submissionType") or submission.get("type"))
        if submission_type is ActivityType.FORM:
            return ActionOutcome.info("Form submissions are automatically recorded")
        if submission_type is ActivityType.QUIZ:
            return ActionOutcome.info("Quiz submissions are scored automatically")

        try:
            current = await self.durable.get("submissions", submission_id)
            if not current:
                return ActionOutcome.error("Submission not found in database")
            if current.get("status") == SubmissionStatus.APPROVED.value:
                return ActionOutcome.info("This submission has already been approved")

            task = await self.durable.get("tasks", current.get("taskId"))
            if not task:
                return ActionOutcome.error("Task not found. Cannot award points.")

            await self.durable.update("submissions", submission_id, {
                "status": SubmissionStatus.APPROVED.value,
                "reviewedAt": self.clock(),
                "reviewedBy": reviewer,
            })
            await self._verify_status(submission_id, SubmissionStatus.APPROVED, "approval")
        except StoreError as e:
            message = review_error_message(e, "Failed to approve submission")
            logger.log_review_decision(submission_id, "approve", reviewer, message, status="failure")
            raise ReviewError(message, e.code) from e

        user_id = current.get("userId")
        points = task.get("points") or 0
        outcome = ActionOutcome.success("Submission approved (no points to award)")
        if points > 0:
            try:
                await add_points(self.durable, user_id, points)
                await self.durable.update("submissions", submission_id, {"pointsAwarded": points})
                outcome = ActionOutcome.success(f"Submission approved and {points} points awarded",
                                                points_awarded=points)
            except StoreError as e:
                logger.error(f"Error awarding points for submission {submission_id}: {e}")
                outcome = ActionOutcome.error(f"Submission approved but failed to award points: {e}",
                                              status_written=True)
            self.invalidator.invalidate(MutationEvent.POINTS_CHANGED, user_id)

        self.invalidator.invalidate(MutationEvent.SUBMISSION_REVIEWED, user_id, ActivityType.TASK,
                                    current.get("taskId"))
        logger.log_review_decision(submission_id, "approve", reviewer)
        return outcome

    async def reject_submission(self, submission_id: str, reviewer: str, reason: str = "",
                                submission: Dict[str, Any] = None) -> ActionOutcome:
        if not submission_id:
            return ActionOutcome.error("Invalid submission ID")
        submission = await self._resolve(submission_id, submission)
        if submission is None:
            return ActionOutcome.error("Submission not found in database")

        submission_type = ActivityType.parse(submission.get("submissionType") or submission.get("type"))
        if submission_type is ActivityType.FORM:
            return ActionOutcome.info("Form submissions cannot be rejected")
        if submission_type is ActivityType.QUIZ:
            return ActionOutcome.info("Quiz submissions cannot be rejected")

        try:
            current = await self.durable.get("submissions", submission_id)
            if not current:
                return ActionOutcome.error("Submission not found in database")

            await self.durable.update("submissions", submission_id, {
                "status": SubmissionStatus.REJECTED.value,
                "rejectionReason": reason or "",
                "reviewedAt": self.clock(),
                "reviewedBy": reviewer,
            })
            await self._verify_status(submission_id, SubmissionStatus.REJECTED, "rejection")
        except StoreError as e:
            message = review_error_message(e, "Failed to reject submission")
            logger.log_review_decision(submission_id, "reject", reviewer, message, status="failure")
            raise ReviewError(message, e.code) from e

        self.invalidator.invalidate(MutationEvent.SUBMISSION_REVIEWED, current.get("userId"),
                                    ActivityType.TASK, current.get("taskId"))
        logger.log_review_decision(submission_id, "reject", reviewer, reason)
        return ActionOutcome.success("Submission rejected. User can resubmit.")

    async def _verify_status(self, submission_id: str, expected: SubmissionStatus, action: str) -> None:
        verified = await self.durable.get("submissions", submission_id)
        if not verified:
            raise DocumentNotFoundError(f"Submission was deleted during {action}")
        if verified.get("status") != expected.value:
            raise StoreError(f"Submission status update failed. Current status: {verified.get('status')}")
