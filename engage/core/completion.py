"""
Completion status and submission eligibility.

Tasks: blocked while a submission is pending or approved; a rejected task may
be resubmitted. Quizzes and forms: blocked by any existing record.
"""

import copy
from typing import Any, Callable, Dict, Iterable, List, Optional

from .cache_reader import CacheReader
from .invalidation import Invalidator, MutationEvent
from .keys import Keys
from .local_cache import LocalCache
from .types import ActivityType, CacheKind, Eligibility, SubmissionStatus, now_ms
from ..util.logging import logger

PENDING_TASK_REASON = "You already have a pending submission for this task. Please wait for review."
APPROVED_TASK_REASON = "This task has already been approved. You cannot resubmit."
QUIZ_DONE_REASON = "You have already completed this quiz."
FORM_DONE_REASON = "You have already completed this form."


def _activity_ref(activity: Dict[str, Any]):
    activity_type = ActivityType.parse(activity.get("itemType") or activity.get("type"))
    activity_id = activity.get("id") or activity.get("quizId") or activity.get("taskId") or activity.get("formId")
    return activity_type, activity_id


def filter_activities(activities: Iterable[Dict[str, Any]], completion_status: Dict[str, Any],
                      list_type: str = "pending") -> List[Dict[str, Any]]:
    """Partition raw activities into the pending or completed view of a completion snapshot."""
    if not activities or isinstance(activities, (str, bytes, dict)):
        return []
    completion_status = completion_status or {}

    selected = []
    for activity in activities:
        activity_type, activity_id = _activity_ref(activity)
        record = (completion_status.get(activity_type.plural) or {}).get(activity_id)

        if not record:
            keep = list_type == "pending"
        elif activity_type is ActivityType.TASK:
            status = record.get("status")
            keep = status == "rejected" if list_type == "pending" else status == "approved"
        else:
            keep = list_type != "pending"

        if keep:
            selected.append(activity)
    return selected


def can_submit_task_from_submissions(submissions: Optional[List[Dict[str, Any]]], task_id: str) -> Eligibility:
    """Eligibility from the user's raw submission documents instead of the completion blob."""
    if not submissions or not isinstance(submissions, list):
        return Eligibility(True)
    statuses = {s.get("status") for s in submissions if s.get("taskId") == task_id}
    if SubmissionStatus.PENDING.value in statuses:
        return Eligibility(False, PENDING_TASK_REASON)
    if SubmissionStatus.APPROVED.value in statuses:
        return Eligibility(False, APPROVED_TASK_REASON)
    return Eligibility(True)


def can_approve_submission(submission: Optional[Dict[str, Any]]) -> Eligibility:
    if not submission:
        return Eligibility(False, "Submission not found")
    if submission.get("status") == SubmissionStatus.APPROVED.value:
        return Eligibility(False, "This submission has already been approved")
    # Pending, and rejected (reversal), may be approved
    return Eligibility(True)


class CompletionManager:
    """Answers eligibility questions from fresh completion data plus this session's own submissions."""

    filter_activities = staticmethod(filter_activities)

    def __init__(self, reader: CacheReader, session_cache: LocalCache, invalidator: Invalidator,
                 clock: Callable[[], int] = now_ms):
        self.reader = reader
        self.session_cache = session_cache
        self.invalidator = invalidator
        self.clock = clock

    def _local_overlay(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        overlay = self.session_cache.get(Keys.local_completions(user_id))
        return overlay if isinstance(overlay, dict) else {}

    async def completion_status(self, user_id: str, fresh: bool = True) -> Dict[str, Any]:
        """Aggregated completion blob with locally marked records layered on top.

        A local record wins only while it is newer than the aggregated one, so a
        later review (e.g. a rejection) takes over once aggregation catches up.
        """
        status = copy.deepcopy(await self.reader.completion_status(user_id, fresh=fresh))
        for plural, records in self._local_overlay(user_id).items():
            remote_records = status.setdefault(plural, {})
            for activity_id, local_record in (records or {}).items():
                remote = remote_records.get(activity_id)
                if not remote or (remote.get("lastUpdated") or 0) < (local_record.get("lastUpdated") or 0):
                    remote_records[activity_id] = local_record
        return status

    async def is_completed(self, user_id: str, activity_type, activity_id: str) -> Optional[Dict[str, Any]]:
        """Completion record for one activity, read fresh, or None."""
        activity_type = ActivityType.parse(activity_type)
        status = await self.completion_status(user_id, fresh=True)
        return (status.get(activity_type.plural) or {}).get(activity_id) or None

    async def can_submit_task(self, user_id: str, task_id: str) -> Eligibility:
        record = await self.is_completed(user_id, ActivityType.TASK, task_id)
        if not record:
            return Eligibility(True)
        status = record.get("status")
        if status == SubmissionStatus.PENDING.value:
            return Eligibility(False, PENDING_TASK_REASON)
        if status == SubmissionStatus.APPROVED.value:
            return Eligibility(False, APPROVED_TASK_REASON)
        return Eligibility(True)

    async def can_start_quiz(self, user_id: str, quiz_id: str) -> Eligibility:
        record = await self.is_completed(user_id, ActivityType.QUIZ, quiz_id)
        return Eligibility(False, QUIZ_DONE_REASON) if record else Eligibility(True)

    async def can_submit_form(self, user_id: str, form_id: str) -> Eligibility:
        record = await self.is_completed(user_id, ActivityType.FORM, form_id)
        return Eligibility(False, FORM_DONE_REASON) if record else Eligibility(True)

    async def eligibility(self, user_id: str, activity_type, activity_id: str) -> Eligibility:
        activity_type = ActivityType.parse(activity_type)
        if activity_type is ActivityType.QUIZ:
            return await self.can_start_quiz(user_id, activity_id)
        if activity_type is ActivityType.FORM:
            return await self.can_submit_form(user_id, activity_id)
        return await self.can_submit_task(user_id, activity_id)

    def mark_completed_locally(self, user_id: str, activity_type, activity_id: str,
                               data: Dict[str, Any] = None) -> Dict[str, Any]:
        """Record a just-submitted activity so a second attempt this session is blocked."""
        activity_type = ActivityType.parse(activity_type)
        overlay = self._local_overlay(user_id)
        record = {"completed": True}
        record.update(data or {})
        record["lastUpdated"] = self.clock()
        overlay.setdefault(activity_type.plural, {})[activity_id] = record

        if not self.session_cache.set(Keys.local_completions(user_id), overlay, CacheKind.COMPLETIONS):
            logger.warning(f"Could not persist local completion for {activity_type.value} {activity_id}")
        return record

    def clear_completion_caches(self, user_id: str, activity_type=None, activity_id: str = None) -> List[str]:
        return self.invalidator.invalidate(MutationEvent.SUBMISSION_CREATED, user_id, activity_type, activity_id)
