"""
Attendee-side submission flow for tasks, quizzes and forms.

Each submission: eligibility check, optimistic removal from the pending list,
authoritative write, local completion mark, cache invalidation, and a delayed
fallback refresh for when aggregation is slow. A failed write rolls the
pending list back.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .cache_reader import CacheReader
from .completion import CompletionManager
from .config import SUBMISSION_REFRESH_DELAY_MS
from .invalidation import Invalidator, MutationEvent
from .keys import Keys
from .local_cache import LocalCache
from .optimistic import OptimisticTracker
from .stores import DocumentNotFoundError, IDurableStore, StoreError
from .types import ActionOutcome, ActivityType, CacheKind, SubmissionStatus, now_ms
from ..util.logging import logger, sanitize_payload

ALREADY_PROCESSING = "This submission is already being processed. Please wait."


def score_quiz(quiz: Dict[str, Any], answers: Dict[str, Any]) -> Tuple[int, List[Dict[str, Any]]]:
    """Grade answers against the quiz questions. Returns (score, graded answers)."""
    total = 0
    graded = []
    for question in quiz.get("questions") or []:
        answer = (answers or {}).get(question.get("id"))
        expected = question.get("correctAnswer")
        if question.get("type") == "text":
            correct = answer is not None and expected is not None \
                and str(answer).strip().lower() == str(expected).strip().lower()
        else:
            try:
                correct = answer is not None and int(answer) == expected
            except (TypeError, ValueError):
                correct = False
        earned = question.get("points", 0) if correct else 0
        total += earned
        graded.append({
            "questionId": question.get("id"),
            "answer": answer,
            "isCorrect": correct,
            "pointsEarned": earned,
        })
    return total, graded


async def add_points(durable: IDurableStore, user_id: str, points: int) -> int:
    """Add points to a user document. Returns the new total; raises StoreError."""
    user = await durable.get("users", user_id)
    if not user:
        raise DocumentNotFoundError(f"User {user_id} not found")
    total = user.get("points", 0) + points
    await durable.update("users", user_id, {"points": total})
    return total


def _item_id(item: Dict[str, Any]):
    return item.get("id") or item.get("taskId") or item.get("quizId") or item.get("formId")


class SubmissionCoordinator:
    """Runs attendee submissions against the durable store with optimistic list updates."""

    def __init__(self, durable: IDurableStore, completions: CompletionManager, reader: CacheReader,
                 session_cache: LocalCache, tracker: OptimisticTracker, invalidator: Invalidator,
                 clock: Callable[[], int] = now_ms, refresh_delay_ms: int = SUBMISSION_REFRESH_DELAY_MS,
                 on_refresh: Callable[[str, List[Dict[str, Any]]], None] = None):
        self.durable = durable
        self.completions = completions
        self.reader = reader
        self.session_cache = session_cache
        self.tracker = tracker
        self.invalidator = invalidator
        self.clock = clock
        self.refresh_delay_ms = refresh_delay_ms
        self.on_refresh = on_refresh
        self.processing: Set[str] = set()
        # Pending list last shown to each user
        self.pending_views: Dict[str, List[Dict[str, Any]]] = {}
        self._refresh_handles: Dict[str, asyncio.TimerHandle] = {}

    async def load_pending(self, user_id: str) -> List[Dict[str, Any]]:
        """Pending list for display: the optimistic copy while a submission is in flight, else fresh."""
        cached = self.session_cache.get(Keys.optimistic_pending(user_id))
        if isinstance(cached, list):
            items = list(cached)
        else:
            items = await self.reader.pending_activities(user_id)
        self.pending_views[user_id] = items
        return items

    def is_processing(self, user_id: str = None, activity_type=None, activity_id: str = None) -> bool:
        """True while any submission (or the given one) is in flight."""
        if user_id is None:
            return bool(self.processing)
        return self._processing_key(user_id, ActivityType.parse(activity_type), activity_id) in self.processing

    @staticmethod
    def _processing_key(user_id: str, activity_type: ActivityType, activity_id: str) -> str:
        return f"{activity_type.value}:{user_id}:{activity_id}"

    async def _guarded(self, user_id: str, activity_type: ActivityType, activity_id: str, run) -> ActionOutcome:
        key = self._processing_key(user_id, activity_type, activity_id)
        if key in self.processing:
            return ActionOutcome.info(ALREADY_PROCESSING)
        self.processing.add(key)
        try:
            return await run()
        finally:
            self.processing.discard(key)

    async def submit_task(self, user_id: str, task_id: str, payload: Dict[str, Any] = None) -> ActionOutcome:
        return await self._guarded(user_id, ActivityType.TASK, task_id,
                                   lambda: self._submit_task(user_id, task_id, payload))

    async def submit_quiz(self, user_id: str, quiz_id: str, payload: Dict[str, Any] = None) -> ActionOutcome:
        return await self._guarded(user_id, ActivityType.QUIZ, quiz_id,
                                   lambda: self._submit_quiz(user_id, quiz_id, payload))

    async def submit_form(self, user_id: str, form_id: str, payload: Dict[str, Any] = None) -> ActionOutcome:
        return await self._guarded(user_id, ActivityType.FORM, form_id,
                                   lambda: self._submit_form(user_id, form_id, payload))

    async def _submit_task(self, user_id: str, task_id: str, payload: Dict[str, Any] = None) -> ActionOutcome:
        payload = payload or {}
        task = await self.durable.get("tasks", task_id)
        if not task:
            return ActionOutcome.error("Task not found")

        eligibility = await self.completions.can_submit_task(user_id, task_id)
        if not eligibility:
            return ActionOutcome.error(eligibility.reason)

        submitted_at = self.clock()
        document = {
            "userId": user_id,
            "userName": payload.get("userName", ""),
            "submissionType": ActivityType.TASK.value,
            "taskId": task_id,
            "title": task.get("title"),
            "type": task.get("type", "upload"),
            "fileURL": payload.get("fileURL"),
            "formData": payload.get("formData"),
            "status": SubmissionStatus.PENDING.value,
            "submittedAt": submitted_at,
            "points": task.get("points", 0),
        }
        return await self._submit(
            user_id, ActivityType.TASK, task_id, document,
            {"status": SubmissionStatus.PENDING.value, "submittedAt": submitted_at},
            "Submission successful! Waiting for approval.",
        )

    async def _submit_quiz(self, user_id: str, quiz_id: str, payload: Dict[str, Any] = None) -> ActionOutcome:
        payload = payload or {}
        quiz = await self.durable.get("quizzes", quiz_id)
        if not quiz:
            return ActionOutcome.error("Quiz not found")

        eligibility = await self.completions.can_start_quiz(user_id, quiz_id)
        if not eligibility:
            return ActionOutcome.info(eligibility.reason)

        score, graded = score_quiz(quiz, payload.get("answers") or {})
        submitted_at = self.clock()
        document = {
            "userId": user_id,
            "userName": payload.get("userName", ""),
            "submissionType": ActivityType.QUIZ.value,
            "quizId": quiz_id,
            "title": quiz.get("title"),
            "answers": graded,
            "score": score,
            "totalPoints": quiz.get("totalPoints", 0),
            "status": SubmissionStatus.COMPLETED.value,
            "submittedAt": submitted_at,
            "points": score,
            "pointsAwarded": score,
        }
        return await self._submit(
            user_id, ActivityType.QUIZ, quiz_id, document,
            {"submittedAt": submitted_at, "points": score, "score": score},
            f"Quiz submitted! You earned {score} points.",
            award=score,
        )

    async def _submit_form(self, user_id: str, form_id: str, payload: Dict[str, Any] = None) -> ActionOutcome:
        payload = payload or {}
        form = await self.durable.get("forms", form_id)
        if not form:
            return ActionOutcome.error("Form not found")

        eligibility = await self.completions.can_submit_form(user_id, form_id)
        if not eligibility:
            return ActionOutcome.info(eligibility.reason)

        form_data = payload.get("formData") or {}
        if not form_data:
            return ActionOutcome.error(
                "No form data collected. Please ensure all form fields have valid names and are properly filled."
            )

        submitted_at = self.clock()
        document = {
            "userId": user_id,
            "userName": payload.get("userName", ""),
            "submissionType": ActivityType.FORM.value,
            "formId": form_id,
            "title": form.get("title"),
            "formData": form_data,
            "status": SubmissionStatus.COMPLETED.value,
            "submittedAt": submitted_at,
            "points": form.get("points", 0),
        }
        return await self._submit(
            user_id, ActivityType.FORM, form_id, document,
            {"submittedAt": submitted_at},
            "Form submitted successfully!",
            award=form.get("points", 0),
        )

    async def submit(self, user_id: str, activity_type, activity_id: str,
                     payload: Dict[str, Any] = None) -> ActionOutcome:
        activity_type = ActivityType.parse(activity_type)
        if activity_type is ActivityType.QUIZ:
            return await self.submit_quiz(user_id, activity_id, payload)
        if activity_type is ActivityType.FORM:
            return await self.submit_form(user_id, activity_id, payload)
        return await self.submit_task(user_id, activity_id, payload)

    async def _submit(self, user_id: str, activity_type: ActivityType, activity_id: str,
                      document: Dict[str, Any], local_record: Dict[str, Any], success_message: str,
                      award: int = 0) -> ActionOutcome:
        operation_id = await self._remove_from_pending(user_id, activity_type, activity_id)
        try:
            submission_id = await self.tracker.run(
                operation_id, lambda: self.durable.add("submissions", document)
            )
        except StoreError as e:
            self.session_cache.clear(Keys.optimistic_pending(user_id))
            logger.log_submission_action("submit", user_id, activity_type.value, activity_id, "failure", {
                "error": str(e), "document": sanitize_payload(document)
            })
            return ActionOutcome.error(f"Failed to submit {activity_type.value}. Please try again.",
                                       error=str(e))

        self.completions.mark_completed_locally(user_id, activity_type, activity_id, local_record)
        self.completions.clear_completion_caches(user_id, activity_type, activity_id)

        message = success_message
        if award > 0 and not await self._award_points(user_id, award):
            message = f"{activity_type.value.capitalize()} submitted but failed to award points"

        self._schedule_refresh(user_id, activity_type)
        logger.log_submission_action("submit", user_id, activity_type.value, activity_id, "success", {
            "submission_id": submission_id
        })
        return ActionOutcome.success(message, submission_id=submission_id)

    async def _remove_from_pending(self, user_id: str, activity_type: ActivityType, activity_id: str) -> Optional[str]:
        view = self.pending_views.get(user_id)
        if view is None:
            view = await self.load_pending(user_id)
        shortened = [item for item in view if _item_id(item) != activity_id]
        self.session_cache.set(Keys.optimistic_pending(user_id), shortened, CacheKind.SYSTEM)
        return self.tracker.remove_item(activity_type.value, activity_id, target=view)

    async def _award_points(self, user_id: str, points: int) -> bool:
        try:
            await add_points(self.durable, user_id, points)
        except StoreError as e:
            logger.error(f"Error awarding {points} points to {user_id}: {e}")
            return False
        self.invalidator.invalidate(MutationEvent.POINTS_CHANGED, user_id)
        return True

    def _schedule_refresh(self, user_id: str, activity_type: ActivityType) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        previous = self._refresh_handles.pop(user_id, None)
        if previous:
            previous.cancel()
        self._refresh_handles[user_id] = loop.call_later(
            self.refresh_delay_ms / 1000, self._start_refresh, user_id, activity_type
        )

    def _start_refresh(self, user_id: str, activity_type: ActivityType) -> None:
        task = asyncio.ensure_future(self.refresh_after_submission(user_id, activity_type))
        task.add_done_callback(lambda done: self._refresh_finished(user_id, done))

    @staticmethod
    def _refresh_finished(user_id: str, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Fallback refresh for {user_id} failed: {task.exception()}")

    async def refresh_after_submission(self, user_id: str, activity_type=None) -> List[Dict[str, Any]]:
        """Clear derived caches and reload the pending list once aggregation has had time to run."""
        self._refresh_handles.pop(user_id, None)
        self.invalidator.invalidate(MutationEvent.SUBMISSION_CREATED, user_id, activity_type)
        items = await self.load_pending(user_id)
        if self.on_refresh:
            self.on_refresh(user_id, items)
        return items

    def cancel_refreshes(self) -> None:
        for handle in self._refresh_handles.values():
            handle.cancel()
        self._refresh_handles.clear()
