"""
Local stand-in for the background aggregation job.

Reacts to durable-store writes and maintains the precomputed aggregates in
the read-through store: admin submission indexes and metadata, per-user
completion blobs, pending/completed activity lists, user stats, the
leaderboard, the attendee directory and the public activity lists. The
client layer never writes these paths itself.
"""

from typing import Any, Dict, List, Optional

from .keys import Paths, full_path
from .stores import IDurableStore, IReadThroughStore
from .types import ActivityType, SubmissionStatus, now_ms
from ..util.logging import logger

LEADERBOARD_SIZE = 50


def _activity_id(submission: Dict[str, Any]) -> Optional[str]:
    return submission.get("taskId") or submission.get("quizId") or submission.get("formId")


def _merged(activity: Dict[str, Any], record: Dict[str, Any], item_type: str) -> Dict[str, Any]:
    item = dict(activity)
    item.update(record)
    item.update(itemType=item_type, completed=True, id=activity["id"])
    return item


class SubmissionProjector:
    """Projects durable submissions, activities and users into read-through aggregates."""

    def __init__(self, durable: IDurableStore, read_through: IReadThroughStore, clock=now_ms):
        self.durable = durable
        self.read_through = read_through
        self.clock = clock

    async def on_document_written(self, collection: str, doc_id: str,
                                  before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> None:
        """Trigger entry point, registered with SqliteDurableStore.on_write."""
        if collection == "submissions":
            await self.project_submission(doc_id, before, after)
        elif collection in ("tasks", "quizzes", "forms"):
            await self.update_activity_list(ActivityType.parse(collection))
            await self.refresh_all_users()
        elif collection == "users":
            await self.update_leaderboard()
            if after is not None:
                await self.update_user_stats(doc_id)

    async def project_submission(self, submission_id: str, before: Optional[Dict[str, Any]],
                                 after: Optional[Dict[str, Any]]) -> None:
        current = after or before
        if not current:
            return
        user_id = current.get("userId")
        activity_type = ActivityType.parse(current.get("submissionType"))
        activity_id = _activity_id(current)

        await self.update_submission_lists(submission_id, current, deleted=after is None)

        if user_id and activity_id:
            if after is None:
                await self.remove_user_completion(user_id, activity_type, activity_id)
            else:
                await self.update_user_completion(user_id, activity_type, activity_id,
                                                  self._completion_data(submission_id, after))

        if user_id:
            await self.update_user_stats(user_id)

        old_points = (before or {}).get("pointsAwarded", 0)
        new_points = (after or {}).get("pointsAwarded", 0)
        if old_points != new_points:
            await self.update_leaderboard()

        logger.log_operation("project_submission", "success", {
            "submission_id": submission_id,
            "status": current.get("status"),
            "deleted": after is None,
        })

    def _completion_data(self, submission_id: str, submission: Dict[str, Any]) -> Dict[str, Any]:
        activity_type = ActivityType.parse(submission.get("submissionType"))
        data = {"submittedAt": submission.get("submittedAt") or self.clock()}
        if activity_type is ActivityType.TASK:
            data["status"] = submission.get("status", SubmissionStatus.PENDING.value)
            data["submissionId"] = submission_id
        elif activity_type is ActivityType.QUIZ and submission.get("score") is not None:
            data["score"] = submission["score"]
        return data

    async def update_submission_lists(self, submission_id: str, submission: Dict[str, Any],
                                      deleted: bool = False) -> None:
        """Maintain the byStatus index and the list-view metadata for one submission."""
        status = submission.get("status") or SubmissionStatus.PENDING.value
        updates: Dict[str, Any] = {}

        # A submission lives under exactly one status
        for candidate in SubmissionStatus:
            present = not deleted and candidate.value == status
            updates[full_path(f"{Paths.submissions_by_status(candidate)}/{submission_id}")] = True if present else None

        metadata_path = full_path(Paths.submission_metadata(submission_id))
        if deleted:
            updates[metadata_path] = None
        else:
            title = submission.get("title") or await self._activity_title(submission)
            updates[metadata_path] = {
                "id": submission_id,
                "userId": submission.get("userId"),
                "userName": submission.get("userName") or "Unknown",
                "taskId": submission.get("taskId"),
                "formId": submission.get("formId"),
                "quizId": submission.get("quizId"),
                "title": title,
                "type": submission.get("submissionType"),
                "status": status,
                "submittedAt": submission.get("submittedAt") or self.clock(),
                "points": submission.get("points") or submission.get("pointsAwarded") or 0,
            }
        await self.read_through.update(updates)

    async def _activity_title(self, submission: Dict[str, Any]) -> Optional[str]:
        activity_type = ActivityType.parse(submission.get("submissionType"))
        activity_id = _activity_id(submission)
        if not activity_id:
            return None
        activity = await self.durable.get(activity_type.plural, activity_id)
        return (activity or {}).get("title")

    async def update_user_completion(self, user_id: str, activity_type: ActivityType,
                                     activity_id: str, completion_data: Dict[str, Any]) -> None:
        path = full_path(f"{Paths.completions(user_id)}/{activity_type.plural}/{activity_id}")
        record = {"completed": True}
        record.update(completion_data)
        record["lastUpdated"] = self.clock()
        await self.read_through.update({path: record})
        await self.update_user_activity_lists(user_id)

    async def remove_user_completion(self, user_id: str, activity_type: ActivityType, activity_id: str) -> None:
        path = full_path(f"{Paths.completions(user_id)}/{activity_type.plural}/{activity_id}")
        await self.read_through.update({path: None})
        await self.update_user_activity_lists(user_id)

    async def _active_activities(self) -> Dict[str, List[Dict[str, Any]]]:
        activities = {}
        for activity_type in ActivityType:
            docs = await self.durable.query(activity_type.plural)
            activities[activity_type.plural] = [
                doc for doc in docs if doc.get("status", "active") == "active"
            ]
        return activities

    async def update_user_activity_lists(self, user_id: str) -> None:
        """Recompute the user's pending and completed lists from activities and completions."""
        activities = await self._active_activities()
        completion = await self.read_through.get(full_path(Paths.completions(user_id))) or {}
        tasks_done = completion.get("tasks") or {}
        quizzes_done = completion.get("quizzes") or {}
        forms_done = completion.get("forms") or {}

        pending = {
            # Rejected tasks return to pending so they can be resubmitted
            "tasks": [t for t in activities["tasks"]
                      if t["id"] not in tasks_done or tasks_done[t["id"]].get("status") == "rejected"],
            "quizzes": [q for q in activities["quizzes"] if q["id"] not in quizzes_done],
            "forms": [f for f in activities["forms"] if f["id"] not in forms_done],
        }
        completed = {
            "tasks": [_merged(t, tasks_done[t["id"]], "task")
                      for t in activities["tasks"]
                      if tasks_done.get(t["id"], {}).get("status") == "approved"],
            "quizzes": [_merged(q, quizzes_done[q["id"]], "quiz")
                        for q in activities["quizzes"] if q["id"] in quizzes_done],
            "forms": [_merged(f, forms_done[f["id"]], "form")
                      for f in activities["forms"] if f["id"] in forms_done],
        }

        pending["combined"] = (
            [dict(q, itemType="quiz") for q in pending["quizzes"]]
            + [dict(t, itemType="task") for t in pending["tasks"]]
            + [dict(f, itemType="form") for f in pending["forms"]]
        )
        completed["combined"] = sorted(
            completed["quizzes"] + completed["tasks"] + completed["forms"],
            key=lambda item: item.get("submittedAt") or 0,
            reverse=True,
        )

        metadata = await self.read_through.get(full_path(Paths.pending_activities(user_id, "metadata"))) or {}
        version = metadata.get("version", 0) + 1
        updated_at = self.clock()

        def with_metadata(lists):
            body = dict(lists)
            body["metadata"] = {
                "lastUpdated": updated_at,
                "version": version,
                "counts": {name: len(items) for name, items in lists.items()},
            }
            return body

        await self.read_through.update({
            full_path(f"users/{user_id}/pendingActivities"): with_metadata(pending),
            full_path(f"users/{user_id}/completedActivities"): with_metadata(completed),
        })

    async def update_user_stats(self, user_id: str) -> None:
        user = await self.durable.get("users", user_id)
        if not user:
            return
        submissions = await self.durable.query("submissions", userId=user_id)

        stats = {
            "totalPoints": user.get("points", 0),
            "rank": 0,
            "quizzesCompleted": 0,
            "tasksCompleted": 0,
            "formsCompleted": 0,
            "pendingSubmissions": 0,
            "approvedSubmissions": 0,
            "rejectedSubmissions": 0,
            "lastUpdated": self.clock(),
        }
        for submission in submissions:
            activity_type = ActivityType.parse(submission.get("submissionType"))
            if activity_type is ActivityType.QUIZ:
                stats["quizzesCompleted"] += 1
            elif activity_type is ActivityType.FORM:
                stats["formsCompleted"] += 1
            else:
                status = submission.get("status", "pending")
                stats[f"{status}Submissions"] = stats.get(f"{status}Submissions", 0) + 1
                if status == "approved":
                    stats["tasksCompleted"] += 1

        rank = await self.read_through.get(full_path(Paths.rank(user_id)))
        if rank:
            stats["rank"] = rank.get("rank", 0)

        await self.read_through.set(full_path(Paths.user_stats(user_id)), stats)

    async def update_leaderboard(self) -> None:
        users = await self.durable.query("users")
        attendees = [
            u for u in users
            if u.get("role", "attendee") == "attendee" and u.get("status", "active") == "active"
        ]
        attendees.sort(key=lambda u: u.get("points", 0), reverse=True)

        updated_at = self.clock()
        top = []
        updates: Dict[str, Any] = {}
        for index, user in enumerate(attendees):
            if index < LEADERBOARD_SIZE:
                top.append({
                    "uid": user["id"],
                    "name": user.get("name") or "User",
                    "points": user.get("points", 0),
                })
            updates[full_path(Paths.rank(user["id"]))] = {
                "rank": index + 1,
                "points": user.get("points", 0),
                "lastUpdated": updated_at,
            }
        updates[full_path(Paths.leaderboard())] = top
        updates[full_path(Paths.attendee_directory())] = sorted(
            ({"uid": user["id"], "name": user.get("name") or "User"} for user in attendees),
            key=lambda entry: entry["name"].lower(),
        )
        await self.read_through.update(updates)

    async def update_activity_list(self, activity_type: ActivityType) -> None:
        """Active activities of one type, newest first, as shown to attendees."""
        docs = (await self._active_activities())[activity_type.plural]
        docs.sort(key=lambda doc: doc.get("createdAt") or 0, reverse=True)
        await self.read_through.set(full_path(Paths.activity_list(activity_type)), docs)

    async def refresh_all_users(self) -> None:
        """Recompute lists for every active attendee; used when activities change."""
        users = await self.durable.query("users")
        for user in users:
            if user.get("role", "attendee") == "attendee":
                await self.update_user_activity_lists(user["id"])

    async def rebuild_all(self) -> Dict[str, int]:
        """Rebuild every aggregate from the durable store. Returns counts for reporting."""
        submissions = await self.durable.query("submissions")
        for submission in submissions:
            await self.project_submission(submission["id"], None, submission)
        for activity_type in ActivityType:
            await self.update_activity_list(activity_type)
        await self.refresh_all_users()
        users = await self.durable.query("users")
        for user in users:
            await self.update_user_stats(user["id"])
        await self.update_leaderboard()
        return {"submissions": len(submissions), "users": len(users)}
