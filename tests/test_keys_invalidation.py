"""
Typed keys, read-through paths and the invalidation dependency graph.
"""

import pytest

from engage.core.invalidation import DEPENDENCIES, Invalidator, MutationEvent, keys_invalidated_by
from engage.core.keys import LIST_FACETS, CacheKey, Keys, Paths, full_path, path_key
from engage.core.local_cache import volatile_cache
from engage.core.types import ActivityType, CacheKind, SubmissionStatus


class TestKeys:

    def test_cache_key_skips_empty_parts(self):
        assert CacheKey("user", "u1", "", "data").render() == "user_u1_data"
        assert str(CacheKey("cache", "leaderboard")) == "cache_leaderboard"

    def test_full_path_adds_root_once(self):
        assert full_path("users/u1/stats") == "cache/users/u1/stats"
        assert full_path("cache/users/u1/stats") == "cache/users/u1/stats"
        assert full_path("/cache/leaderboard/top50/") == "cache/leaderboard/top50"

    def test_path_key_mirrors_path(self):
        assert path_key("users/u1/stats").render() == "rtdb_cache_cache_users_u1_stats"
        assert Keys.completions("u1") == path_key(Paths.completions("u1"))

    def test_paths(self):
        assert Paths.pending_activities("u1") == "users/u1/pendingActivities/combined"
        assert Paths.completed_activities("u1", "quizzes") == "users/u1/completedActivities/quizzes"
        assert Paths.submissions_by_status("approved") == "admin/submissions/byStatus/approved"
        assert Paths.submissions_by_status(SubmissionStatus.PENDING) == "admin/submissions/byStatus/pending"
        assert Paths.activity_list("quiz") == "activities/quizzes/list"

    def test_invalid_status_path_raises(self):
        with pytest.raises(ValueError):
            Paths.submissions_by_status("archived")

    def test_read_through_values_use_path_keys(self):
        assert Keys.leaderboard().render() == "rtdb_cache_cache_leaderboard_top50"
        assert Keys.user_rank("u1") == path_key(Paths.rank("u1"))
        assert Keys.user_rank("u1").render().startswith(Keys.all_ranks().render() + "_")
        assert Keys.activity_list("quizzes") == path_key(Paths.activity_list("quiz"))
        assert Keys.attendee_directory() == path_key(Paths.attendee_directory())

    def test_activity_type_parse(self):
        assert ActivityType.parse("quizzes") is ActivityType.QUIZ
        assert ActivityType.parse("FORM") is ActivityType.FORM
        assert ActivityType.parse(None) is ActivityType.TASK
        assert ActivityType.QUIZ.plural == "quizzes"


class TestDependencyGraph:

    def test_submission_created_clears_user_lists(self):
        keys = keys_invalidated_by(MutationEvent.SUBMISSION_CREATED, "u1", "quiz", "q1")

        assert Keys.completions("u1").render() in keys
        assert Keys.optimistic_pending("u1").render() in keys
        for facet in LIST_FACETS:
            assert Keys.pending_activities("u1", facet).render() in keys
            assert Keys.completed_activities("u1", facet).render() in keys
            assert Keys.pending_version("u1", facet).render() in keys
        # Not affected by a new submission
        assert Keys.leaderboard().render() not in keys
        assert Keys.local_completions("u1").render() not in keys
        assert Keys.completions("u2").render() not in keys

    def test_points_changed_without_user(self):
        assert keys_invalidated_by("points_changed") == [
            Keys.all_ranks().render() + "_*",
            Keys.leaderboard().render(),
        ]

    def test_activity_changed_without_type_clears_every_list(self):
        keys = keys_invalidated_by(MutationEvent.ACTIVITY_CHANGED)
        assert keys == [Keys.activity_list(t).render() for t in ActivityType]

    def test_no_duplicates(self):
        keys = keys_invalidated_by(MutationEvent.ALL, "u1", "task", "t1")
        assert len(keys) == len(set(keys))

    def test_every_value_is_cleared_by_all(self):
        names = {cached.name for cached in DEPENDENCIES if MutationEvent.ALL in cached.invalidated_by}
        assert names == {cached.name for cached in DEPENDENCIES}

    def test_every_value_has_a_specific_event(self):
        for cached in DEPENDENCIES:
            assert cached.invalidated_by - {MutationEvent.ALL}, cached.name

    def test_unknown_event_raises(self):
        with pytest.raises(ValueError):
            keys_invalidated_by("archived", "u1")


class TestInvalidator:

    def test_invalidate_removes_only_dependent_keys(self, cache):
        cache.set(Keys.completions("u1"), {"tasks": {}}, CacheKind.COMPLETIONS)
        cache.set(Keys.leaderboard(), [], CacheKind.LEADERBOARD)
        cache.set(Keys.completions("u2"), {"tasks": {}}, CacheKind.COMPLETIONS)

        cleared = Invalidator(cache).invalidate(MutationEvent.SUBMISSION_REVIEWED, "u1", "task", "t1")

        assert Keys.completions("u1").render() in cleared
        assert cache.get(Keys.completions("u1")) is None
        assert cache.get(Keys.leaderboard()) == []
        assert cache.get(Keys.completions("u2")) == {"tasks": {}}

    def test_points_change_clears_every_rank(self, cache):
        cache.set(Keys.user_rank("u1"), {"rank": 1}, CacheKind.RANK)
        cache.set(Keys.user_rank("u2"), {"rank": 2}, CacheKind.RANK)
        cache.set(Keys.completions("u2"), {"tasks": {}}, CacheKind.COMPLETIONS)

        Invalidator(cache).invalidate(MutationEvent.POINTS_CHANGED, "u1")

        assert cache.get(Keys.user_rank("u1")) is None
        assert cache.get(Keys.user_rank("u2")) is None
        assert cache.get(Keys.completions("u2")) == {"tasks": {}}

    def test_session_values_are_cleared_in_the_session_cache(self, cache, clock):
        session = volatile_cache(clock=clock)
        session.set(Keys.optimistic_pending("u1"), [], CacheKind.SYSTEM)
        cache.set(Keys.optimistic_pending("u1"), ["unrelated"], CacheKind.SYSTEM)

        Invalidator(cache, session).invalidate(MutationEvent.SUBMISSION_CREATED, "u1")

        assert session.get(Keys.optimistic_pending("u1")) is None
        assert cache.get(Keys.optimistic_pending("u1")) == ["unrelated"]

    def test_all_without_user_clears_everything(self, cache, clock):
        session = volatile_cache(clock=clock)
        cache.set("a", 1)
        cache.set(Keys.leaderboard(), [], CacheKind.LEADERBOARD)
        session.set(Keys.local_completions("u1"), {}, CacheKind.COMPLETIONS)

        assert Invalidator(cache, session).invalidate("all") == ["*"]
        assert cache.storage.keys() == []
        assert session.storage.keys() == []

    def test_all_with_user_is_scoped(self, cache):
        cache.set(Keys.completions("u1"), 1, CacheKind.COMPLETIONS)
        cache.set(Keys.completions("u2"), 2, CacheKind.COMPLETIONS)

        Invalidator(cache).invalidate(MutationEvent.ALL, "u1")

        assert cache.get(Keys.completions("u1")) is None
        assert cache.get(Keys.completions("u2")) == 2
