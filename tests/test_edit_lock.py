"""
Story edit lock tests.

The clock is injected through ``now=`` so expiry is tested without sleeping.
"""

from datetime import datetime, timedelta, timezone

import pytest

from tracewell.models.audit import ActivityLog
from tracewell.services import edit_lock
from tracewell.utils.errors import E

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def story(make_story):
    return make_story(story_id="ONCO-20260301-LOCK")


class TestAcquire:
    def test_acquire_free_story(self, story, program_manager):
        result = edit_lock.acquire(story.story_id, program_manager, now=T0)
        assert result["success"] is True
        assert result["locked_by"] == program_manager.user_id
        assert result["expires_at"] == (T0 + timedelta(seconds=900)).isoformat()

        state = edit_lock.inspect(story.story_id, now=T0 + timedelta(minutes=1))
        assert state["is_locked"] is True
        assert state["locked_by_name"] == "Quinn Program"

    def test_second_actor_is_refused_with_holder_name(self, story, program_manager, portfolio_manager):
        edit_lock.acquire(story.story_id, program_manager, now=T0)
        result = edit_lock.acquire(story.story_id, portfolio_manager, now=T0 + timedelta(minutes=5))
        assert result["success"] is False
        assert result["code"] == E.LOCKED
        assert result["error"] == "This story is being edited by Quinn Program"
        assert result["locked_by_name"] == "Quinn Program"
        assert result["locked_since"].startswith("2026-03-01T09:00")

    def test_same_actor_refreshes(self, story, program_manager):
        edit_lock.acquire(story.story_id, program_manager, now=T0)
        later = T0 + timedelta(minutes=10)
        result = edit_lock.acquire(story.story_id, program_manager, now=later)
        assert result["success"] is True
        assert result["expires_at"] == (later + timedelta(seconds=900)).isoformat()

    def test_expired_lock_can_be_taken(self, story, program_manager, portfolio_manager):
        edit_lock.acquire(story.story_id, program_manager, now=T0)
        after_ttl = T0 + timedelta(seconds=901)
        result = edit_lock.acquire(story.story_id, portfolio_manager, now=after_ttl)
        assert result["success"] is True
        assert edit_lock.inspect(story.story_id, now=after_ttl)["locked_by"] == portfolio_manager.user_id

    def test_missing_story(self, program_manager):
        result = edit_lock.acquire("ONCO-20260301-NONE", program_manager, now=T0)
        assert result["code"] == E.NOT_FOUND

    def test_unauthenticated(self, story):
        assert edit_lock.acquire(story.story_id, None)["code"] == E.UNAUTHENTICATED


class TestReleaseAndInspect:
    def test_release_by_holder(self, story, program_manager):
        edit_lock.acquire(story.story_id, program_manager, now=T0)
        result = edit_lock.release(story.story_id, program_manager)
        assert result["released"] is True
        assert edit_lock.inspect(story.story_id, now=T0)["is_locked"] is False

    def test_release_by_other_actor_is_noop(self, story, program_manager, portfolio_manager):
        edit_lock.acquire(story.story_id, program_manager, now=T0)
        result = edit_lock.release(story.story_id, portfolio_manager)
        assert result["released"] is False
        assert edit_lock.inspect(story.story_id, now=T0)["is_locked"] is True

    def test_release_is_idempotent(self, story, program_manager):
        assert edit_lock.release(story.story_id, program_manager)["success"] is True
        assert edit_lock.release(story.story_id, program_manager)["released"] is False

    def test_expired_lock_reads_unlocked(self, story, program_manager):
        edit_lock.acquire(story.story_id, program_manager, now=T0)
        state = edit_lock.inspect(story.story_id, now=T0 + timedelta(hours=1))
        assert state == {
            "exists": True,
            "is_locked": False,
            "locked_by": None,
            "locked_by_name": None,
            "locked_since": None,
        }

    def test_inspect_missing(self):
        assert edit_lock.inspect("ONCO-20260301-NONE")["exists"] is False


class TestSweep:
    def test_sweep_clears_only_expired(self, make_story, program_manager, portfolio_manager):
        stale = make_story(story_id="ONCO-20260301-OLD1")
        fresh = make_story(story_id="ONCO-20260301-NEW1")
        edit_lock.acquire(stale.story_id, program_manager, now=T0)
        edit_lock.acquire(fresh.story_id, portfolio_manager, now=T0 + timedelta(minutes=20))

        cleared = edit_lock.sweep_expired_locks(now=T0 + timedelta(minutes=25))

        assert cleared == 1
        assert edit_lock.inspect(stale.story_id, now=T0)["is_locked"] is False
        assert edit_lock.inspect(fresh.story_id, now=T0 + timedelta(minutes=25))["is_locked"] is True
        entry = ActivityLog.query.filter_by(activity_type="story_locks_swept").one()
        assert entry.meta == {"count": 1}

    def test_sweep_with_nothing_to_do(self, story):
        assert edit_lock.sweep_expired_locks(now=T0) == 0
        assert ActivityLog.query.filter_by(activity_type="story_locks_swept").count() == 0
