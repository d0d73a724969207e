"""
Side-effect dispatcher tests.

The testing config runs handlers inline with a single attempt, so effects
are observable right after the lifecycle call returns.
"""

import pytest

from tracewell.models.audit import ActivityLog
from tracewell.models.notification import Notification
from tracewell.models.testing import TestCase
from tracewell.services.notification import NotificationService, recipients_for_status
from tracewell.services.side_effects import (
    EVENT_STORY_APPROVED,
    EVENT_STORY_STATUS_CHANGED,
    SideEffectDispatcher,
)
from tracewell.services.story_lifecycle import transition_story_status
from tracewell.services.test_case_generator import build_test_cases, criteria_lines


# ═════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════════════


class TestDispatcher:
    def test_handlers_run_with_payload_copy(self):
        bus = SideEffectDispatcher()
        seen = []

        def handler(payload):
            payload["touched"] = True
            seen.append(payload)

        bus.subscribe("evt", handler)
        original = {"story_id": "S-1"}
        assert bus.emit("evt", original) == 1
        assert seen == [{"story_id": "S-1", "touched": True}]
        assert original == {"story_id": "S-1"}

    def test_duplicate_subscription_ignored(self):
        bus = SideEffectDispatcher()
        calls = []
        bus.subscribe("evt", calls.append)
        bus.subscribe("evt", calls.append)
        bus.emit("evt", {})
        assert len(calls) == 1

    def test_failing_handler_is_isolated(self):
        bus = SideEffectDispatcher()
        calls = []

        def boom(payload):
            raise RuntimeError("mail server down")

        bus.subscribe("evt", boom)
        bus.subscribe("evt", calls.append)
        assert bus.emit("evt", {"n": 1}) == 2
        assert calls == [{"n": 1}]

    def test_retries_until_success(self, app):
        bus = SideEffectDispatcher()
        attempts = []

        def flaky(payload):
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("transient")

        bus.subscribe("evt", flaky)
        app.config["SIDE_EFFECT_MAX_ATTEMPTS"] = 3
        try:
            bus.emit("evt", {})
        finally:
            app.config["SIDE_EFFECT_MAX_ATTEMPTS"] = 1
        assert len(attempts) == 3

    def test_unsubscribe(self):
        bus = SideEffectDispatcher()
        bus.subscribe("evt", print)
        bus.unsubscribe("evt", print)
        assert bus.emit("evt", {}) == 0


# ═════════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════════


class TestStatusNotifications:
    def test_recipients_exclude_actor_and_other_roles(self, admin, portfolio_manager, program_manager, tester):
        recipients = recipients_for_status("Internal Review", exclude_user_id=program_manager.user_id)
        assert recipients == sorted([admin.user_id, portfolio_manager.user_id])

    def test_inactive_users_are_skipped(self, make_user, program_manager):
        make_user("Admin", user_id="admin-off", is_active=False)
        assert recipients_for_status("Internal Review", exclude_user_id=program_manager.user_id) == []

    def test_transition_notifies(self, admin, portfolio_manager, program_manager, make_story):
        story = make_story(status="Draft")
        result = transition_story_status(story.story_id, "Internal Review", program_manager)
        assert result["success"]

        rows = Notification.query.order_by(Notification.user_id).all()
        assert [n.user_id for n in rows] == sorted([admin.user_id, portfolio_manager.user_id])
        assert rows[0].notification_type == "status_change"
        assert rows[0].story_id == story.story_id
        assert NotificationService.unread_count(admin.user_id) == 1

    def test_approval_notification_type(self, admin, portfolio_manager, make_story):
        story = make_story(status="Pending Client Review")
        transition_story_status(story.story_id, "Approved", portfolio_manager)
        notif = NotificationService.list_for_user(admin.user_id)[0]
        assert notif.notification_type == "approval"
        NotificationService.mark_read(notif.id)
        assert NotificationService.unread_count(admin.user_id) == 0

    def test_notification_failure_does_not_undo_transition(self, app, admin, program_manager, make_story, monkeypatch):
        def broken(**kwargs):
            raise RuntimeError("broker down")

        monkeypatch.setattr(NotificationService, "broadcast", staticmethod(broken))
        story = make_story(status="Draft")
        result = transition_story_status(story.story_id, "Internal Review", program_manager)
        assert result["success"]
        assert Notification.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Test-case generation
# ═════════════════════════════════════════════════════════════════════════════

CRITERIA = """
- Clinician can record TNM stage
2. Stage is required before sign-off

* [x] Audit trail shows who staged
"""


class TestGeneration:
    def test_criteria_lines_strip_bullets(self):
        assert criteria_lines(CRITERIA) == [
            "Clinician can record TNM stage",
            "Stage is required before sign-off",
            "Audit trail shows who staged",
        ]
        assert criteria_lines(None) == []

    def test_build_titles(self, make_story):
        story = make_story(acceptance_criteria="Shows stage")
        cases = build_test_cases(story, "pfm-1")
        assert [c.title for c in cases] == [f"{story.story_id} AC1: Shows stage"]
        assert cases[0].is_generated is True

    def test_generated_on_approval(self, portfolio_manager, make_story):
        story = make_story(status="Pending Client Review", acceptance_criteria=CRITERIA)
        transition_story_status(story.story_id, "Approved", portfolio_manager)
        cases = TestCase.query.filter_by(story_id=story.story_id).all()
        assert len(cases) == 3
        assert all(c.status == "draft" and c.is_generated for c in cases)
        assert ActivityLog.query.filter_by(activity_type="test_cases_generated").count() == 1

    def test_not_regenerated_when_cases_exist(self, portfolio_manager, make_story, make_test_case):
        story = make_story(status="In UAT", acceptance_criteria=CRITERIA)
        make_test_case(story_id=story.story_id)
        transition_story_status(story.story_id, "Approved", portfolio_manager)
        assert TestCase.query.filter_by(story_id=story.story_id).count() == 1

    def test_disabled_by_config(self, app, portfolio_manager, make_story):
        story = make_story(status="Pending Client Review", acceptance_criteria=CRITERIA)
        app.config["AUTO_GENERATE_TEST_CASES"] = False
        try:
            transition_story_status(story.story_id, "Approved", portfolio_manager)
        finally:
            app.config["AUTO_GENERATE_TEST_CASES"] = True
        assert TestCase.query.filter_by(story_id=story.story_id).count() == 0


@pytest.mark.parametrize("event", [EVENT_STORY_STATUS_CHANGED, EVENT_STORY_APPROVED])
def test_builtin_handlers_registered(event):
    from tracewell.services.side_effects import dispatcher

    assert dispatcher.handlers_for(event)
