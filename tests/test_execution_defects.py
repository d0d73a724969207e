"""
Test execution and defect service tests.

Executions: ownership, rule-table moves, notes, timestamps, step results.
Defects: creation from an execution, lifecycle, resolution stamps, assignment.
"""

import pytest

from tracewell.models import db
from tracewell.models.testing import TestExecution
from tracewell.services import defect_service, execution_service
from tracewell.utils.errors import E


@pytest.fixture()
def execution(make_cycle, make_test_case, tester):
    cycle = make_cycle()
    tc = make_test_case()
    row = TestExecution(
        cycle_id=cycle.cycle_id,
        test_case_id=tc.test_case_id,
        story_id=tc.story_id,
        assigned_to=tester.user_id,
        status="assigned",
        step_results=[],
    )
    db.session.add(row)
    db.session.commit()
    return row


def _set_status(execution, status):
    execution.status = status
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# Executions
# ═════════════════════════════════════════════════════════════════════════════


class TestExecutionTransitions:
    def test_start_stamps_started_at(self, execution, tester):
        result = execution_service.start_execution(execution.execution_id, tester, environment="staging")
        assert result["success"], result
        assert result["execution"]["status"] == "in_progress"
        assert result["execution"]["started_at"] is not None
        assert result["execution"]["environment"] == "staging"

    def test_only_assignee_may_start(self, execution, make_user):
        other = make_user(user_id="tester-2")
        result = execution_service.start_execution(execution.execution_id, other)
        assert result["code"] == E.FORBIDDEN
        assert result["error"] == "You can only update tests assigned to you"

    def test_illegal_move(self, execution, tester):
        result = execution_service.transition_execution(execution.execution_id, "passed", tester)
        assert result["code"] == E.TRANSITION_NOT_ALLOWED
        assert result["error"] == "Cannot transition from assigned to passed"

    def test_pass_sets_completed_at(self, execution, tester):
        execution_service.start_execution(execution.execution_id, tester)
        result = execution_service.complete_execution(execution.execution_id, "passed", tester)
        assert result["execution"]["completed_at"] is not None

    @pytest.mark.parametrize("status", ["failed", "blocked"])
    def test_failure_outcomes_need_notes(self, execution, tester, status):
        execution_service.start_execution(execution.execution_id, tester)
        result = execution_service.complete_execution(execution.execution_id, status, tester)
        assert result["code"] == E.NOTES_REQUIRED
        result = execution_service.complete_execution(execution.execution_id, status, tester, notes="Login hangs")
        assert result["success"]
        assert result["execution"]["notes"] == "Login hangs"

    def test_complete_rejects_non_outcome(self, execution, tester):
        result = execution_service.complete_execution(execution.execution_id, "verified", tester)
        assert result["code"] == E.VALIDATION_INVALID

    def test_retest_clears_completion(self, execution, tester):
        _set_status(execution, "failed")
        result = execution_service.transition_execution(
            execution.execution_id, "in_progress", tester, notes="Fix deployed",
        )
        assert result["success"]
        assert result["execution"]["completed_at"] is None

    def test_tester_cannot_verify_even_own(self, execution, tester):
        _set_status(execution, "passed")
        result = execution_service.verify_execution(execution.execution_id, tester)
        assert result["code"] == E.TRANSITION_NOT_ALLOWED

    def test_manager_verifies(self, execution, uat_manager):
        _set_status(execution, "passed")
        result = execution_service.verify_execution(execution.execution_id, uat_manager)
        assert result["success"]
        assert result["execution"]["verified_by"] == uat_manager.user_id

    def test_verified_is_terminal(self, execution, uat_manager, tester):
        _set_status(execution, "verified")
        assert execution_service.available_execution_actions(execution, uat_manager) == []
        assert execution_service.available_execution_actions(execution, tester) == []

    def test_available_actions_need_ownership(self, execution, tester, make_user):
        other = make_user(user_id="tester-2")
        assert [a["to"] for a in execution_service.available_execution_actions(execution, tester)] == ["in_progress"]
        assert execution_service.available_execution_actions(execution, other) == []

    def test_list_my_executions(self, execution, tester):
        assert [e.execution_id for e in execution_service.list_my_executions(tester)] == [execution.execution_id]


class TestStepResults:
    def test_step_recorded_and_replaced(self, execution, tester):
        execution_service.start_execution(execution.execution_id, tester)
        execution_service.submit_step_result(execution.execution_id, {"step_number": 2, "status": "passed"}, tester)
        execution_service.submit_step_result(execution.execution_id, {"step_number": 1, "status": "failed"}, tester)
        result = execution_service.submit_step_result(
            execution.execution_id, {"step_number": 2, "status": "blocked", "notes": "env down"}, tester,
        )
        assert result["success"]
        steps = result["step_results"]
        assert [(s["step_number"], s["status"]) for s in steps] == [(1, "failed"), (2, "blocked")]

    def test_step_requires_in_progress(self, execution, tester):
        result = execution_service.submit_step_result(
            execution.execution_id, {"step_number": 1, "status": "passed"}, tester,
        )
        assert result["code"] == E.CONFLICT_STATE

    @pytest.mark.parametrize("step", [
        {"step_number": 0, "status": "passed"},
        {"step_number": "1", "status": "passed"},
        {"step_number": 1, "status": "maybe"},
    ])
    def test_invalid_step(self, execution, tester, step):
        execution_service.start_execution(execution.execution_id, tester)
        result = execution_service.submit_step_result(execution.execution_id, step, tester)
        assert result["code"] == E.VALIDATION_INVALID


# ═════════════════════════════════════════════════════════════════════════════
# Defects
# ═════════════════════════════════════════════════════════════════════════════


class TestDefects:
    def test_create_from_execution(self, execution, tester):
        result = defect_service.create_defect({
            "title": "Dose field accepts negatives",
            "execution_id": execution.execution_id,
            "severity": "high",
            "failed_step_number": 3,
        }, tester)
        assert result["success"], result
        defect = result["defect"]
        assert defect["status"] == "open"
        assert defect["story_id"] == execution.story_id
        assert defect["test_case_id"] == execution.test_case_id
        assert defect["reported_by"] == tester.user_id

    def test_create_validates(self, execution, tester, developer):
        assert defect_service.create_defect({"execution_id": execution.execution_id}, tester)["code"] == E.VALIDATION_REQUIRED
        bad = {"title": "x", "execution_id": execution.execution_id, "severity": "urgent"}
        assert defect_service.create_defect(bad, tester)["code"] == E.VALIDATION_INVALID
        assert defect_service.create_defect({"title": "x"}, tester)["code"] == E.VALIDATION_REQUIRED
        assert defect_service.create_defect({"title": "x", "execution_id": execution.execution_id}, developer)["code"] == E.FORBIDDEN

    def test_lifecycle_and_resolution_stamps(self, execution, tester, uat_manager):
        defect_id = defect_service.create_defect(
            {"title": "Crash", "execution_id": execution.execution_id}, tester,
        )["defect_id"]

        for status in ("confirmed", "in_progress"):
            assert defect_service.transition_defect(defect_id, status, uat_manager)["success"]
        assert defect_service.transition_defect(defect_id, "fixed", uat_manager)["code"] == E.NOTES_REQUIRED

        fixed = defect_service.transition_defect(defect_id, "fixed", uat_manager, notes="Patched validator")
        assert fixed["defect"]["resolved_by"] == uat_manager.user_id
        assert fixed["defect"]["resolution_notes"] == "Patched validator"

        assert defect_service.transition_defect(defect_id, "verified", uat_manager)["success"]
        assert defect_service.transition_defect(defect_id, "closed", uat_manager)["success"]

        reopened = defect_service.transition_defect(defect_id, "open", uat_manager, notes="Regressed")
        assert reopened["defect"]["status"] == "open"
        assert reopened["defect"]["resolved_by"] is None

    def test_tester_cannot_confirm(self, execution, tester):
        defect_id = defect_service.create_defect(
            {"title": "Crash", "execution_id": execution.execution_id}, tester,
        )["defect_id"]
        assert defect_service.transition_defect(defect_id, "confirmed", tester)["code"] == E.TRANSITION_NOT_ALLOWED

    def test_assign_defect(self, execution, tester, uat_manager, developer):
        defect_id = defect_service.create_defect(
            {"title": "Crash", "execution_id": execution.execution_id}, tester,
        )["defect_id"]
        result = defect_service.assign_defect(defect_id, developer.user_id, uat_manager)
        assert result["defect"]["assigned_to"] == developer.user_id
        assert defect_service.assign_defect(defect_id, developer.user_id, tester)["code"] == E.FORBIDDEN
        assert [d.defect_id for d in defect_service.list_defects(story_id=execution.story_id)] == [defect_id]
