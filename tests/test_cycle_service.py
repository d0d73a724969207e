"""
UAT cycle service tests: cycle CRUD, locking and tester pool management.
"""

from datetime import date

import pytest

from tracewell.models import db
from tracewell.models.testing import CycleTester, TestExecution, UATCycle
from tracewell.services import cycle_service
from tracewell.utils.errors import E

PROGRAM_ID = "onco-program"


def _create(actor, **data):
    payload = {"name": "UAT Round 1", "program_id": PROGRAM_ID}
    payload.update(data)
    return cycle_service.create_cycle(payload, actor)


# ═════════════════════════════════════════════════════════════════════════════
# Cycles
# ═════════════════════════════════════════════════════════════════════════════


class TestCycles:
    def test_create_cycle(self, uat_manager):
        result = _create(uat_manager, start_date="2026-03-01", end_date="2026-03-15")
        assert result["success"], result
        cycle = result["cycle"]
        assert cycle["status"] == "draft"
        assert cycle["distribution_method"] == "equal"
        assert cycle["start_date"] == "2026-03-01"
        assert cycle["locked_at"] is None

    def test_cv_settings_dropped_when_disabled(self, uat_manager):
        result = _create(uat_manager, cross_validation_percentage=40, validators_per_test=3)
        assert result["cycle"]["cross_validation_percentage"] is None
        assert result["cycle"]["validators_per_test"] is None

    @pytest.mark.parametrize("pct,vpt", [(None, 2), (101, 2), (-1, 2), (20, 1), (20, None), ("20", 2)])
    def test_invalid_cv_settings(self, uat_manager, pct, vpt):
        result = _create(
            uat_manager,
            cross_validation_enabled=True,
            cross_validation_percentage=pct,
            validators_per_test=vpt,
        )
        assert result["code"] == E.VALIDATION_INVALID

    def test_end_before_start(self, uat_manager):
        result = _create(uat_manager, start_date="2026-03-10", end_date="2026-03-01")
        assert result["code"] == E.VALIDATION_INVALID

    def test_tester_cannot_create(self, tester):
        result = _create(tester)
        assert result["code"] == E.FORBIDDEN
        assert result["error"] == "You do not have permission to create cycles"

    def test_update_cycle(self, uat_manager, make_cycle):
        cycle = make_cycle()
        result = cycle_service.update_cycle(cycle.cycle_id, {
            "distribution_method": "weighted",
            "cross_validation_enabled": True,
            "cross_validation_percentage": 25,
            "validators_per_test": 2,
            "end_date": date(2026, 4, 1),
        }, uat_manager)
        assert result["success"], result
        assert result["cycle"]["distribution_method"] == "weighted"
        assert result["cycle"]["cross_validation_percentage"] == 25

    def test_lock_is_terminal_for_configuration(self, uat_manager, make_cycle):
        cycle = make_cycle()
        assert cycle_service.lock_cycle(cycle.cycle_id, uat_manager)["success"]
        result = cycle_service.update_cycle(cycle.cycle_id, {"name": "Renamed"}, uat_manager)
        assert result["code"] == E.CYCLE_LOCKED

    def test_lock_is_idempotent(self, uat_manager, make_cycle):
        cycle = make_cycle()
        first = cycle_service.lock_cycle(cycle.cycle_id, uat_manager)["cycle"]["locked_at"]
        second = cycle_service.lock_cycle(cycle.cycle_id, uat_manager)["cycle"]["locked_at"]
        assert first == second

    def test_program_manager_cannot_lock(self, program_manager, make_cycle):
        cycle = make_cycle()
        assert cycle_service.lock_cycle(cycle.cycle_id, program_manager)["code"] == E.FORBIDDEN

    def test_status_change(self, uat_manager, make_cycle):
        cycle = make_cycle()
        assert cycle_service.update_cycle_status(cycle.cycle_id, "active", uat_manager)["cycle"]["status"] == "active"
        assert cycle_service.update_cycle_status(cycle.cycle_id, "paused", uat_manager)["code"] == E.VALIDATION_INVALID

    def test_locked_cycle_status_is_frozen(self, uat_manager, make_cycle):
        cycle = make_cycle(status="active")
        cycle_service.lock_cycle(cycle.cycle_id, uat_manager)
        result = cycle_service.update_cycle_status(cycle.cycle_id, "completed", uat_manager)
        assert result["code"] == E.CYCLE_LOCKED
        assert db.session.get(UATCycle, cycle.cycle_id).status == "active"


# ═════════════════════════════════════════════════════════════════════════════
# Tester pool
# ═════════════════════════════════════════════════════════════════════════════


class TestTesterPool:
    def test_add_tester(self, uat_manager, tester, make_cycle):
        cycle = make_cycle()
        result = cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager, capacity_weight=60)
        assert result["success"], result
        assert result["tester"]["capacity_weight"] == 60
        assert result["tester"]["user_name"] == "Toni Tester"

    def test_duplicate_tester(self, uat_manager, tester, make_cycle):
        cycle = make_cycle()
        cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager)
        result = cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager)
        assert result["code"] == E.CONFLICT_DUPLICATE

    @pytest.mark.parametrize("weight", [0, 101, -5, 50.5, True, "50"])
    def test_weight_bounds(self, uat_manager, tester, make_cycle, weight):
        cycle = make_cycle()
        result = cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager, capacity_weight=weight)
        assert result["code"] == E.VALIDATION_INVALID

    def test_update_capacity(self, uat_manager, tester, make_cycle):
        cycle = make_cycle()
        cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager)
        result = cycle_service.update_tester_capacity(cycle.cycle_id, tester.user_id, 25, uat_manager)
        assert result["tester"]["capacity_weight"] == 25

    def test_locked_cycle_refuses_pool_changes(self, uat_manager, tester, make_cycle):
        cycle = make_cycle()
        cycle_service.lock_cycle(cycle.cycle_id, uat_manager)
        result = cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager)
        assert result["code"] == E.CYCLE_LOCKED
        assert result["error"] == "Cannot modify testers on a locked cycle"

    def test_remove_tester_without_work_deletes(self, uat_manager, tester, make_cycle):
        cycle = make_cycle()
        cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager)
        result = cycle_service.remove_tester(cycle.cycle_id, tester.user_id, uat_manager)
        assert result == {"success": True, "deactivated": False}
        assert CycleTester.query.filter_by(cycle_id=cycle.cycle_id).count() == 0

    def test_remove_tester_with_work_deactivates(
        self, uat_manager, tester, make_cycle, make_test_case,
    ):
        cycle = make_cycle()
        cycle_service.add_tester(cycle.cycle_id, tester.user_id, uat_manager)
        tc = make_test_case()
        db.session.add(TestExecution(
            cycle_id=cycle.cycle_id, test_case_id=tc.test_case_id, assigned_to=tester.user_id,
        ))
        db.session.commit()

        result = cycle_service.remove_tester(cycle.cycle_id, tester.user_id, uat_manager)
        assert result["deactivated"] is True
        assert cycle_service.list_cycle_testers(cycle.cycle_id) == []
        assert len(cycle_service.list_cycle_testers(cycle.cycle_id, include_inactive=True)) == 1

        assert cycle_service.reactivate_tester(cycle.cycle_id, tester.user_id, uat_manager)["success"]
        assert len(cycle_service.list_cycle_testers(cycle.cycle_id)) == 1

        workload = cycle_service.get_tester_workload(cycle.cycle_id)
        assert workload == [{"user_id": tester.user_id, "total": 1, "by_status": {"assigned": 1}}]

    def test_unknown_user(self, uat_manager, make_cycle):
        cycle = make_cycle()
        result = cycle_service.add_tester(cycle.cycle_id, "nobody", uat_manager)
        assert result["code"] == E.NOT_FOUND
