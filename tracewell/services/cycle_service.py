"""
Tracewell
UAT Cycle Service.

Cycle configuration and tester pool management.  Once ``locked_at`` is
set, configuration, tester and assignment changes are refused for good.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import func

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.auth import User
from tracewell.models.testing import (
    CYCLE_STATUSES,
    DISTRIBUTION_METHODS,
    MAX_CAPACITY_WEIGHT,
    MIN_CAPACITY_WEIGHT,
    CycleTester,
    TestExecution,
    UATCycle,
)
from tracewell.services.transition_validator import (
    can_assign_testers,
    can_lock_cycles,
    can_manage_cycles,
)
from tracewell.utils.errors import E, failure

logger = logging.getLogger(__name__)

_CYCLE_FIELDS = (
    "name",
    "description",
    "program_id",
    "distribution_method",
    "cross_validation_enabled",
    "cross_validation_percentage",
    "validators_per_test",
    "start_date",
    "end_date",
)


def _utcnow():
    return datetime.now(timezone.utc)


def _parse_date(value):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _validate_cv(enabled, percentage, validators) -> str | None:
    if not enabled:
        return None
    if percentage is None or not isinstance(percentage, int) or not 0 <= percentage <= 100:
        return "Cross-validation percentage must be between 0 and 100"
    if validators is None or not isinstance(validators, int) or validators < 2:
        return "Validators per test must be at least 2"
    return None


def _valid_weight(weight) -> bool:
    return isinstance(weight, int) and not isinstance(weight, bool) and MIN_CAPACITY_WEIGHT <= weight <= MAX_CAPACITY_WEIGHT


def _get_cycle(cycle_id):
    cycle = db.session.get(UATCycle, cycle_id)
    if cycle is None:
        return None, failure(E.NOT_FOUND, "Cycle not found")
    return cycle, None


# ═════════════════════════════════════════════════════════════════════════════
# Cycles
# ═════════════════════════════════════════════════════════════════════════════

def create_cycle(data: dict, actor) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_manage_cycles(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to create cycles")

    data = data or {}
    name = (data.get("name") or "").strip()
    if not name:
        return failure(E.VALIDATION_REQUIRED, "Cycle name is required")
    if not data.get("program_id"):
        return failure(E.VALIDATION_REQUIRED, "Program is required")
    method = data.get("distribution_method") or "equal"
    if method not in DISTRIBUTION_METHODS:
        return failure(E.VALIDATION_INVALID, f"Invalid distribution method: {method}")

    cv_enabled = bool(data.get("cross_validation_enabled", False))
    pct = data.get("cross_validation_percentage") if cv_enabled else None
    vpt = data.get("validators_per_test") if cv_enabled else None
    err = _validate_cv(cv_enabled, pct, vpt)
    if err:
        return failure(E.VALIDATION_INVALID, err)

    try:
        start_date = _parse_date(data.get("start_date"))
        end_date = _parse_date(data.get("end_date"))
    except ValueError:
        return failure(E.VALIDATION_INVALID, "Dates must be ISO formatted (YYYY-MM-DD)")
    if start_date and end_date and end_date < start_date:
        return failure(E.VALIDATION_INVALID, "End date cannot be before start date")

    cycle = UATCycle(
        program_id=data["program_id"],
        name=name,
        description=data.get("description"),
        status="draft",
        distribution_method=method,
        cross_validation_enabled=cv_enabled,
        cross_validation_percentage=pct,
        validators_per_test=vpt,
        start_date=start_date,
        end_date=end_date,
        created_by=actor.user_id,
    )
    db.session.add(cycle)
    db.session.flush()
    log_activity("cycle_created", actor.user_id, None, {"cycle_id": cycle.cycle_id, "name": name})
    db.session.commit()
    return {"success": True, "cycle_id": cycle.cycle_id, "cycle": cycle.to_dict()}


def update_cycle(cycle_id: str, data: dict, actor) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_manage_cycles(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to update cycles")

    cycle, err = _get_cycle(cycle_id)
    if err:
        return err
    if cycle.is_locked:
        return failure(E.CYCLE_LOCKED, "Cannot update a locked cycle")

    changes = {k: v for k, v in (data or {}).items() if k in _CYCLE_FIELDS}
    if "name" in changes and not (changes["name"] or "").strip():
        return failure(E.VALIDATION_REQUIRED, "Cycle name is required")
    if "distribution_method" in changes and changes["distribution_method"] not in DISTRIBUTION_METHODS:
        return failure(E.VALIDATION_INVALID, f"Invalid distribution method: {changes['distribution_method']}")

    if changes.get("cross_validation_enabled") is False:
        changes["cross_validation_percentage"] = None
        changes["validators_per_test"] = None

    cv_enabled = changes.get("cross_validation_enabled", cycle.cross_validation_enabled)
    err = _validate_cv(
        cv_enabled,
        changes.get("cross_validation_percentage", cycle.cross_validation_percentage),
        changes.get("validators_per_test", cycle.validators_per_test),
    )
    if err:
        return failure(E.VALIDATION_INVALID, err)

    try:
        for key in ("start_date", "end_date"):
            if key in changes:
                changes[key] = _parse_date(changes[key])
    except ValueError:
        return failure(E.VALIDATION_INVALID, "Dates must be ISO formatted (YYYY-MM-DD)")

    for key, value in changes.items():
        setattr(cycle, key, value.strip() if key == "name" else value)
    if cycle.start_date and cycle.end_date and cycle.end_date < cycle.start_date:
        db.session.rollback()
        return failure(E.VALIDATION_INVALID, "End date cannot be before start date")

    log_activity("cycle_updated", actor.user_id, None, {"cycle_id": cycle_id, "fields": sorted(changes)})
    db.session.commit()
    return {"success": True, "cycle": cycle.to_dict()}


def update_cycle_status(cycle_id: str, status: str, actor) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_manage_cycles(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to update cycle status")
    if status not in CYCLE_STATUSES:
        return failure(E.VALIDATION_INVALID, f"Invalid cycle status: {status}")

    cycle, err = _get_cycle(cycle_id)
    if err:
        return err
    if cycle.is_locked:
        return failure(E.CYCLE_LOCKED, "Cannot change the status of a locked cycle")
    old = cycle.status
    cycle.status = status
    log_activity("cycle_updated", actor.user_id, None, {"cycle_id": cycle_id, "from": old, "to": status})
    db.session.commit()
    return {"success": True, "cycle": cycle.to_dict()}


def lock_cycle(cycle_id: str, actor) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_lock_cycles(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to lock cycles")

    cycle, err = _get_cycle(cycle_id)
    if err:
        return err
    if cycle.is_locked:
        return {"success": True, "cycle": cycle.to_dict()}

    cycle.locked_at = _utcnow()
    cycle.locked_by = actor.user_id
    log_activity("cycle_locked", actor.user_id, None, {"cycle_id": cycle_id})
    db.session.commit()
    logger.info("Cycle %s locked by %s", cycle_id, actor.user_id, extra={"cycle_id": cycle_id})
    return {"success": True, "cycle": cycle.to_dict()}


# ═════════════════════════════════════════════════════════════════════════════
# Tester pool
# ═════════════════════════════════════════════════════════════════════════════

def _pool_guard(cycle_id, actor):
    if actor is None:
        return None, failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_assign_testers(actor.role):
        return None, failure(E.FORBIDDEN, "You do not have permission to manage tester pools")
    cycle, err = _get_cycle(cycle_id)
    if err:
        return None, err
    if cycle.is_locked:
        return None, failure(E.CYCLE_LOCKED, "Cannot modify testers on a locked cycle")
    return cycle, None


def add_tester(cycle_id: str, user_id: str, actor, capacity_weight: int = 100) -> dict:
    cycle, err = _pool_guard(cycle_id, actor)
    if err:
        return err
    if not _valid_weight(capacity_weight):
        return failure(E.VALIDATION_INVALID, "Capacity weight must be between 1 and 100")

    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return failure(E.NOT_FOUND, "User not found")
    if CycleTester.query.filter_by(cycle_id=cycle_id, user_id=user_id).first():
        return failure(E.CONFLICT_DUPLICATE, "Tester is already assigned to this cycle")

    tester = CycleTester(
        cycle_id=cycle.cycle_id,
        user_id=user_id,
        capacity_weight=capacity_weight,
        is_active=True,
        added_by=actor.user_id,
    )
    db.session.add(tester)
    log_activity("cycle_tester_added", actor.user_id, None, {
        "cycle_id": cycle_id, "user_id": user_id, "capacity_weight": capacity_weight,
    })
    db.session.commit()
    return {"success": True, "tester": tester.to_dict()}


def update_tester_capacity(cycle_id: str, user_id: str, capacity_weight: int, actor) -> dict:
    _, err = _pool_guard(cycle_id, actor)
    if err:
        return err
    if not _valid_weight(capacity_weight):
        return failure(E.VALIDATION_INVALID, "Capacity weight must be between 1 and 100")

    tester = CycleTester.query.filter_by(cycle_id=cycle_id, user_id=user_id).first()
    if tester is None:
        return failure(E.NOT_FOUND, "Tester is not in this cycle")
    old = tester.capacity_weight
    tester.capacity_weight = capacity_weight
    log_activity("cycle_tester_updated", actor.user_id, None, {
        "cycle_id": cycle_id, "user_id": user_id, "from": old, "to": capacity_weight,
    })
    db.session.commit()
    return {"success": True, "tester": tester.to_dict()}


def remove_tester(cycle_id: str, user_id: str, actor) -> dict:
    """
    Take a tester out of the pool.

    A tester who already has executions in the cycle is deactivated so the
    history keeps its owner; otherwise the membership row is deleted.
    """
    _, err = _pool_guard(cycle_id, actor)
    if err:
        return err

    tester = CycleTester.query.filter_by(cycle_id=cycle_id, user_id=user_id).first()
    if tester is None:
        return failure(E.NOT_FOUND, "Tester is not in this cycle")

    has_work = (
        TestExecution.query.filter_by(cycle_id=cycle_id, assigned_to=user_id).first() is not None
    )
    if has_work:
        tester.is_active = False
    else:
        db.session.delete(tester)
    log_activity("cycle_tester_removed", actor.user_id, None, {
        "cycle_id": cycle_id, "user_id": user_id, "deactivated": has_work,
    })
    db.session.commit()
    return {"success": True, "deactivated": has_work}


def reactivate_tester(cycle_id: str, user_id: str, actor) -> dict:
    _, err = _pool_guard(cycle_id, actor)
    if err:
        return err
    tester = CycleTester.query.filter_by(cycle_id=cycle_id, user_id=user_id).first()
    if tester is None:
        return failure(E.NOT_FOUND, "Tester is not in this cycle")
    tester.is_active = True
    log_activity("cycle_tester_updated", actor.user_id, None, {
        "cycle_id": cycle_id, "user_id": user_id, "is_active": True,
    })
    db.session.commit()
    return {"success": True, "tester": tester.to_dict()}


def list_cycle_testers(cycle_id: str, include_inactive: bool = False) -> list[dict]:
    q = CycleTester.query.filter_by(cycle_id=cycle_id)
    if not include_inactive:
        q = q.filter_by(is_active=True)
    return [t.to_dict() for t in q.order_by(CycleTester.user_id).all()]


def get_tester_workload(cycle_id: str) -> list[dict]:
    """Per-tester execution counts by status for one cycle."""
    rows = (
        db.session.query(TestExecution.assigned_to, TestExecution.status, func.count())
        .filter(TestExecution.cycle_id == cycle_id)
        .group_by(TestExecution.assigned_to, TestExecution.status)
        .all()
    )
    workload: dict[str, dict] = {}
    for user_id, status, count in rows:
        entry = workload.setdefault(user_id, {"user_id": user_id, "total": 0, "by_status": {}})
        entry["by_status"][status] = count
        entry["total"] += count
    return [workload[k] for k in sorted(workload)]
