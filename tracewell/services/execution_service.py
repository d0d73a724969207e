"""
Tracewell
Test Execution Service.

Every status move goes through the execution rule table.  The assigned
tester drives assigned → in_progress → passed/failed/blocked and the
backward re-test moves; ``passed → verified`` belongs to verifier roles and
is never open to the tester role, whoever is assigned.
"""

import logging
from datetime import datetime, timezone

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.testing import STEP_OUTCOMES, TestExecution
from tracewell.models.transitions import EXECUTION_STATUS_CONFIG
from tracewell.services.transition_validator import (
    allowed_execution_transitions,
    find_transition,
)
from tracewell.utils.errors import E, failure

logger = logging.getLogger(__name__)

COMPLETION_STATUSES = ("passed", "failed", "blocked")


def _utcnow():
    return datetime.now(timezone.utc)


def get_execution(execution_id):
    return db.session.get(TestExecution, execution_id)


def list_my_executions(actor, cycle_id=None) -> list[TestExecution]:
    if actor is None:
        return []
    q = TestExecution.query.filter_by(assigned_to=actor.user_id)
    if cycle_id:
        q = q.filter_by(cycle_id=cycle_id)
    return q.order_by(TestExecution.assigned_at, TestExecution.execution_id).all()


def available_execution_actions(execution, actor) -> list[dict]:
    """Entries the actor may take; the tester-only moves need ownership."""
    if execution is None or actor is None:
        return []
    owner = execution.assigned_to == actor.user_id
    return [
        t.to_dict()
        for t in allowed_execution_transitions(execution.status, actor.role)
        if owner or t.to == "verified"
    ]


def transition_execution(execution_id: str, to_status: str, actor, notes: str | None = None) -> dict:
    """
    Move an execution to ``to_status``.

    Returns:
        {"success": True, "execution": dict} or a failure result.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")

    execution = get_execution(execution_id)
    if execution is None:
        return failure(E.NOT_FOUND, "Execution not found")

    current = execution.status
    entry = find_transition(EXECUTION_STATUS_CONFIG, current, to_status, actor.role)
    if entry is None:
        return failure(E.TRANSITION_NOT_ALLOWED, f"Cannot transition from {current} to {to_status}")
    if to_status != "verified" and execution.assigned_to != actor.user_id:
        return failure(E.FORBIDDEN, "You can only update tests assigned to you")

    notes = (notes or "").strip() or None
    if entry.requires_notes and not notes:
        return failure(E.NOTES_REQUIRED, f"Notes are required to {entry.label.lower()}")

    now = _utcnow()
    execution.status = to_status
    if to_status == "in_progress":
        execution.started_at = execution.started_at or now
        execution.completed_at = None
    elif to_status in COMPLETION_STATUSES:
        execution.completed_at = now
    elif to_status == "verified":
        execution.verified_by = actor.user_id
        execution.verified_at = now
    if notes:
        execution.notes = notes

    log_activity("execution_status_changed", actor.user_id, execution.story_id, {
        "execution_id": execution_id,
        "cycle_id": execution.cycle_id,
        "from": current,
        "to": to_status,
        "notes": notes,
    })
    db.session.commit()
    logger.info("Execution %s: %s → %s by %s", execution_id, current, to_status, actor.user_id,
                extra={"execution_id": execution_id})
    return {"success": True, "execution": execution.to_dict()}


def start_execution(execution_id: str, actor, environment: str | None = None) -> dict:
    result = transition_execution(execution_id, "in_progress", actor)
    if result["success"] and environment:
        execution = get_execution(execution_id)
        execution.environment = environment
        db.session.commit()
        result["execution"] = execution.to_dict()
    return result


def complete_execution(execution_id: str, status: str, actor, notes: str | None = None) -> dict:
    if status not in COMPLETION_STATUSES:
        return failure(E.VALIDATION_INVALID, f"Invalid completion status: {status}")
    return transition_execution(execution_id, status, actor, notes)


def verify_execution(execution_id: str, actor, notes: str | None = None) -> dict:
    return transition_execution(execution_id, "verified", actor, notes)


def submit_step_result(execution_id: str, step_result: dict, actor) -> dict:
    """
    Record one step outcome.  A result for the same step number replaces
    the earlier one; the list stays ordered by step number.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")

    execution = get_execution(execution_id)
    if execution is None:
        return failure(E.NOT_FOUND, "Execution not found")
    if execution.assigned_to != actor.user_id:
        return failure(E.FORBIDDEN, "You can only update tests assigned to you")
    if execution.status != "in_progress":
        return failure(E.CONFLICT_STATE, "Execution must be in progress to update steps")

    step_result = dict(step_result or {})
    step_number = step_result.get("step_number")
    if not isinstance(step_number, int) or isinstance(step_number, bool) or step_number < 1:
        return failure(E.VALIDATION_INVALID, "step_number must be a positive integer")
    if step_result.get("status") not in STEP_OUTCOMES:
        return failure(E.VALIDATION_INVALID, f"Invalid step status: {step_result.get('status')}")

    step_result["recorded_at"] = _utcnow().isoformat()
    results = [r for r in (execution.step_results or []) if r.get("step_number") != step_number]
    results.append(step_result)
    results.sort(key=lambda r: r.get("step_number", 0))
    execution.step_results = results
    db.session.commit()
    return {"success": True, "step_results": results}
