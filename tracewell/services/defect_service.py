"""
Tracewell
Defect Service.

Defects are raised from executions (or directly against a story) and move
through the defect rule table.  ``closed → open`` is the only backward skip
and requires notes.
"""

import logging
from datetime import datetime, timezone

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.auth import User
from tracewell.models.story import Story
from tracewell.models.testing import DEFECT_SEVERITIES, Defect, TestExecution
from tracewell.models.transitions import DEFECT_STATUS_CONFIG
from tracewell.services.transition_validator import (
    can_create_defects,
    can_resolve_defects,
    find_transition,
)
from tracewell.utils.errors import E, failure

logger = logging.getLogger(__name__)

# Entering these statuses stamps resolved_by / resolved_at
RESOLUTION_STATUSES = frozenset({"fixed", "verified", "closed"})


def _utcnow():
    return datetime.now(timezone.utc)


def create_defect(data: dict, actor) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_create_defects(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to create defects")

    data = data or {}
    title = (data.get("title") or "").strip()
    if not title:
        return failure(E.VALIDATION_REQUIRED, "Title is required")
    severity = data.get("severity") or "medium"
    if severity not in DEFECT_SEVERITIES:
        return failure(E.VALIDATION_INVALID, f"Invalid severity: {severity}")

    execution = None
    if data.get("execution_id"):
        execution = db.session.get(TestExecution, data["execution_id"])
        if execution is None:
            return failure(E.NOT_FOUND, "Execution not found")

    story_id = data.get("story_id") or (execution.story_id if execution else None)
    if not story_id:
        return failure(E.VALIDATION_REQUIRED, "Story is required")
    story = db.session.get(Story, story_id)
    if story is None:
        return failure(E.NOT_FOUND, "Story not found")

    defect = Defect(
        execution_id=execution.execution_id if execution else None,
        test_case_id=data.get("test_case_id") or (execution.test_case_id if execution else None),
        story_id=story_id,
        program_id=data.get("program_id") or story.program_id,
        title=title,
        description=data.get("description"),
        steps_to_reproduce=data.get("steps_to_reproduce"),
        severity=severity,
        status="open",
        failed_step_number=data.get("failed_step_number"),
        reported_by=actor.user_id,
    )
    db.session.add(defect)
    db.session.flush()
    log_activity("defect_created", actor.user_id, story_id, {
        "defect_id": defect.defect_id,
        "severity": severity,
        "execution_id": defect.execution_id,
    })
    db.session.commit()
    return {"success": True, "defect_id": defect.defect_id, "defect": defect.to_dict()}


def transition_defect(defect_id: str, new_status: str, actor, notes: str | None = None) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")

    defect = db.session.get(Defect, defect_id)
    if defect is None:
        return failure(E.NOT_FOUND, "Defect not found")

    current = defect.status
    entry = find_transition(DEFECT_STATUS_CONFIG, current, new_status, actor.role)
    if entry is None:
        return failure(E.TRANSITION_NOT_ALLOWED, f"Cannot transition from {current} to {new_status}")

    notes = (notes or "").strip() or None
    if entry.requires_notes and not notes:
        return failure(E.NOTES_REQUIRED, f"Notes are required to {entry.label.lower()}")

    defect.status = new_status
    if new_status in RESOLUTION_STATUSES:
        defect.resolved_by = actor.user_id
        defect.resolved_at = _utcnow()
    elif new_status == "open":
        defect.resolved_by = None
        defect.resolved_at = None
    if notes:
        defect.resolution_notes = notes

    log_activity("defect_status_changed", actor.user_id, defect.story_id, {
        "defect_id": defect_id, "from": current, "to": new_status, "notes": notes,
    })
    db.session.commit()
    logger.info("Defect %s: %s → %s by %s", defect_id, current, new_status, actor.user_id,
                extra={"defect_id": defect_id})
    return {"success": True, "defect": defect.to_dict()}


def assign_defect(defect_id: str, assignee_id: str, actor) -> dict:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "Not authenticated")
    if not can_resolve_defects(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to assign defects")

    defect = db.session.get(Defect, defect_id)
    if defect is None:
        return failure(E.NOT_FOUND, "Defect not found")
    assignee = db.session.get(User, assignee_id) if assignee_id else None
    if assignee_id and (assignee is None or not assignee.is_active):
        return failure(E.NOT_FOUND, "Assignee not found")

    defect.assigned_to = assignee_id or None
    log_activity("defect_assigned", actor.user_id, defect.story_id, {
        "defect_id": defect_id, "assigned_to": defect.assigned_to,
    })
    db.session.commit()
    return {"success": True, "defect": defect.to_dict()}


def list_defects(story_id=None, status=None, program_id=None) -> list[Defect]:
    q = Defect.query
    if story_id:
        q = q.filter_by(story_id=story_id)
    if status:
        q = q.filter_by(status=status)
    if program_id:
        q = q.filter_by(program_id=program_id)
    return q.order_by(Defect.created_at.desc(), Defect.defect_id).all()
