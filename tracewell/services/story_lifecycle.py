"""
Tracewell
Story Lifecycle Service.

Manages story create / update / status transitions / soft delete with:
  - Transition validation (STORY_STATUS_CONFIG via transition_validator)
  - Compare-and-swap on ``version``: every write is conditional on the
    version the caller read, and a lost race returns ERR_VERSION_CONFLICT
  - First-entered status date stamping
  - Approval records and version snapshots (append-only audit)
  - Side effects (notifications, test-case generation) emitted as events
    after commit, never awaited

Usage:
    from tracewell.services.story_lifecycle import transition_story_status

    result = transition_story_status("ONCO-20260301-K3XZ", "Internal Review", actor)
    if not result["success"]:
        ...  # render result["error"]
"""

import json
import logging
import secrets
import string
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.story import (
    DELETE_PROTECTED_STATUSES,
    PRIORITIES,
    STATUS_APPROVED,
    STATUS_DATE_FIELDS,
    STATUS_DRAFT,
    STORY_STATUSES,
    Story,
    StoryApproval,
    StoryVersion,
)
from tracewell.models.transitions import STORY_STATUS_CONFIG
from tracewell.services import edit_lock
from tracewell.services.side_effects import (
    EVENT_STORY_APPROVED,
    EVENT_STORY_STATUS_CHANGED,
    emit,
)
from tracewell.services.transition_validator import (
    allowed_story_transitions,
    can_delete_stories,
    find_transition,
)
from tracewell.utils.errors import E, failure

logger = logging.getLogger(__name__)

# Fields a caller may change through update_story
EDITABLE_FIELDS = (
    "title",
    "priority",
    "user_story",
    "acceptance_criteria",
    "success_metrics",
    "internal_notes",
    "client_feedback",
    "is_technical",
    "parent_story_id",
    "related_stories",
    "status",
)

MAX_TITLE_LEN = 300

_ID_ALPHABET = string.ascii_uppercase + string.digits
_ID_ATTEMPTS = 5


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═════════════════════════════════════════════════════════════════════════════

def generate_story_id(program_id: str, today=None) -> str:
    """
    Human-readable story id: ``PREF-YYYYMMDD-XXXX``.

    PREF is the first four characters of the program id, upper-cased; XXXX
    is a random base-36 suffix.  Uniqueness is probabilistic only.
    """
    prefix = (str(program_id or "")[:4] or "STRY").upper()
    today = today or _utcnow().date()
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
    return f"{prefix}-{today:%Y%m%d}-{suffix}"


def is_delete_protected(status) -> bool:
    """Stories in Approved / In Development / In UAT can never be deleted."""
    return status in DELETE_PROTECTED_STATUSES


def status_date_updates(story, new_status, now) -> dict:
    """Date column to stamp on entering ``new_status``, unless already set."""
    field = STATUS_DATE_FIELDS.get(new_status)
    if field and getattr(story, field, None) is None:
        return {field: now}
    return {}


def _clean_related(value, own_id=None) -> list[str]:
    seen = []
    for rid in value or []:
        if isinstance(rid, str) and rid and rid != own_id and rid not in seen:
            seen.append(rid)
    return seen


def _validate_fields(data: dict) -> str | None:
    """Return an error message for bad scalar fields, or None."""
    if "title" in data:
        title = (data.get("title") or "").strip()
        if not title:
            return "Title is required"
        if len(title) > MAX_TITLE_LEN:
            return f"Title must be {MAX_TITLE_LEN} characters or fewer"
    if data.get("priority") and data["priority"] not in PRIORITIES:
        return f"Invalid priority: {data['priority']}"
    if "status" in data and data["status"] not in STORY_STATUSES:
        return f"Invalid status: {data['status']}"
    if "related_stories" in data and data["related_stories"] is not None:
        if not isinstance(data["related_stories"], (list, tuple)):
            return "related_stories must be a list of story ids"
    return None


def _validate_parent(story_id, parent_id) -> str | None:
    """One level of nesting: a parent cannot have a parent, a child cannot have children."""
    if not parent_id:
        return None
    if parent_id == story_id:
        return "A story cannot be its own parent"
    parent = db.session.get(Story, parent_id)
    if parent is None or parent.is_deleted:
        return "Parent story not found"
    if parent.parent_story_id:
        return "Parent story is itself a child story; only one level of nesting is allowed"
    if story_id and Story.query_active().filter_by(parent_story_id=story_id).count():
        return "A story with child stories cannot have a parent"
    return None


def _write_snapshot(story_id, version_number, summary, changed_fields, actor_id):
    """Append a StoryVersion.  Best effort: failures are logged, never raised."""
    try:
        story = db.session.get(Story, story_id)
        snap = story.snapshot() if story else {}
        db.session.add(StoryVersion(
            story_id=story_id,
            version_number=version_number,
            snapshot_json=json.dumps(snap, default=str),
            change_summary=summary,
            changed_fields=list(changed_fields),
            changed_by=actor_id,
        ))
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Version snapshot %s v%s could not be written", story_id, version_number,
                         extra={"story_id": story_id})
        return False


def _sync_related(story_id, old_ids, new_ids, now):
    """Keep related-story links symmetric on the stories that exist."""
    added = [rid for rid in new_ids if rid not in old_ids]
    removed = [rid for rid in old_ids if rid not in new_ids]
    for rid in added + removed:
        other = db.session.get(Story, rid)
        if other is None or other.is_deleted:
            continue
        links = list(other.related_stories or [])
        if rid in added and story_id not in links:
            links.append(story_id)
        elif rid in removed and story_id in links:
            links.remove(story_id)
        else:
            continue
        other.related_stories = links
        other.version = (other.version or 0) + 1
        other.updated_at = now


def _parse_expected_version(value):
    """Return (version, error).  Accepts an int or a string of digits; None passes through."""
    if value is None:
        return None, None
    if isinstance(value, bool):
        return None, failure(E.VALIDATION_INVALID, "expected_version must be an integer")
    if isinstance(value, int):
        return value, None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value), None
    return None, failure(E.VALIDATION_INVALID, "expected_version must be an integer")


def _get_live_story(story_id):
    story = db.session.get(Story, story_id)
    if story is None:
        return None, failure(E.NOT_FOUND, "Story not found")
    if story.is_deleted:
        return None, failure(E.NOT_FOUND, "Story has been deleted")
    return story, None


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def get_story(story_id):
    """Active story or None."""
    story = db.session.get(Story, story_id)
    return None if story is None or story.is_deleted else story


def list_active_stories(program_id=None, status=None):
    q = Story.query_active()
    if program_id:
        q = q.filter_by(program_id=program_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Story.created_at.desc(), Story.story_id).all()


def get_available_transitions(story_id, actor) -> list[dict]:
    """Transition entries the actor may take from the story's current status."""
    story = get_story(story_id)
    if story is None or actor is None:
        return []
    return [t.to_dict() for t in allowed_story_transitions(story.status, actor.role)]


def get_story_history(story_id) -> dict:
    """Version snapshots and approval records, newest first."""
    story = db.session.get(Story, story_id)
    if story is None:
        return failure(E.NOT_FOUND, "Story not found")
    versions = (
        StoryVersion.query.filter_by(story_id=story_id)
        .order_by(StoryVersion.version_number.desc()).all()
    )
    approvals = (
        StoryApproval.query.filter_by(story_id=story_id)
        .order_by(StoryApproval.created_at.desc(), StoryApproval.id.desc()).all()
    )
    return {
        "success": True,
        "story_id": story_id,
        "versions": [v.to_dict() for v in versions],
        "approvals": [a.to_dict() for a in approvals],
    }


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════

def create_story(data: dict, actor) -> dict:
    """
    Create a story at version 1.

    Returns:
        {"success": True, "story_id": str, "story": dict} or a failure result.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "You must be signed in to create stories")

    data = dict(data or {})
    data.setdefault("status", STATUS_DRAFT)
    if not (data.get("title") or "").strip():
        return failure(E.VALIDATION_REQUIRED, "Title is required")
    if not data.get("program_id"):
        return failure(E.VALIDATION_REQUIRED, "Program is required")
    err = _validate_fields(data)
    if err:
        return failure(E.VALIDATION_INVALID, err)
    err = _validate_parent(None, data.get("parent_story_id"))
    if err:
        return failure(E.VALIDATION_INVALID, err)

    story_id = None
    for _ in range(_ID_ATTEMPTS):
        candidate = generate_story_id(data["program_id"])
        if db.session.get(Story, candidate) is None:
            story_id = candidate
            break
    if story_id is None:
        return failure(E.CONFLICT_DUPLICATE, "Could not allocate a unique story id, please retry")

    now = _utcnow()
    related = _clean_related(data.get("related_stories"), story_id)
    story = Story(
        story_id=story_id,
        program_id=data["program_id"],
        title=data["title"].strip(),
        status=data["status"],
        priority=data.get("priority"),
        user_story=data.get("user_story"),
        acceptance_criteria=data.get("acceptance_criteria"),
        success_metrics=data.get("success_metrics"),
        internal_notes=data.get("internal_notes"),
        client_feedback=data.get("client_feedback"),
        is_technical=bool(data.get("is_technical", False)),
        parent_story_id=data.get("parent_story_id") or None,
        related_stories=related,
        version=1,
        created_by=actor.user_id,
        created_at=now,
        updated_at=now,
    )
    for field, value in status_date_updates(story, story.status, now).items():
        setattr(story, field, value)
    if story.status == STATUS_APPROVED:
        story.approved_at = now
        story.approved_by = actor.user_id

    db.session.add(story)
    db.session.flush()
    _sync_related(story_id, [], related, now)
    log_activity("story_created", actor.user_id, story_id, {"title": story.title, "status": story.status})
    db.session.commit()
    logger.info("Story %s created by %s", story_id, actor.user_id, extra={"story_id": story_id})

    _write_snapshot(story_id, 1, "Initial creation", [], actor.user_id)

    return {"success": True, "story_id": story_id, "story": db.session.get(Story, story_id).to_dict()}


# ═════════════════════════════════════════════════════════════════════════════
# Update
# ═════════════════════════════════════════════════════════════════════════════

def update_story(story_id: str, changes: dict, actor, expected_version: int | None = None) -> dict:
    """
    Apply field changes with compare-and-swap on ``version``.

    ``expected_version`` is the version the editor loaded; when omitted the
    version read here is used, which still closes the read-then-write race.
    A status change must be one the actor's role may take and must not be
    a transition that requires notes or approval; those go through
    ``transition_story_status``.  The actor's edit lock is released on
    success.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "You must be signed in to edit stories")
    expected_version, err = _parse_expected_version(expected_version)
    if err:
        return err

    story, err = _get_live_story(story_id)
    if err:
        return err

    changes = {k: v for k, v in (changes or {}).items() if k in EDITABLE_FIELDS}
    err = _validate_fields(changes)
    if err:
        return failure(E.VALIDATION_INVALID, err)

    read_version = story.version
    if expected_version is not None and expected_version != read_version:
        return failure(
            E.VERSION_CONFLICT,
            "This story was changed by someone else. Reload to see the latest version.",
            current_version=read_version,
        )

    if "parent_story_id" in changes:
        changes["parent_story_id"] = changes["parent_story_id"] or None
        err = _validate_parent(story_id, changes["parent_story_id"])
        if err:
            return failure(E.VALIDATION_INVALID, err)

    old_status = story.status
    new_status = changes.get("status", old_status)
    if new_status != old_status:
        entry = find_transition(STORY_STATUS_CONFIG, old_status, new_status, actor.role)
        if entry is None:
            return failure(E.TRANSITION_NOT_ALLOWED, "This status transition is not allowed")
        if entry.requires_notes or entry.requires_approval:
            return failure(
                E.TRANSITION_NOT_ALLOWED,
                f"Moving to {new_status} must be done as a status transition",
            )

    now = _utcnow()
    values = dict(changes)
    if "title" in values:
        values["title"] = values["title"].strip()
    old_related = list(story.related_stories or [])
    if "related_stories" in values:
        values["related_stories"] = _clean_related(values["related_stories"], story_id)
    if new_status != old_status:
        values.update(status_date_updates(story, new_status, now))
        if new_status == STATUS_APPROVED:
            values["approved_at"] = now
            values["approved_by"] = actor.user_id
    values["version"] = read_version + 1
    values["updated_at"] = now

    updated = (
        Story.query
        .filter(Story.story_id == story_id, Story.version == read_version, Story.deleted_at.is_(None))
        .update(values, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        return failure(
            E.VERSION_CONFLICT,
            "This story was changed by someone else. Reload to see the latest version.",
        )

    if "related_stories" in values:
        _sync_related(story_id, old_related, values["related_stories"], now)
    edit_lock.release(story_id, actor, commit=False)
    log_activity("story_updated", actor.user_id, story_id, {
        "changed_fields": sorted(changes),
        "version": read_version + 1,
    })
    db.session.commit()

    story = db.session.get(Story, story_id, populate_existing=True)
    if new_status != old_status:
        _emit_status_events(story, old_status, actor, None)

    return {"success": True, "story_id": story_id, "version": story.version, "story": story.to_dict()}


# ═════════════════════════════════════════════════════════════════════════════
# Status transition
# ═════════════════════════════════════════════════════════════════════════════

def transition_story_status(
    story_id: str,
    new_status: str,
    actor,
    notes: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """
    Move a story to ``new_status``.

    Returns:
        {"success": True, "story_id", "from", "to", "version"} or a failure.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "You must be signed in")
    expected_version, err = _parse_expected_version(expected_version)
    if err:
        return err

    story, err = _get_live_story(story_id)
    if err:
        return err

    current_status = story.status
    read_version = story.version
    if expected_version is not None and expected_version != read_version:
        return failure(
            E.VERSION_CONFLICT,
            "This story was changed by someone else. Reload to see the latest version.",
            current_version=read_version,
        )

    entry = find_transition(STORY_STATUS_CONFIG, current_status, new_status, actor.role)
    if entry is None:
        return failure(E.TRANSITION_NOT_ALLOWED, "This status transition is not allowed")

    notes = (notes or "").strip() or None
    if entry.requires_notes and not notes:
        return failure(E.NOTES_REQUIRED, f"Notes are required to {entry.label.lower()}")

    now = _utcnow()
    values = {"status": new_status, "version": read_version + 1, "updated_at": now}
    values.update(status_date_updates(story, new_status, now))
    if new_status == STATUS_APPROVED:
        values["approved_at"] = now
        values["approved_by"] = actor.user_id
    if entry.approval_type == "stakeholder":
        values["stakeholder_approved_at"] = now
        values["stakeholder_approved_by"] = actor.user_id

    updated = (
        Story.query
        .filter(
            Story.story_id == story_id,
            Story.version == read_version,
            Story.status == current_status,
            Story.deleted_at.is_(None),
        )
        .update(values, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        return failure(
            E.VERSION_CONFLICT,
            "This story was changed by someone else. Reload to see the latest version.",
        )

    if entry.requires_approval and entry.approval_type:
        db.session.add(StoryApproval(
            story_id=story_id,
            approved_by=actor.user_id,
            approval_type=entry.approval_type,
            status="approved",
            previous_status=current_status,
            notes=notes,
        ))

    log_activity("story_status_changed", actor.user_id, story_id, {
        "from": current_status,
        "to": new_status,
        "notes": notes,
        "version": read_version + 1,
    })
    db.session.commit()
    logger.info("Story %s: %s → %s by %s", story_id, current_status, new_status, actor.user_id,
                extra={"story_id": story_id})

    if notes:
        _write_snapshot(
            story_id, read_version + 1,
            f"Status changed from {current_status} to {new_status}: {notes}",
            ["status"], actor.user_id,
        )

    story = db.session.get(Story, story_id, populate_existing=True)
    _emit_status_events(story, current_status, actor, notes)

    return {
        "success": True,
        "story_id": story_id,
        "from": current_status,
        "to": new_status,
        "version": read_version + 1,
    }


def _emit_status_events(story, old_status, actor, notes):
    payload = {
        "story_id": story.story_id,
        "program_id": story.program_id,
        "title": story.title,
        "old_status": old_status,
        "new_status": story.status,
        "actor_id": actor.user_id,
        "actor_name": actor.name,
        "notes": notes,
    }
    emit(EVENT_STORY_STATUS_CHANGED, payload)
    if story.status == STATUS_APPROVED:
        emit(EVENT_STORY_APPROVED, payload)


# ═════════════════════════════════════════════════════════════════════════════
# Soft delete
# ═════════════════════════════════════════════════════════════════════════════

def soft_delete_story(story_id: str, actor, reason: str | None = None) -> dict:
    """
    Mark a story deleted.

    Admin only; protected statuses are refused for every role.  The audit
    entry is committed before the story row is touched.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "You must be signed in")

    story = db.session.get(Story, story_id)
    if story is None:
        return failure(E.NOT_FOUND, "Story not found")
    if story.is_deleted:
        return failure(E.CONFLICT_STATE, "Story has already been deleted")
    if is_delete_protected(story.status):
        return failure(
            E.CONFLICT_STATE,
            f"Stories in status '{story.status}' cannot be deleted",
        )
    if not can_delete_stories(actor.role):
        return failure(E.FORBIDDEN, "Only administrators can delete stories")

    log_activity("story_deleted", actor.user_id, story_id, {
        "title": story.title,
        "status": story.status,
        "reason": reason,
    })
    db.session.commit()

    now = _utcnow()
    story.soft_delete(actor.user_id)
    story.version = (story.version or 0) + 1
    story.locked_by = None
    story.locked_at = None
    story.lock_expires_at = None

    for child in Story.query.filter_by(parent_story_id=story_id).all():
        child.parent_story_id = None
        child.version = (child.version or 0) + 1
        child.updated_at = now

    related_ids = [rid for rid in (story.related_stories or []) if rid != story_id]
    linked = Story.query_active().filter(Story.story_id.in_(related_ids)).all() if related_ids else []
    for other in linked:
        links = list(other.related_stories or [])
        if story_id in links:
            other.related_stories = [rid for rid in links if rid != story_id]
            other.version = (other.version or 0) + 1
            other.updated_at = now

    db.session.commit()
    logger.info("Story %s soft-deleted by %s", story_id, actor.user_id, extra={"story_id": story_id})
    return {"success": True, "story_id": story_id}
