"""
Tracewell
Story edit lock.

Advisory, single-holder lock that keeps two people from editing the same
story at once.  It guards the edit screen, not the update itself; version
compare-and-swap in the lifecycle service covers the write.

Every lock carries ``lock_expires_at``.  Acquisition is one conditional
UPDATE that succeeds when the row is unlocked, expired, or already held by
the same actor (re-entrant refresh), so a lost release never locks a story
out for good.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.story import Story
from tracewell.utils.errors import E, failure

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 900


def _utcnow():
    return datetime.now(timezone.utc)


def _aware(value):
    """SQLite hands datetimes back naive; every stored value is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def lock_ttl() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("STORY_LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL_SECONDS)))


def acquire(story_id: str, actor, *, now=None) -> dict:
    """
    Take (or refresh) the edit lock on ``story_id`` for ``actor``.

    Returns ``{"success": True, "expires_at": ...}`` or a failure carrying
    ``locked_by_name`` / ``locked_since`` when someone else holds it.
    """
    if actor is None:
        return failure(E.UNAUTHENTICATED, "You must be signed in to edit")

    now = now or _utcnow()
    expires_at = now + lock_ttl()

    updated = (
        Story.query
        .filter(
            Story.story_id == story_id,
            Story.deleted_at.is_(None),
            or_(
                Story.locked_by.is_(None),
                Story.locked_by == actor.user_id,
                Story.lock_expires_at.is_(None),
                Story.lock_expires_at <= now,
            ),
        )
        .update(
            {"locked_by": actor.user_id, "locked_at": now, "lock_expires_at": expires_at},
            synchronize_session=False,
        )
    )

    if updated:
        db.session.commit()
        logger.debug("Lock on %s held by %s until %s", story_id, actor.user_id, expires_at)
        return {"success": True, "story_id": story_id, "locked_by": actor.user_id, "expires_at": expires_at.isoformat()}

    db.session.rollback()
    status = inspect(story_id, now=now)
    if not status["exists"]:
        return failure(E.NOT_FOUND, "Story not found")
    return failure(
        E.LOCKED,
        f"This story is being edited by {status['locked_by_name'] or 'another user'}",
        locked_by_name=status["locked_by_name"],
        locked_since=status["locked_since"],
    )


def release(story_id: str, actor=None, *, commit=True) -> dict:
    """
    Drop the lock on ``story_id``.  Idempotent.

    With ``actor`` only that actor's lock is released; without it the lock is
    cleared whoever holds it.
    """
    q = Story.query.filter(Story.story_id == story_id, Story.locked_by.isnot(None))
    if actor is not None:
        q = q.filter(Story.locked_by == actor.user_id)
    released = q.update(
        {"locked_by": None, "locked_at": None, "lock_expires_at": None},
        synchronize_session=False,
    )
    if commit:
        db.session.commit()
    return {"success": True, "story_id": story_id, "released": bool(released)}


def inspect(story_id: str, *, now=None) -> dict:
    """Current lock state; an expired lock reads as unlocked."""
    now = now or _utcnow()
    story = db.session.get(Story, story_id, populate_existing=True)
    if story is None or story.is_deleted:
        return {"exists": False, "is_locked": False, "locked_by": None, "locked_by_name": None, "locked_since": None}

    expires_at = _aware(story.lock_expires_at)
    held = story.locked_by is not None and expires_at is not None and expires_at > now
    if not held:
        return {"exists": True, "is_locked": False, "locked_by": None, "locked_by_name": None, "locked_since": None}

    locked_at = _aware(story.locked_at)
    return {
        "exists": True,
        "is_locked": True,
        "locked_by": story.locked_by,
        "locked_by_name": story.lock_holder.name if story.lock_holder else None,
        "locked_since": locked_at.isoformat() if locked_at else None,
        "expires_at": expires_at.isoformat(),
    }


def sweep_expired_locks(*, now=None) -> int:
    """Clear every lock whose expiry has passed.  Returns rows cleared."""
    now = now or _utcnow()
    cleared = (
        Story.query
        .filter(
            Story.locked_by.isnot(None),
            or_(Story.lock_expires_at.is_(None), Story.lock_expires_at <= now),
        )
        .update(
            {"locked_by": None, "locked_at": None, "lock_expires_at": None},
            synchronize_session=False,
        )
    )
    if cleared:
        log_activity("story_locks_swept", None, None, {"count": cleared})
    db.session.commit()
    if cleared:
        logger.info("Swept %d expired story lock(s)", cleared)
    return cleared
