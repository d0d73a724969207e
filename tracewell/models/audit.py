"""
Tracewell
Audit domain model.

Models:
    - ActivityLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from tracewell.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_TYPES = {
    # Story lifecycle
    "story_created",
    "story_updated",
    "story_status_changed",
    "story_deleted",
    "story_locks_swept",
    # UAT
    "cycle_created",
    "cycle_updated",
    "cycle_locked",
    "cycle_tester_added",
    "cycle_tester_updated",
    "cycle_tester_removed",
    "assignment_executed",
    "execution_status_changed",
    "defect_created",
    "defect_status_changed",
    "defect_assigned",
    "test_cases_generated",
}


class ActivityLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``metadata_json`` carries the event payload
    (old/new status, notes, counts).
    """

    __tablename__ = "activity_log"
    __table_args__ = (
        db.Index("idx_activity_story", "story_id"),
        db.Index("idx_activity_type", "activity_type"),
        db.Index("idx_activity_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    activity_type = db.Column(
        db.String(60), nullable=False,
        comment="story_created | story_status_changed | assignment_executed | …",
    )
    user_id = db.Column(
        db.String(36), nullable=True, index=True,
        comment="Acting user; NULL for system entries",
    )
    story_id = db.Column(db.String(40), nullable=True)
    metadata_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def meta(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "activity_type": self.activity_type,
            "user_id": self.user_id,
            "story_id": self.story_id,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.activity_type} story={self.story_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def log_activity(
    activity_type: str,
    user_id: str | None,
    story_id: str | None = None,
    metadata: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.
    """
    entry = ActivityLog(
        activity_type=activity_type,
        user_id=user_id,
        story_id=story_id,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
