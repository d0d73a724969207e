"""
Soft Delete Mixin.

Adds `deleted_at` / `deleted_by` columns and query helpers for soft delete.
Rows that include this mixin are marked as deleted rather than physically
removed, and are excluded from every active view via ``query_active()``.

Usage:
    class Story(SoftDeleteMixin, db.Model):
        ...

    story.soft_delete(actor_id)
    db.session.commit()

    Story.query_active().all()
"""

from datetime import datetime, timezone

from tracewell.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)
    deleted_by = db.Column(db.String(36), nullable=True, default=None)

    def soft_delete(self, actor_id=None):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)
        self.deleted_by = actor_id

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.deleted_at.isnot(None))
