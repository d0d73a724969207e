"""
Tracewell
Story domain models.

Models:
    - Story:         user story / requirement with approval lifecycle
    - StoryVersion:  append-only snapshot per (story_id, version_number)
    - StoryApproval: append-only approval record

Lifecycle:
    Draft ──▶ Internal Review ──▶ Pending Client Review ──▶ Approved
          ──▶ In Development ──▶ In UAT ──▶ Approved
    Any active status can be flagged "Needs Discussion"; Draft / Needs
    Discussion can be marked "Out of Scope".
"""

import json
from datetime import datetime, timezone

from tracewell.models import db
from tracewell.models.soft_delete import SoftDeleteMixin


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_DRAFT = "Draft"
STATUS_INTERNAL_REVIEW = "Internal Review"
STATUS_CLIENT_REVIEW = "Pending Client Review"
STATUS_APPROVED = "Approved"
STATUS_IN_DEVELOPMENT = "In Development"
STATUS_IN_UAT = "In UAT"
STATUS_NEEDS_DISCUSSION = "Needs Discussion"
STATUS_OUT_OF_SCOPE = "Out of Scope"

STORY_STATUSES = (
    STATUS_DRAFT,
    STATUS_INTERNAL_REVIEW,
    STATUS_CLIENT_REVIEW,
    STATUS_APPROVED,
    STATUS_IN_DEVELOPMENT,
    STATUS_IN_UAT,
    STATUS_NEEDS_DISCUSSION,
    STATUS_OUT_OF_SCOPE,
)

# Status → column stamped the first time the story enters that status
STATUS_DATE_FIELDS = {
    STATUS_DRAFT: "draft_date",
    STATUS_INTERNAL_REVIEW: "internal_review_date",
    STATUS_CLIENT_REVIEW: "client_review_date",
    STATUS_NEEDS_DISCUSSION: "needs_discussion_date",
}

# Stories in these statuses can never be deleted, whatever the actor's role
DELETE_PROTECTED_STATUSES = frozenset({STATUS_APPROVED, STATUS_IN_DEVELOPMENT, STATUS_IN_UAT})

APPROVAL_TYPES = {"internal_review", "stakeholder", "portfolio"}
APPROVAL_STATUSES = {"approved", "rejected", "needs_discussion"}

PRIORITIES = {"P0", "P1", "P2", "P3"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# STORY
# ═════════════════════════════════════════════════════════════════════════════

class Story(SoftDeleteMixin, db.Model):
    """
    User story under approval lifecycle.

    ``version`` increases by exactly one on every successful mutation and is
    the compare-and-swap token for concurrent writers.  ``locked_by`` /
    ``locked_at`` / ``lock_expires_at`` hold the advisory edit lock.
    """

    __tablename__ = "user_stories"

    story_id = db.Column(db.String(40), primary_key=True, comment="e.g. ONCO-20260301-K3XZ")
    program_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(30), nullable=False, default=STATUS_DRAFT, index=True)
    priority = db.Column(db.String(5), nullable=True)

    user_story = db.Column(db.Text, nullable=True)
    acceptance_criteria = db.Column(db.Text, nullable=True)
    success_metrics = db.Column(db.Text, nullable=True)
    internal_notes = db.Column(db.Text, nullable=True)
    client_feedback = db.Column(db.Text, nullable=True)
    is_technical = db.Column(db.Boolean, default=False)

    # ── Hierarchy (one level: parents cannot have parents)
    parent_story_id = db.Column(
        db.String(40), db.ForeignKey("user_stories.story_id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    related_stories = db.Column(db.JSON, default=list, comment="Symmetric, advisory only")

    version = db.Column(db.Integer, nullable=False, default=1)

    # ── First-entered timestamps per status
    draft_date = db.Column(db.DateTime(timezone=True), nullable=True)
    internal_review_date = db.Column(db.DateTime(timezone=True), nullable=True)
    client_review_date = db.Column(db.DateTime(timezone=True), nullable=True)
    needs_discussion_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Approval stamps
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.String(36), nullable=True)
    stakeholder_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stakeholder_approved_by = db.Column(db.String(36), nullable=True)

    # ── Advisory edit lock
    locked_by = db.Column(db.String(36), db.ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    lock_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    versions = db.relationship(
        "StoryVersion", backref="story", lazy="dynamic",
        order_by="StoryVersion.version_number.desc()",
    )
    approvals = db.relationship(
        "StoryApproval", backref="story", lazy="dynamic",
        order_by="StoryApproval.created_at.desc()",
    )
    lock_holder = db.relationship("User", foreign_keys=[locked_by])

    def snapshot(self) -> dict:
        """Serializable copy of the editable fields, stored in StoryVersion."""
        return {
            "story_id": self.story_id,
            "program_id": self.program_id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "user_story": self.user_story,
            "acceptance_criteria": self.acceptance_criteria,
            "success_metrics": self.success_metrics,
            "is_technical": self.is_technical,
            "parent_story_id": self.parent_story_id,
            "related_stories": list(self.related_stories or []),
            "version": self.version,
        }

    def to_dict(self):
        d = self.snapshot()
        d.update({
            "internal_notes": self.internal_notes,
            "client_feedback": self.client_feedback,
            "draft_date": _iso(self.draft_date),
            "internal_review_date": _iso(self.internal_review_date),
            "client_review_date": _iso(self.client_review_date),
            "needs_discussion_date": _iso(self.needs_discussion_date),
            "approved_at": _iso(self.approved_at),
            "approved_by": self.approved_by,
            "stakeholder_approved_at": _iso(self.stakeholder_approved_at),
            "stakeholder_approved_by": self.stakeholder_approved_by,
            "locked_by": self.locked_by,
            "locked_at": _iso(self.locked_at),
            "deleted_at": _iso(self.deleted_at),
            "deleted_by": self.deleted_by,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        })
        return d

    def __repr__(self):
        return f"<Story {self.story_id}: {self.status} v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# STORY VERSION (append-only)
# ═════════════════════════════════════════════════════════════════════════════

class StoryVersion(db.Model):
    """Immutable snapshot of a story; never updated or deleted."""

    __tablename__ = "story_versions"
    __table_args__ = (
        db.UniqueConstraint("story_id", "version_number", name="uq_story_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(
        db.String(40), db.ForeignKey("user_stories.story_id"), nullable=False, index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    snapshot_json = db.Column(db.Text, nullable=False, default="{}")
    change_summary = db.Column(db.Text, default="")
    changed_fields = db.Column(db.JSON, default=list)
    changed_by = db.Column(db.String(36), nullable=True)
    is_baseline = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def snapshot(self) -> dict:
        try:
            return json.loads(self.snapshot_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "version_number": self.version_number,
            "snapshot": self.snapshot,
            "change_summary": self.change_summary,
            "changed_fields": self.changed_fields or [],
            "changed_by": self.changed_by,
            "is_baseline": self.is_baseline,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StoryVersion {self.story_id} v{self.version_number}>"


# ═════════════════════════════════════════════════════════════════════════════
# STORY APPROVAL (append-only)
# ═════════════════════════════════════════════════════════════════════════════

class StoryApproval(db.Model):
    """Approval decision captured when a transition rule demands one."""

    __tablename__ = "story_approvals"

    id = db.Column(db.Integer, primary_key=True)
    story_id = db.Column(
        db.String(40), db.ForeignKey("user_stories.story_id"), nullable=False, index=True,
    )
    approved_by = db.Column(db.String(36), nullable=False)
    approval_type = db.Column(
        db.String(30), nullable=False,
        comment="internal_review | stakeholder | portfolio",
    )
    status = db.Column(db.String(30), nullable=False, default="approved")
    previous_status = db.Column(db.String(30), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "approved_by": self.approved_by,
            "approval_type": self.approval_type,
            "status": self.status,
            "previous_status": self.previous_status,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StoryApproval {self.story_id}: {self.approval_type}>"
