"""
Tracewell
UAT domain models.

Models:
    - TestCase:             test case derived from a story
    - UATCycle:             UAT cycle owning the assignment configuration
    - CycleTester:          tester pool membership with capacity weight
    - TestExecution:        one (test case, tester) pairing within a cycle
    - CrossValidationGroup: N executions of the same test case for agreement checks
    - CycleAssignment:      primary / cross_validation tag per execution
    - Defect:               defect raised from an execution or test case

Architecture ref:
    UATCycle ──1:N──▶ CycleTester
    UATCycle ──1:N──▶ TestExecution ──1:1──▶ CycleAssignment
    UATCycle ──1:N──▶ CrossValidationGroup ──1:N──▶ CycleAssignment
    TestCase ──1:N──▶ TestExecution ──1:N──▶ Defect
"""

import uuid
from datetime import datetime, timezone

from tracewell.models import db


# ── Constants ────────────────────────────────────────────────────────────

TEST_CASE_STATUSES = {"draft", "ready", "in_progress", "completed", "deprecated"}

CYCLE_STATUSES = {"draft", "active", "completed", "cancelled"}

DISTRIBUTION_METHODS = {"equal", "weighted"}

EXECUTION_STATUSES = {"assigned", "in_progress", "passed", "failed", "blocked", "verified"}

# Executions in these statuses are finished for cross-validation purposes
EXECUTION_TERMINAL_STATUSES = frozenset({"passed", "failed", "blocked", "verified"})

STEP_OUTCOMES = {"passed", "failed", "blocked", "skipped"}

ASSIGNMENT_TYPES = {"primary", "cross_validation"}

DEFECT_STATUSES = {"open", "confirmed", "in_progress", "fixed", "verified", "closed"}

DEFECT_SEVERITIES = {"critical", "high", "medium", "low"}

MIN_CAPACITY_WEIGHT = 1
MAX_CAPACITY_WEIGHT = 100


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASE
# ═════════════════════════════════════════════════════════════════════════════

class TestCase(db.Model):
    """Test case in the catalog, linked to the story it verifies."""

    __tablename__ = "test_cases"
    __test__ = False

    test_case_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    story_id = db.Column(
        db.String(40), db.ForeignKey("user_stories.story_id"), nullable=False, index=True,
    )
    program_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    test_steps = db.Column(db.JSON, default=list, comment='[{"step_number": 1, "action": "...", "expected": "..."}]')
    status = db.Column(db.String(20), default="draft", index=True)
    is_archived = db.Column(db.Boolean, default=False)
    is_generated = db.Column(db.Boolean, default=False, comment="Created by automatic generation")
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "test_case_id": self.test_case_id,
            "story_id": self.story_id,
            "program_id": self.program_id,
            "title": self.title,
            "description": self.description,
            "test_steps": self.test_steps or [],
            "status": self.status,
            "is_archived": self.is_archived,
            "is_generated": self.is_generated,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TestCase {self.test_case_id}: {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# UAT CYCLE
# ═════════════════════════════════════════════════════════════════════════════

class UATCycle(db.Model):
    """
    UAT cycle.

    ``locked_at`` freezes tester, test and assignment mutation for the cycle;
    it is a terminal configuration state, independent of ``status``.
    """

    __tablename__ = "uat_cycles"

    cycle_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    program_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default="draft", index=True, comment="draft | active | completed | cancelled")

    distribution_method = db.Column(db.String(20), nullable=False, default="equal", comment="equal | weighted")
    cross_validation_enabled = db.Column(db.Boolean, nullable=False, default=False)
    cross_validation_percentage = db.Column(db.Integer, nullable=True, comment="0–100")
    validators_per_test = db.Column(db.Integer, nullable=True, comment=">= 2 when CV enabled")

    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_by = db.Column(db.String(36), nullable=True)

    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    testers = db.relationship(
        "CycleTester", backref="cycle", lazy="dynamic", cascade="all, delete-orphan",
    )
    executions = db.relationship("TestExecution", backref="cycle", lazy="dynamic")

    @property
    def is_locked(self):
        return self.locked_at is not None

    def to_dict(self):
        return {
            "cycle_id": self.cycle_id,
            "program_id": self.program_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "distribution_method": self.distribution_method,
            "cross_validation_enabled": self.cross_validation_enabled,
            "cross_validation_percentage": self.cross_validation_percentage,
            "validators_per_test": self.validators_per_test,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "locked_at": _iso(self.locked_at),
            "locked_by": self.locked_by,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<UATCycle {self.cycle_id}: {self.name}>"


class CycleTester(db.Model):
    """Tester pool membership; ``capacity_weight`` drives proportional share."""

    __tablename__ = "cycle_testers"
    __table_args__ = (
        db.UniqueConstraint("cycle_id", "user_id", name="uq_cycle_tester"),
    )

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("uat_cycles.cycle_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.String(36), db.ForeignKey("users.user_id"), nullable=False, index=True)
    capacity_weight = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    added_by = db.Column(db.String(36), nullable=True)
    added_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    user = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "capacity_weight": self.capacity_weight,
            "is_active": self.is_active,
            "added_at": _iso(self.added_at),
        }

    def __repr__(self):
        return f"<CycleTester {self.cycle_id}/{self.user_id} w={self.capacity_weight}>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTION
# ═════════════════════════════════════════════════════════════════════════════

class TestExecution(db.Model):
    """
    One (test case, tester) pairing within a cycle.

    Created in status ``assigned`` by the assignment engine; mutated by the
    assigned tester (status + step_results) and by a verifier
    (passed → verified); never deleted.
    """

    __tablename__ = "test_executions"
    __test__ = False

    execution_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("uat_cycles.cycle_id"), nullable=True, index=True,
    )
    test_case_id = db.Column(
        db.String(36), db.ForeignKey("test_cases.test_case_id"), nullable=False, index=True,
    )
    story_id = db.Column(db.String(40), nullable=True, index=True)
    assigned_to = db.Column(db.String(36), db.ForeignKey("users.user_id"), nullable=False, index=True)
    assigned_by = db.Column(db.String(36), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="assigned", index=True)
    step_results = db.Column(db.JSON, default=list, comment="Ordered per-step outcomes")
    notes = db.Column(db.Text, nullable=True)
    environment = db.Column(db.String(50), nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.String(36), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    tester = db.relationship("User", foreign_keys=[assigned_to])
    test_case = db.relationship("TestCase")

    def to_dict(self):
        return {
            "execution_id": self.execution_id,
            "cycle_id": self.cycle_id,
            "test_case_id": self.test_case_id,
            "story_id": self.story_id,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "status": self.status,
            "step_results": self.step_results or [],
            "notes": self.notes,
            "environment": self.environment,
            "assigned_at": _iso(self.assigned_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "verified_by": self.verified_by,
            "verified_at": _iso(self.verified_at),
        }

    def __repr__(self):
        return f"<TestExecution {self.execution_id}: case#{self.test_case_id} → {self.status}>"


class CrossValidationGroup(db.Model):
    """Logical group of N executions of one test case by N distinct testers."""

    __tablename__ = "cross_validation_groups"

    group_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("uat_cycles.cycle_id"), nullable=False, index=True,
    )
    test_case_id = db.Column(
        db.String(36), db.ForeignKey("test_cases.test_case_id"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    assignments = db.relationship("CycleAssignment", backref="group", lazy="dynamic")

    def to_dict(self):
        return {
            "group_id": self.group_id,
            "cycle_id": self.cycle_id,
            "test_case_id": self.test_case_id,
            "created_at": _iso(self.created_at),
        }


class CycleAssignment(db.Model):
    """Ties one execution to its cycle with the assignment kind."""

    __tablename__ = "cycle_assignments"

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("uat_cycles.cycle_id"), nullable=False, index=True,
    )
    execution_id = db.Column(
        db.String(36), db.ForeignKey("test_executions.execution_id"), nullable=False, unique=True,
    )
    assignment_type = db.Column(db.String(20), nullable=False, comment="primary | cross_validation")
    cross_validation_group_id = db.Column(
        db.String(36), db.ForeignKey("cross_validation_groups.group_id"), nullable=True, index=True,
    )
    assigned_by = db.Column(db.String(36), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    execution = db.relationship("TestExecution")

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "execution_id": self.execution_id,
            "assignment_type": self.assignment_type,
            "cross_validation_group_id": self.cross_validation_group_id,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# DEFECT
# ═════════════════════════════════════════════════════════════════════════════

class Defect(db.Model):
    """
    Defect raised during UAT.

    Lifecycle: open → confirmed → in_progress → fixed → verified → closed
                    └──▶ closed (not a bug)      └──▶ in_progress (fix failed)
               closed ──▶ open (reopen, notes required)
    """

    __tablename__ = "defects"

    defect_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    execution_id = db.Column(
        db.String(36), db.ForeignKey("test_executions.execution_id"), nullable=True, index=True,
    )
    test_case_id = db.Column(
        db.String(36), db.ForeignKey("test_cases.test_case_id"), nullable=True, index=True,
    )
    story_id = db.Column(db.String(40), nullable=False, index=True)
    program_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    steps_to_reproduce = db.Column(db.Text, nullable=True)
    severity = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open", index=True)
    failed_step_number = db.Column(db.Integer, nullable=True)

    reported_by = db.Column(db.String(36), nullable=False)
    assigned_to = db.Column(db.String(36), nullable=True)
    resolved_by = db.Column(db.String(36), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "defect_id": self.defect_id,
            "execution_id": self.execution_id,
            "test_case_id": self.test_case_id,
            "story_id": self.story_id,
            "program_id": self.program_id,
            "title": self.title,
            "description": self.description,
            "steps_to_reproduce": self.steps_to_reproduce,
            "severity": self.severity,
            "status": self.status,
            "failed_step_number": self.failed_step_number,
            "reported_by": self.reported_by,
            "assigned_to": self.assigned_to,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Defect {self.defect_id}: {self.status}>"
