"""
Tracewell
UAT Cycle Assignment Engine.

select → preview → execute:

  1. Split the candidate tests into a cross-validation subset and a
     primary-only remainder.  The subset is the first
     ``round_half_up(total × pct / 100)`` tests in SHA-256 order of
     ``cycle_id:test_case_id``, so it is stable for a given cycle.
  2. Primary tests go one per tester through a min-heap keyed by
     ``(load / weight, -weight, roster_index)``; the roster is ordered by
     user id.  ``equal`` treats every weight as 1.
  3. Each cross-validation test takes the ``validators_per_test`` distinct
     testers with the lowest keys against the combined load, and becomes
     one CrossValidationGroup.

``preview_assignment`` and ``execute_assignment`` run the same plan
function on the same inputs; there is no randomness, so what was previewed
is what gets committed.
"""

import hashlib
import heapq
import logging
from dataclasses import dataclass, field
from fractions import Fraction

from sqlalchemy.exc import SQLAlchemyError

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.auth import User
from tracewell.models.testing import (
    DISTRIBUTION_METHODS,
    CrossValidationGroup,
    CycleAssignment,
    CycleTester,
    TestCase,
    TestExecution,
    UATCycle,
)
from tracewell.services.transition_validator import can_assign_testers
from tracewell.utils.errors import E, failure

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Inputs
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AssignmentConfig:
    cycle_id: str
    test_case_ids: tuple = ()
    distribution_method: str = "equal"
    cross_validation_enabled: bool = False
    cross_validation_percentage: int | None = None
    validators_per_test: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "AssignmentConfig":
        ids = data.get("test_case_ids") or ()
        return cls(
            cycle_id=data.get("cycle_id"),
            test_case_ids=tuple(ids) if isinstance(ids, (list, tuple)) else ids,
            distribution_method=data.get("distribution_method") or "equal",
            cross_validation_enabled=bool(data.get("cross_validation_enabled", False)),
            cross_validation_percentage=data.get("cross_validation_percentage"),
            validators_per_test=data.get("validators_per_test"),
        )

    @property
    def runs_cross_validation(self) -> bool:
        return bool(
            self.cross_validation_enabled
            and _is_int(self.cross_validation_percentage)
            and self.cross_validation_percentage > 0
            and _is_int(self.validators_per_test)
            and self.validators_per_test >= 2
        )


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class RosterEntry:
    user_id: str
    name: str = ""
    capacity_weight: int = 100


@dataclass
class AssignmentPlan:
    primary: list = field(default_factory=list)            # [(test_case_id, user_id)]
    cross_validation: list = field(default_factory=list)   # [(test_case_id, [user_id, ...])]
    primary_counts: dict = field(default_factory=dict)
    cross_validation_counts: dict = field(default_factory=dict)


# ═════════════════════════════════════════════════════════════════════════════
# Pure algorithm
# ═════════════════════════════════════════════════════════════════════════════

def cross_validation_count(total: int, percentage) -> int:
    """round_half_up(total × percentage / 100), clamped to [0, total]."""
    if total <= 0 or not percentage:
        return 0
    share = Fraction(total) * Fraction(percentage) / 100
    count = int(share + Fraction(1, 2))  # floor, values are non-negative
    return max(0, min(total, count))


def _cv_order_key(cycle_id, test_case_id):
    return hashlib.sha256(f"{cycle_id}:{test_case_id}".encode("utf-8")).hexdigest()


def select_cross_validation_subset(cycle_id, test_case_ids, percentage) -> tuple[list, list]:
    """
    Return ``(cv_ids, primary_ids)``.

    Duplicates are dropped.  ``cv_ids`` come out in hash order;
    ``primary_ids`` keep the caller's order.
    """
    unique = list(dict.fromkeys(test_case_ids))
    k = cross_validation_count(len(unique), percentage)
    if k == 0:
        return [], unique
    ranked = sorted(unique, key=lambda tc: (_cv_order_key(cycle_id, tc), tc))
    chosen = set(ranked[:k])
    return ranked[:k], [tc for tc in unique if tc not in chosen]


def build_plan(roster, primary_ids, cv_ids, *, distribution_method="equal", validators_per_test=2) -> AssignmentPlan:
    """
    Distribute tests across ``roster`` (RosterEntry list).

    Raises ValueError on an empty roster or too few testers for the
    cross-validation group size; callers validate first.
    """
    ordered = sorted(roster, key=lambda r: r.user_id)
    if not ordered:
        raise ValueError("roster is empty")
    if cv_ids and len(ordered) < validators_per_test:
        raise ValueError("not enough testers for cross-validation")

    weights = [1 if distribution_method == "equal" else int(r.capacity_weight) for r in ordered]
    loads = [0] * len(ordered)
    heap = [(Fraction(0), -w, idx) for idx, w in enumerate(weights)]
    heapq.heapify(heap)

    plan = AssignmentPlan(
        primary_counts={r.user_id: 0 for r in ordered},
        cross_validation_counts={r.user_id: 0 for r in ordered},
    )

    def _bump(idx):
        loads[idx] += 1
        heapq.heappush(heap, (Fraction(loads[idx], weights[idx]), -weights[idx], idx))

    for tc in primary_ids:
        _, _, idx = heapq.heappop(heap)
        uid = ordered[idx].user_id
        plan.primary.append((tc, uid))
        plan.primary_counts[uid] += 1
        _bump(idx)

    for tc in cv_ids:
        picked = [heapq.heappop(heap)[2] for _ in range(validators_per_test)]
        members = [ordered[idx].user_id for idx in picked]
        plan.cross_validation.append((tc, members))
        for idx in picked:
            plan.cross_validation_counts[ordered[idx].user_id] += 1
            _bump(idx)

    return plan


def summarize_plan(config, roster, plan) -> dict:
    """Preview payload: totals, per-tester breakdown and CV groups."""
    by_id = {r.user_id: r for r in roster}
    testers = []
    for r in sorted(roster, key=lambda r: r.user_id):
        primary = plan.primary_counts.get(r.user_id, 0)
        cv = plan.cross_validation_counts.get(r.user_id, 0)
        testers.append({
            "user_id": r.user_id,
            "name": r.name,
            "capacity_weight": r.capacity_weight,
            "primary_count": primary,
            "cross_validation_count": cv,
            "total": primary + cv,
        })
    groups = [
        {
            "test_case_id": tc,
            "tester_ids": list(members),
            "tester_names": [by_id[uid].name for uid in members],
        }
        for tc, members in plan.cross_validation
    ]
    vpt = config.validators_per_test if plan.cross_validation else 0
    return {
        "cycle_id": config.cycle_id,
        "distribution_method": config.distribution_method,
        "total_tests": len(plan.primary) + len(plan.cross_validation),
        "primary_tests": len(plan.primary),
        "cross_validation_tests": len(plan.cross_validation),
        "validators_per_test": vpt,
        "total_assignments": len(plan.primary) + len(plan.cross_validation) * vpt,
        "testers": testers,
        "primary_assignments": [{"test_case_id": tc, "user_id": uid} for tc, uid in plan.primary],
        "cross_validation_groups": groups,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Persistence-backed entry points
# ═════════════════════════════════════════════════════════════════════════════

def get_active_roster(cycle_id) -> list[RosterEntry]:
    rows = (
        db.session.query(CycleTester, User)
        .join(User, User.user_id == CycleTester.user_id)
        .filter(
            CycleTester.cycle_id == cycle_id,
            CycleTester.is_active.is_(True),
            User.is_active.is_(True),
        )
        .order_by(CycleTester.user_id)
        .all()
    )
    return [RosterEntry(user_id=ct.user_id, name=u.name, capacity_weight=ct.capacity_weight) for ct, u in rows]


def _validate_config(config: AssignmentConfig) -> dict | None:
    if not config.cycle_id:
        return failure(E.VALIDATION_REQUIRED, "Cycle is required")
    if not config.test_case_ids:
        return failure(E.VALIDATION_REQUIRED, "Select at least one test case to assign")
    ids = config.test_case_ids
    if not isinstance(ids, (list, tuple)) or not all(isinstance(tc, str) and tc for tc in ids):
        return failure(E.VALIDATION_INVALID, "test_case_ids must be a list of test case ids")
    if not isinstance(config.distribution_method, str) or config.distribution_method not in DISTRIBUTION_METHODS:
        return failure(E.VALIDATION_INVALID, f"Invalid distribution method: {config.distribution_method}")
    if config.cross_validation_enabled:
        pct = config.cross_validation_percentage
        if not _is_int(pct) or not 0 <= pct <= 100:
            return failure(E.VALIDATION_INVALID, "Cross-validation percentage must be between 0 and 100")
        if not _is_int(config.validators_per_test) or config.validators_per_test < 2:
            return failure(E.VALIDATION_INVALID, "Cross-validation needs at least 2 validators per test")
    return None


def _prepare(config: AssignmentConfig):
    """Load and validate everything a plan needs.  Returns (context, error)."""
    err = _validate_config(config)
    if err:
        return None, err

    cycle = db.session.get(UATCycle, config.cycle_id)
    if cycle is None:
        return None, failure(E.NOT_FOUND, "Cycle not found")

    unique_ids = list(dict.fromkeys(config.test_case_ids))
    cases = {
        tc.test_case_id: tc
        for tc in TestCase.query.filter(
            TestCase.test_case_id.in_(unique_ids), TestCase.is_archived.is_(False),
        ).all()
    }
    missing = [tc for tc in unique_ids if tc not in cases]
    if missing:
        return None, failure(E.VALIDATION_INVALID, f"{len(missing)} test case(s) not found or archived", missing=missing)

    already = set(get_already_assigned_test_case_ids(cycle.cycle_id)) & set(unique_ids)
    if already:
        return None, failure(
            E.CONFLICT_DUPLICATE,
            f"{len(already)} test case(s) are already assigned in this cycle",
            already_assigned=sorted(already),
        )

    roster = get_active_roster(cycle.cycle_id)
    if config.distribution_method == "weighted":
        roster = [r for r in roster if r.capacity_weight > 0]
    if not roster:
        return None, failure(E.VALIDATION_INVALID, "No active testers in this cycle")

    cv_ids, primary_ids = [], unique_ids
    if config.runs_cross_validation:
        if len(roster) < config.validators_per_test:
            return None, failure(
                E.VALIDATION_INVALID,
                f"Cross-validation needs {config.validators_per_test} testers but only {len(roster)} are active",
            )
        cv_ids, primary_ids = select_cross_validation_subset(
            cycle.cycle_id, unique_ids, config.cross_validation_percentage,
        )

    plan = build_plan(
        roster, primary_ids, cv_ids,
        distribution_method=config.distribution_method,
        validators_per_test=config.validators_per_test if config.runs_cross_validation else 2,
    )
    return {"cycle": cycle, "cases": cases, "roster": roster, "plan": plan}, None


def _assigner_guard(actor) -> dict | None:
    if actor is None:
        return failure(E.UNAUTHENTICATED, "You must be signed in")
    if not can_assign_testers(actor.role):
        return failure(E.FORBIDDEN, "You do not have permission to assign tests")
    return None


def preview_assignment(config, actor) -> dict:
    """Proposed distribution without writing anything.  Allowed on locked cycles."""
    if isinstance(config, dict):
        config = AssignmentConfig.from_dict(config)
    err = _assigner_guard(actor)
    if err:
        return err
    ctx, err = _prepare(config)
    if err:
        return err
    summary = summarize_plan(config, ctx["roster"], ctx["plan"])
    summary["success"] = True
    summary["cycle_locked"] = ctx["cycle"].is_locked
    return summary


def execute_assignment(config, actor) -> dict:
    """
    Commit the previewed distribution in one transaction.

    Creates one TestExecution (status ``assigned``) per (test, tester)
    pairing, one CrossValidationGroup per CV test and one CycleAssignment
    per execution.  A persistence error rolls everything back and is
    re-raised.
    """
    if isinstance(config, dict):
        config = AssignmentConfig.from_dict(config)
    err = _assigner_guard(actor)
    if err:
        return err

    cycle = db.session.get(UATCycle, config.cycle_id) if config.cycle_id else None
    if cycle is not None and cycle.is_locked:
        return failure(E.CYCLE_LOCKED, "Cannot assign tests on a locked cycle")

    ctx, err = _prepare(config)
    if err:
        return err
    plan, cases = ctx["plan"], ctx["cases"]

    def _new_execution(tc_id, user_id):
        execution = TestExecution(
            cycle_id=config.cycle_id,
            test_case_id=tc_id,
            story_id=cases[tc_id].story_id,
            assigned_to=user_id,
            assigned_by=actor.user_id,
            status="assigned",
            step_results=[],
        )
        db.session.add(execution)
        return execution

    try:
        pending = []
        for tc_id, user_id in plan.primary:
            pending.append((_new_execution(tc_id, user_id), "primary", None))

        groups = []
        for tc_id, members in plan.cross_validation:
            group = CrossValidationGroup(cycle_id=config.cycle_id, test_case_id=tc_id)
            db.session.add(group)
            groups.append(group)
            for user_id in members:
                pending.append((_new_execution(tc_id, user_id), "cross_validation", group))

        db.session.flush()
        for execution, kind, group in pending:
            db.session.add(CycleAssignment(
                cycle_id=config.cycle_id,
                execution_id=execution.execution_id,
                assignment_type=kind,
                cross_validation_group_id=group.group_id if group else None,
                assigned_by=actor.user_id,
            ))

        log_activity("assignment_executed", actor.user_id, None, {
            "cycle_id": config.cycle_id,
            "primary": len(plan.primary),
            "cross_validation": len(plan.cross_validation),
            "executions": len(pending),
        })
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Assignment for cycle %s rolled back", config.cycle_id, extra={"cycle_id": config.cycle_id})
        raise

    logger.info(
        "Cycle %s: %d execution(s) assigned (%d primary, %d CV group(s))",
        config.cycle_id, len(pending), len(plan.primary), len(groups),
        extra={"cycle_id": config.cycle_id},
    )
    summary = summarize_plan(config, ctx["roster"], plan)
    summary.update({
        "success": True,
        "executions_created": len(pending),
        "group_ids": [g.group_id for g in groups],
    })
    return summary


def get_already_assigned_test_case_ids(cycle_id) -> list[str]:
    rows = (
        db.session.query(TestExecution.test_case_id)
        .filter(TestExecution.cycle_id == cycle_id)
        .distinct()
        .all()
    )
    return sorted(r[0] for r in rows)
