"""
Tracewell
Cross-validation agreement.

Read-only: the classification of a group is derived from its executions'
current statuses every time it is asked for.

    pending   - at least one execution is not finished
    agree     - every finished status is the same (``verified`` counts as ``passed``)
    disagree  - any mix, including blocked next to passed or failed
"""

from tracewell.models import db
from tracewell.models.testing import (
    EXECUTION_TERMINAL_STATUSES,
    CrossValidationGroup,
    CycleAssignment,
    TestExecution,
)

AGREEMENT_PENDING = "pending"
AGREEMENT_AGREE = "agree"
AGREEMENT_DISAGREE = "disagree"


def _status_of(execution):
    return execution.get("status") if isinstance(execution, dict) else getattr(execution, "status", None)


def normalize_status(status):
    return "passed" if status == "verified" else status


def is_group_complete(executions) -> bool:
    statuses = [_status_of(e) for e in executions]
    return bool(statuses) and all(s in EXECUTION_TERMINAL_STATUSES for s in statuses)


def evaluate_group(executions) -> str:
    """Classify one group from its executions (model rows or dicts with ``status``)."""
    executions = list(executions)
    if not is_group_complete(executions):
        return AGREEMENT_PENDING
    outcomes = {normalize_status(_status_of(e)) for e in executions}
    return AGREEMENT_AGREE if len(outcomes) == 1 else AGREEMENT_DISAGREE


def group_executions(group_id) -> list[TestExecution]:
    return (
        db.session.query(TestExecution)
        .join(CycleAssignment, CycleAssignment.execution_id == TestExecution.execution_id)
        .filter(CycleAssignment.cross_validation_group_id == group_id)
        .order_by(TestExecution.assigned_to)
        .all()
    )


def summarize_cycle(cycle_id) -> dict:
    """Agreement counts plus per-group detail for one cycle."""
    groups = (
        CrossValidationGroup.query.filter_by(cycle_id=cycle_id)
        .order_by(CrossValidationGroup.created_at, CrossValidationGroup.group_id)
        .all()
    )
    detail = []
    counts = {AGREEMENT_PENDING: 0, AGREEMENT_AGREE: 0, AGREEMENT_DISAGREE: 0}
    for group in groups:
        executions = group_executions(group.group_id)
        result = evaluate_group(executions)
        counts[result] += 1
        detail.append({
            "group_id": group.group_id,
            "test_case_id": group.test_case_id,
            "result": result,
            "executions": [
                {"execution_id": e.execution_id, "assigned_to": e.assigned_to, "status": e.status}
                for e in executions
            ],
        })

    completed = counts[AGREEMENT_AGREE] + counts[AGREEMENT_DISAGREE]
    return {
        "cycle_id": cycle_id,
        "total_groups": len(groups),
        "completed_groups": completed,
        "pending_groups": counts[AGREEMENT_PENDING],
        "agreement_count": counts[AGREEMENT_AGREE],
        "discrepancy_count": counts[AGREEMENT_DISAGREE],
        "agreement_rate": round(counts[AGREEMENT_AGREE] / completed * 100, 1) if completed else None,
        "groups": detail,
    }
