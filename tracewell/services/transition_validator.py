"""
Status transition validation.

Pure, side-effect-free and total: unknown statuses, unknown roles and a
missing role all yield "no transitions" rather than an exception.  Every
mutation path consults these functions before writing, so role gating
lives here and nowhere else.

Usage:
    from tracewell.services.transition_validator import (
        allowed_transitions, can_transition, find_transition,
    )

    allowed_transitions(EXECUTION_STATUS_CONFIG, "in_progress", "UAT Tester")
    can_transition_execution("passed", "verified", "UAT Tester")   # False
"""

from tracewell.models.auth import (
    ROLE_ADMIN,
    ROLE_PORTFOLIO_MANAGER,
    ROLE_PROGRAM_MANAGER,
    ROLE_UAT_MANAGER,
    ROLE_UAT_TESTER,
)
from tracewell.models.transitions import (
    DEFECT_STATUS_CONFIG,
    EXECUTION_STATUS_CONFIG,
    STORY_STATUS_CONFIG,
    TransitionEntry,
    get_status_config,
)


def allowed_transitions(table, from_status, role) -> list[TransitionEntry]:
    """Destinations of ``from_status`` whose role allow-list contains ``role``."""
    if not role or not isinstance(role, str):
        return []
    config = get_status_config(table, from_status)
    return [t for t in config.transitions if role in t.allowed_roles]


def find_transition(table, from_status, to_status, role) -> TransitionEntry | None:
    """Return the matching rule entry, or None when the move is not allowed."""
    for entry in allowed_transitions(table, from_status, role):
        if entry.to == to_status:
            return entry
    return None


def can_transition(table, from_status, to_status, role) -> bool:
    return find_transition(table, from_status, to_status, role) is not None


# ── Per-machine shortcuts ────────────────────────────────────────────────

def allowed_story_transitions(from_status, role):
    return allowed_transitions(STORY_STATUS_CONFIG, from_status, role)


def can_transition_story(from_status, to_status, role):
    return can_transition(STORY_STATUS_CONFIG, from_status, to_status, role)


def allowed_execution_transitions(from_status, role):
    return allowed_transitions(EXECUTION_STATUS_CONFIG, from_status, role)


def can_transition_execution(from_status, to_status, role):
    return can_transition(EXECUTION_STATUS_CONFIG, from_status, to_status, role)


def allowed_defect_transitions(from_status, role):
    return allowed_transitions(DEFECT_STATUS_CONFIG, from_status, role)


def can_transition_defect(from_status, to_status, role):
    return can_transition(DEFECT_STATUS_CONFIG, from_status, to_status, role)


# ── Permission helpers ───────────────────────────────────────────────────

_PLANNERS = frozenset({ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_PROGRAM_MANAGER, ROLE_UAT_MANAGER})
_RUNNERS = frozenset({ROLE_ADMIN, ROLE_UAT_MANAGER, ROLE_UAT_TESTER})
_VERIFIERS = frozenset({ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_UAT_MANAGER})


def _role_in(role, roles):
    return isinstance(role, str) and role in roles


def can_generate_test_cases(role):
    return _role_in(role, _PLANNERS)


def can_create_test_cases(role):
    return _role_in(role, _PLANNERS)


def can_assign_testers(role):
    return _role_in(role, _PLANNERS)


def can_manage_cycles(role):
    return _role_in(role, _PLANNERS)


def can_lock_cycles(role):
    return _role_in(role, _VERIFIERS)


def can_execute_tests(role):
    return _role_in(role, _RUNNERS)


def can_verify_results(role):
    return _role_in(role, _VERIFIERS)


def can_create_defects(role):
    return _role_in(role, _PLANNERS | {ROLE_UAT_TESTER})


def can_resolve_defects(role):
    return _role_in(role, _VERIFIERS)


def can_delete_stories(role):
    return role == ROLE_ADMIN
