"""
Tracewell
Status workflow rule tables.

Three independent, immutable tables (story, test execution, defect).  Each
source status declares its display label and the exhaustive list of legal
destinations; every destination carries its label, role allow-list,
notes requirement and approval metadata.

The tables are read-only ``MappingProxyType`` views over frozen dataclasses;
nothing at runtime can add, remove or edit a rule.
"""

from dataclasses import dataclass, field
from types import MappingProxyType

from tracewell.models.auth import (
    ROLE_ADMIN,
    ROLE_DEVELOPER,
    ROLE_PORTFOLIO_MANAGER,
    ROLE_PROGRAM_MANAGER,
    ROLE_UAT_MANAGER,
    ROLE_UAT_TESTER,
)


@dataclass(frozen=True)
class TransitionEntry:
    to: str
    label: str
    requires_notes: bool = False
    allowed_roles: frozenset = field(default_factory=frozenset)
    requires_approval: bool = False
    approval_type: str | None = None

    def to_dict(self):
        return {
            "to": self.to,
            "label": self.label,
            "requires_notes": self.requires_notes,
            "requires_approval": self.requires_approval,
            "approval_type": self.approval_type,
        }


@dataclass(frozen=True)
class StatusConfig:
    label: str
    transitions: tuple = ()
    allowed_roles: frozenset = field(default_factory=frozenset)


def _status(label, roles, *transitions):
    """Build a StatusConfig whose every entry carries the source's role list."""
    roles = frozenset(roles)
    entries = tuple(
        TransitionEntry(
            to=t["to"],
            label=t["label"],
            requires_notes=t.get("notes", False),
            allowed_roles=roles,
            requires_approval=t.get("approval") is not None,
            approval_type=t.get("approval"),
        )
        for t in transitions
    )
    return StatusConfig(label=label, transitions=entries, allowed_roles=roles)


def fallback_config(status) -> StatusConfig:
    """Config returned for an unrecognised status: no actions, raw label."""
    return StatusConfig(label=str(status) if status is not None else "", transitions=(), allowed_roles=frozenset())


def get_status_config(table, status) -> StatusConfig:
    try:
        return table.get(status) or fallback_config(status)
    except TypeError:  # unhashable input
        return fallback_config(status)


# ── Role groups ──────────────────────────────────────────────────────────

_STORY_MANAGERS = (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_PROGRAM_MANAGER)
_TEST_RUNNERS = (ROLE_ADMIN, ROLE_UAT_MANAGER, ROLE_UAT_TESTER)
_VERIFIERS = (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_UAT_MANAGER)


# ═════════════════════════════════════════════════════════════════════════════
# STORY
# ═════════════════════════════════════════════════════════════════════════════

STORY_STATUS_CONFIG = MappingProxyType({
    "Draft": _status(
        "Draft", _STORY_MANAGERS,
        {"to": "Internal Review", "label": "Submit for Internal Review"},
        {"to": "Needs Discussion", "label": "Flag for Discussion", "notes": True},
        {"to": "Out of Scope", "label": "Mark Out of Scope", "notes": True},
    ),
    "Internal Review": _status(
        "Internal Review", _STORY_MANAGERS,
        {"to": "Pending Client Review", "label": "Approve & Send to Client", "approval": "internal_review"},
        {"to": "Draft", "label": "Return to Draft", "notes": True},
        {"to": "Needs Discussion", "label": "Flag for Discussion", "notes": True},
    ),
    "Pending Client Review": _status(
        "Pending Client Review", _STORY_MANAGERS,
        {"to": "Approved", "label": "Client Approved", "approval": "stakeholder"},
        {"to": "Needs Discussion", "label": "Client Needs Discussion", "notes": True},
        {"to": "Internal Review", "label": "Return to Internal Review", "notes": True},
    ),
    "Approved": _status(
        "Approved", _STORY_MANAGERS,
        {"to": "In Development", "label": "Start Development"},
        {"to": "Needs Discussion", "label": "Flag for Discussion", "notes": True},
    ),
    "In Development": _status(
        "In Development", _STORY_MANAGERS + (ROLE_DEVELOPER,),
        {"to": "In UAT", "label": "Move to UAT"},
        {"to": "Needs Discussion", "label": "Flag for Discussion", "notes": True},
    ),
    "In UAT": _status(
        "In UAT", _STORY_MANAGERS + (ROLE_UAT_MANAGER,),
        {"to": "Approved", "label": "UAT Complete - Accept"},
        {"to": "In Development", "label": "Return to Development", "notes": True},
        {"to": "Needs Discussion", "label": "Flag for Discussion", "notes": True},
    ),
    "Needs Discussion": _status(
        "Needs Discussion", _STORY_MANAGERS,
        {"to": "Draft", "label": "Return to Draft"},
        {"to": "Internal Review", "label": "Submit for Internal Review"},
        {"to": "Pending Client Review", "label": "Send to Client Review"},
        {"to": "Out of Scope", "label": "Mark Out of Scope", "notes": True},
    ),
    "Out of Scope": _status(
        "Out of Scope", (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER),
        {"to": "Draft", "label": "Reopen as Draft", "notes": True},
    ),
})


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTION
# ═════════════════════════════════════════════════════════════════════════════

EXECUTION_STATUS_CONFIG = MappingProxyType({
    "assigned": _status(
        "Assigned", _TEST_RUNNERS,
        {"to": "in_progress", "label": "Start Testing"},
    ),
    "in_progress": _status(
        "In Progress", _TEST_RUNNERS,
        {"to": "passed", "label": "Mark as Passed"},
        {"to": "failed", "label": "Mark as Failed", "notes": True},
        {"to": "blocked", "label": "Mark as Blocked", "notes": True},
    ),
    "passed": _status(
        "Passed", _VERIFIERS,
        {"to": "verified", "label": "Verify Result"},
    ),
    "failed": _status(
        "Failed", _TEST_RUNNERS,
        {"to": "in_progress", "label": "Re-test", "notes": True},
    ),
    "blocked": _status(
        "Blocked", _TEST_RUNNERS,
        {"to": "in_progress", "label": "Resume Testing", "notes": True},
    ),
    "verified": _status("Verified", ()),
})


# ═════════════════════════════════════════════════════════════════════════════
# DEFECT
# ═════════════════════════════════════════════════════════════════════════════

DEFECT_STATUS_CONFIG = MappingProxyType({
    "open": _status(
        "Open", _VERIFIERS,
        {"to": "confirmed", "label": "Confirm Defect"},
        {"to": "closed", "label": "Close (Not a Bug)", "notes": True},
    ),
    "confirmed": _status(
        "Confirmed", _VERIFIERS,
        {"to": "in_progress", "label": "Start Fix"},
    ),
    "in_progress": _status(
        "In Progress", _VERIFIERS + (ROLE_PROGRAM_MANAGER,),
        {"to": "fixed", "label": "Mark as Fixed", "notes": True},
    ),
    "fixed": _status(
        "Fixed", _VERIFIERS,
        {"to": "verified", "label": "Verify Fix"},
        {"to": "in_progress", "label": "Reopen (Fix Failed)", "notes": True},
    ),
    "verified": _status(
        "Verified", _VERIFIERS,
        {"to": "closed", "label": "Close Defect"},
    ),
    "closed": _status(
        "Closed", (ROLE_ADMIN, ROLE_UAT_MANAGER),
        {"to": "open", "label": "Reopen", "notes": True},
    ),
})
