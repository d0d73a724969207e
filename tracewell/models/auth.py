"""
Tracewell
Identity model.

Authentication and sessions are handled upstream; this table only carries
what the workflow core needs from a user: display name and role.

Models:
    - User: platform user with a single role
"""

import uuid
from datetime import datetime, timezone

from tracewell.models import db


# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_ADMIN = "Admin"
ROLE_PORTFOLIO_MANAGER = "Portfolio Manager"
ROLE_PROGRAM_MANAGER = "Program Manager"
ROLE_DEVELOPER = "Developer"
ROLE_UAT_MANAGER = "UAT Manager"
ROLE_UAT_TESTER = "UAT Tester"

USER_ROLES = frozenset({
    ROLE_ADMIN,
    ROLE_PORTFOLIO_MANAGER,
    ROLE_PROGRAM_MANAGER,
    ROLE_DEVELOPER,
    ROLE_UAT_MANAGER,
    ROLE_UAT_TESTER,
})


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=True, unique=True)
    role = db.Column(
        db.String(30), nullable=True, index=True,
        comment="Admin | Portfolio Manager | Program Manager | Developer | UAT Manager | UAT Tester",
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.user_id}: {self.name} ({self.role})>"
