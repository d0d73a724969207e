"""
Shared blueprint helpers.

Authentication happens upstream; the gateway forwards the signed-in user's
id in ``X-User-Id`` and views resolve it to a ``User`` row here.
"""

from flask import request

from tracewell.models import db
from tracewell.models.auth import User


def current_actor():
    """Active User named by the X-User-Id header, or None."""
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user
