"""
Tracewell
Side-effect dispatcher.

Lifecycle services emit named events after their primary write has been
committed; subscribed handlers (notifications, test-case generation) run
outside that transaction.  A handler failure is retried, then logged, and
never reaches the emitter.

Modes (``SIDE_EFFECTS_MODE``):
    thread  - each handler runs on a daemon thread inside its own app context
    inline  - handlers run synchronously in the caller's context (testing)

Usage:
    from tracewell.services.side_effects import emit, subscribe

    subscribe("story.approved", generate_for_approved_story)
    emit("story.approved", {"story_id": "ONCO-20260301-K3XZ"})
"""

import logging
import threading
from collections import defaultdict

from flask import current_app, has_app_context

from tracewell.models import db

logger = logging.getLogger(__name__)

EVENT_STORY_STATUS_CHANGED = "story.status_changed"
EVENT_STORY_APPROVED = "story.approved"

MODE_THREAD = "thread"
MODE_INLINE = "inline"


class SideEffectDispatcher:
    """In-process event bus with isolated, retried handlers."""

    def __init__(self):
        self._handlers: dict[str, list] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, handler) -> None:
        """Register ``handler(payload)`` for ``event``; duplicates are ignored."""
        with self._lock:
            if handler not in self._handlers[event]:
                self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler) -> None:
        with self._lock:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

    def handlers_for(self, event: str) -> list:
        with self._lock:
            return list(self._handlers.get(event, []))

    def emit(self, event: str, payload: dict) -> int:
        """
        Hand ``payload`` to every handler of ``event``.

        Returns the number of handlers scheduled.  Never raises because of a
        handler; with no app context the event is dropped with a warning.
        """
        handlers = self.handlers_for(event)
        if not handlers:
            return 0
        if not has_app_context():
            logger.warning("Side effect %s dropped: no application context", event)
            return 0

        app = current_app._get_current_object()
        mode = app.config.get("SIDE_EFFECTS_MODE", MODE_THREAD)
        attempts = max(1, int(app.config.get("SIDE_EFFECT_MAX_ATTEMPTS", 2)))

        for handler in handlers:
            if mode == MODE_INLINE:
                self._run(event, handler, dict(payload), attempts)
            else:
                t = threading.Thread(
                    target=self._run_in_background,
                    args=(app, event, handler, dict(payload), attempts),
                    daemon=True,
                    name=f"side-effect-{event}",
                )
                t.start()
        return len(handlers)

    # ── Internal ──────────────────────────────────────────────────────────

    def _run_in_background(self, app, event, handler, payload, attempts):
        with app.app_context():
            try:
                self._run(event, handler, payload, attempts)
            finally:
                db.session.remove()

    def _run(self, event, handler, payload, attempts) -> bool:
        name = getattr(handler, "__name__", repr(handler))
        for attempt in range(1, attempts + 1):
            try:
                handler(payload)
                return True
            except Exception:
                db.session.rollback()
                if attempt < attempts:
                    logger.warning(
                        "Side effect %s/%s failed (attempt %d/%d), retrying",
                        event, name, attempt, attempts,
                    )
                else:
                    logger.exception(
                        "Side effect %s/%s failed after %d attempt(s)", event, name, attempts,
                    )
        return False


dispatcher = SideEffectDispatcher()


def subscribe(event: str, handler) -> None:
    dispatcher.subscribe(event, handler)


def emit(event: str, payload: dict) -> int:
    return dispatcher.emit(event, payload)


def init_side_effects(app) -> None:
    """Register the built-in handlers.  Called once from the app factory."""
    from tracewell.services.notification import notify_status_change
    from tracewell.services.test_case_generator import generate_for_approved_story

    subscribe(EVENT_STORY_STATUS_CHANGED, notify_status_change)
    subscribe(EVENT_STORY_APPROVED, generate_for_approved_story)
    app.logger.debug("Side-effect handlers registered (mode=%s)", app.config.get("SIDE_EFFECTS_MODE"))
