"""
Shared pytest fixtures for the Tracewell test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_story / make_cycle / make_test_case / add_testers:
      row factories
    - admin, portfolio_manager, program_manager, developer, uat_manager,
      tester: one user per role
"""

import itertools

import pytest

from tracewell import create_app
from tracewell.models import db as _db
from tracewell.models.auth import (
    ROLE_ADMIN,
    ROLE_DEVELOPER,
    ROLE_PORTFOLIO_MANAGER,
    ROLE_PROGRAM_MANAGER,
    ROLE_UAT_MANAGER,
    ROLE_UAT_TESTER,
    User,
)
from tracewell.models.story import Story
from tracewell.models.testing import CycleTester, TestCase, UATCycle

PROGRAM_ID = "onco-program"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Row factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    counter = itertools.count(1)

    def _make(role=ROLE_UAT_TESTER, *, user_id=None, name=None, is_active=True):
        n = next(counter)
        user = User(
            user_id=user_id or f"user-{n:03d}",
            name=name or f"{role} {n}",
            email=f"{user_id or f'user-{n:03d}'}@example.test",
            role=role,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def admin(make_user):
    return make_user(ROLE_ADMIN, user_id="admin-1", name="Ada Admin")


@pytest.fixture()
def portfolio_manager(make_user):
    return make_user(ROLE_PORTFOLIO_MANAGER, user_id="pfm-1", name="Pat Portfolio")


@pytest.fixture()
def program_manager(make_user):
    return make_user(ROLE_PROGRAM_MANAGER, user_id="pgm-1", name="Quinn Program")


@pytest.fixture()
def developer(make_user):
    return make_user(ROLE_DEVELOPER, user_id="dev-1", name="Devi Developer")


@pytest.fixture()
def uat_manager(make_user):
    return make_user(ROLE_UAT_MANAGER, user_id="uatm-1", name="Uma Manager")


@pytest.fixture()
def tester(make_user):
    return make_user(ROLE_UAT_TESTER, user_id="tester-1", name="Toni Tester")


@pytest.fixture()
def make_story():
    """Insert a Story row directly, at any status (bypasses lifecycle guards)."""
    counter = itertools.count(1)

    def _make(status="Draft", **fields):
        n = next(counter)
        story = Story(
            story_id=fields.pop("story_id", f"ONCO-20260301-{n:04d}"),
            program_id=fields.pop("program_id", PROGRAM_ID),
            title=fields.pop("title", f"Story {n}"),
            status=status,
            version=fields.pop("version", 1),
            related_stories=fields.pop("related_stories", []),
            **fields,
        )
        _db.session.add(story)
        _db.session.commit()
        return story

    return _make


@pytest.fixture()
def make_test_case(make_story):
    counter = itertools.count(1)
    state = {}

    def _make(story_id=None, **fields):
        n = next(counter)
        if story_id is None:
            if "story" not in state:
                state["story"] = make_story(status="Approved", story_id="ONCO-20260301-TCST")
            story_id = state["story"].story_id
        tc = TestCase(
            test_case_id=fields.pop("test_case_id", f"tc-{n:03d}"),
            story_id=story_id,
            program_id=fields.pop("program_id", PROGRAM_ID),
            title=fields.pop("title", f"Test case {n}"),
            **fields,
        )
        _db.session.add(tc)
        _db.session.commit()
        return tc

    return _make


@pytest.fixture()
def make_cycle():
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        cycle = UATCycle(
            cycle_id=fields.pop("cycle_id", f"cycle-{n:03d}"),
            program_id=fields.pop("program_id", PROGRAM_ID),
            name=fields.pop("name", f"Cycle {n}"),
            **fields,
        )
        _db.session.add(cycle)
        _db.session.commit()
        return cycle

    return _make


@pytest.fixture()
def add_testers(make_user):
    """Create testers and enrol them: add_testers(cycle, {"tester-a": 100, ...})."""

    def _add(cycle, weights: dict):
        users = []
        for user_id, weight in weights.items():
            user = make_user(ROLE_UAT_TESTER, user_id=user_id, name=user_id.replace("-", " ").title())
            _db.session.add(CycleTester(cycle_id=cycle.cycle_id, user_id=user_id, capacity_weight=weight))
            users.append(user)
        _db.session.commit()
        return users

    return _add
