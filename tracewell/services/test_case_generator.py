"""
Tracewell
Automatic test-case generation.

When a story is approved and has no test cases yet, one draft test case is
derived from each non-empty acceptance-criteria line.  Runs as a side-effect
handler; disabled with ``AUTO_GENERATE_TEST_CASES = False``.
"""

import logging
import re

from flask import current_app

from tracewell.models import db
from tracewell.models.audit import log_activity
from tracewell.models.story import Story
from tracewell.models.testing import TestCase

logger = logging.getLogger(__name__)

# Leading bullets / numbering stripped from acceptance-criteria lines
_BULLET_RE = re.compile(r"^\s*(?:(?:[-*•]|\d+[.)]|\[[ xX]?\])\s*)+")

MAX_TITLE_LEN = 300


def criteria_lines(acceptance_criteria: str | None) -> list[str]:
    """Split acceptance criteria into clean, non-empty lines."""
    if not acceptance_criteria:
        return []
    lines = []
    for raw in acceptance_criteria.splitlines():
        line = _BULLET_RE.sub("", raw).strip()
        if line:
            lines.append(line)
    return lines


def build_test_cases(story: Story, actor_id: str | None = None) -> list[TestCase]:
    """Unsaved draft TestCase objects for ``story``, one per criteria line."""
    cases = []
    for idx, line in enumerate(criteria_lines(story.acceptance_criteria), start=1):
        title = f"{story.story_id} AC{idx}: {line}"[:MAX_TITLE_LEN]
        cases.append(TestCase(
            story_id=story.story_id,
            program_id=story.program_id,
            title=title,
            description=f"Verify acceptance criterion {idx} of \"{story.title}\".",
            test_steps=[{"step_number": 1, "action": f"Exercise: {line}", "expected": line}],
            status="draft",
            is_generated=True,
            created_by=actor_id,
        ))
    return cases


def generate_for_approved_story(payload: dict) -> int:
    """Side-effect handler for ``story.approved``.  Returns the number created."""
    if not current_app.config.get("AUTO_GENERATE_TEST_CASES", True):
        return 0

    story = db.session.get(Story, payload.get("story_id"))
    if story is None or story.is_deleted:
        return 0
    if TestCase.query.filter_by(story_id=story.story_id, is_archived=False).count():
        return 0

    cases = build_test_cases(story, payload.get("actor_id"))
    if not cases:
        logger.info("No acceptance criteria on %s, nothing generated", story.story_id)
        return 0

    db.session.add_all(cases)
    log_activity("test_cases_generated", payload.get("actor_id"), story.story_id, {"count": len(cases)})
    db.session.commit()
    logger.info("Generated %d test case(s) for %s", len(cases), story.story_id)
    return len(cases)
