"""
Story Blueprint.

Endpoints:
  Stories:      GET/POST /stories, GET/PUT/DELETE /stories/<id>
  Lifecycle:    GET  /stories/<id>/transitions
                POST /stories/<id>/transition
  Edit lock:    GET/POST/DELETE /stories/<id>/lock
  History:      GET  /stories/<id>/history
"""

from flask import Blueprint, jsonify, request

from tracewell.blueprints import current_actor
from tracewell.services import edit_lock
from tracewell.services.story_lifecycle import (
    create_story,
    get_available_transitions,
    get_story,
    get_story_history,
    list_active_stories,
    soft_delete_story,
    transition_story_status,
    update_story,
)
from tracewell.utils.errors import E, api_error, result_response

story_bp = Blueprint("stories", __name__, url_prefix="/api/v1/stories")


def _require_actor():
    actor = current_actor()
    if actor is None:
        return None, api_error(E.UNAUTHENTICATED, "Not authenticated")
    return actor, None


# ═════════════════════════════════════════════════════════════════════════════
# Stories
# ═════════════════════════════════════════════════════════════════════════════

@story_bp.route("", methods=["GET"])
def list_stories():
    """Active (not deleted) stories, optionally filtered by program_id and status."""
    items = list_active_stories(
        program_id=request.args.get("program_id"),
        status=request.args.get("status"),
    )
    return jsonify({"items": [s.to_dict() for s in items], "total": len(items)})


@story_bp.route("", methods=["POST"])
def create():
    actor, err = _require_actor()
    if err:
        return err
    return result_response(create_story(request.get_json(silent=True) or {}, actor), 201)


@story_bp.route("/<story_id>", methods=["GET"])
def get(story_id):
    story = get_story(story_id)
    if story is None:
        return api_error(E.NOT_FOUND, "Story not found")
    return jsonify(story.to_dict())


@story_bp.route("/<story_id>", methods=["PUT"])
def update(story_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    expected = data.pop("expected_version", None)
    return result_response(update_story(story_id, data, actor, expected_version=expected))


@story_bp.route("/<story_id>", methods=["DELETE"])
def delete(story_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return result_response(soft_delete_story(story_id, actor, reason=data.get("reason")))


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════

@story_bp.route("/<story_id>/transitions", methods=["GET"])
def transitions(story_id):
    actor = current_actor()
    if get_story(story_id) is None:
        return api_error(E.NOT_FOUND, "Story not found")
    return jsonify({"story_id": story_id, "transitions": get_available_transitions(story_id, actor)})


@story_bp.route("/<story_id>/transition", methods=["POST"])
def transition(story_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return result_response(transition_story_status(
        story_id, data["status"], actor,
        notes=data.get("notes"),
        expected_version=data.get("expected_version"),
    ))


@story_bp.route("/<story_id>/history", methods=["GET"])
def history(story_id):
    return result_response(get_story_history(story_id))


# ═════════════════════════════════════════════════════════════════════════════
# Edit lock
# ═════════════════════════════════════════════════════════════════════════════

@story_bp.route("/<story_id>/lock", methods=["GET"])
def lock_status(story_id):
    status = edit_lock.inspect(story_id)
    if not status.pop("exists"):
        return api_error(E.NOT_FOUND, "Story not found")
    return jsonify(status)


@story_bp.route("/<story_id>/lock", methods=["POST"])
def acquire_lock(story_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(edit_lock.acquire(story_id, actor))


@story_bp.route("/<story_id>/lock", methods=["DELETE"])
def release_lock(story_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(edit_lock.release(story_id, actor))
