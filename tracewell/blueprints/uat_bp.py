"""
UAT Blueprint.

Endpoints:
  Cycles:          POST /uat/cycles, GET/PUT /uat/cycles/<id>
                   POST /uat/cycles/<id>/status, POST /uat/cycles/<id>/lock
  Tester pool:     GET/POST /uat/cycles/<id>/testers
                   PUT/DELETE /uat/cycles/<id>/testers/<user_id>
                   POST /uat/cycles/<id>/testers/<user_id>/reactivate
                   GET  /uat/cycles/<id>/workload
  Assignment:      GET  /uat/cycles/<id>/assigned-test-cases
                   POST /uat/cycles/<id>/assignment/preview
                   POST /uat/cycles/<id>/assignment/execute
  Cross-validation GET  /uat/cycles/<id>/cross-validation
  Executions:      GET  /uat/executions/<id>, GET /uat/executions/<id>/transitions
                   POST /uat/executions/<id>/transition, POST /uat/executions/<id>/steps
  Defects:         GET/POST /uat/defects
                   POST /uat/defects/<id>/transition, POST /uat/defects/<id>/assign
"""

from flask import Blueprint, jsonify, request

from tracewell.blueprints import current_actor
from tracewell.models import db
from tracewell.models.testing import UATCycle
from tracewell.services import cycle_service, defect_service, execution_service
from tracewell.services.assignment import (
    execute_assignment,
    get_already_assigned_test_case_ids,
    preview_assignment,
)
from tracewell.services.cross_validation import summarize_cycle
from tracewell.utils.errors import E, api_error, result_response

uat_bp = Blueprint("uat", __name__, url_prefix="/api/v1/uat")


def _require_actor():
    actor = current_actor()
    if actor is None:
        return None, api_error(E.UNAUTHENTICATED, "Not authenticated")
    return actor, None


def _cycle_or_404(cycle_id):
    cycle = db.session.get(UATCycle, cycle_id)
    if cycle is None:
        return None, api_error(E.NOT_FOUND, "Cycle not found")
    return cycle, None


# ═════════════════════════════════════════════════════════════════════════════
# Cycles
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/cycles", methods=["POST"])
def create_cycle():
    actor, err = _require_actor()
    if err:
        return err
    return result_response(cycle_service.create_cycle(request.get_json(silent=True) or {}, actor), 201)


@uat_bp.route("/cycles/<cycle_id>", methods=["GET"])
def get_cycle(cycle_id):
    cycle, err = _cycle_or_404(cycle_id)
    if err:
        return err
    return jsonify(cycle.to_dict())


@uat_bp.route("/cycles/<cycle_id>", methods=["PUT"])
def update_cycle(cycle_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(cycle_service.update_cycle(cycle_id, request.get_json(silent=True) or {}, actor))


@uat_bp.route("/cycles/<cycle_id>/status", methods=["POST"])
def update_cycle_status(cycle_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return result_response(cycle_service.update_cycle_status(cycle_id, data.get("status"), actor))


@uat_bp.route("/cycles/<cycle_id>/lock", methods=["POST"])
def lock_cycle(cycle_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(cycle_service.lock_cycle(cycle_id, actor))


# ═════════════════════════════════════════════════════════════════════════════
# Tester pool
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/cycles/<cycle_id>/testers", methods=["GET"])
def list_testers(cycle_id):
    _, err = _cycle_or_404(cycle_id)
    if err:
        return err
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    items = cycle_service.list_cycle_testers(cycle_id, include_inactive=include_inactive)
    return jsonify({"items": items, "total": len(items)})


@uat_bp.route("/cycles/<cycle_id>/testers", methods=["POST"])
def add_tester(cycle_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("user_id"):
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    return result_response(
        cycle_service.add_tester(cycle_id, data["user_id"], actor, data.get("capacity_weight", 100)),
        201,
    )


@uat_bp.route("/cycles/<cycle_id>/testers/<user_id>", methods=["PUT"])
def update_tester(cycle_id, user_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return result_response(
        cycle_service.update_tester_capacity(cycle_id, user_id, data.get("capacity_weight"), actor)
    )


@uat_bp.route("/cycles/<cycle_id>/testers/<user_id>", methods=["DELETE"])
def remove_tester(cycle_id, user_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(cycle_service.remove_tester(cycle_id, user_id, actor))


@uat_bp.route("/cycles/<cycle_id>/testers/<user_id>/reactivate", methods=["POST"])
def reactivate_tester(cycle_id, user_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(cycle_service.reactivate_tester(cycle_id, user_id, actor))


@uat_bp.route("/cycles/<cycle_id>/workload", methods=["GET"])
def tester_workload(cycle_id):
    _, err = _cycle_or_404(cycle_id)
    if err:
        return err
    return jsonify({"cycle_id": cycle_id, "workload": cycle_service.get_tester_workload(cycle_id)})


# ═════════════════════════════════════════════════════════════════════════════
# Assignment
# ═════════════════════════════════════════════════════════════════════════════

def _assignment_config(cycle, data):
    """Request body over the cycle's stored assignment settings."""
    return {
        "cycle_id": cycle.cycle_id,
        "test_case_ids": data.get("test_case_ids") or [],
        "distribution_method": data.get("distribution_method", cycle.distribution_method),
        "cross_validation_enabled": data.get("cross_validation_enabled", cycle.cross_validation_enabled),
        "cross_validation_percentage": data.get("cross_validation_percentage", cycle.cross_validation_percentage),
        "validators_per_test": data.get("validators_per_test", cycle.validators_per_test),
    }


@uat_bp.route("/cycles/<cycle_id>/assigned-test-cases", methods=["GET"])
def assigned_test_cases(cycle_id):
    _, err = _cycle_or_404(cycle_id)
    if err:
        return err
    return jsonify({"cycle_id": cycle_id, "test_case_ids": get_already_assigned_test_case_ids(cycle_id)})


@uat_bp.route("/cycles/<cycle_id>/assignment/preview", methods=["POST"])
def assignment_preview(cycle_id):
    actor, err = _require_actor()
    if err:
        return err
    cycle, err = _cycle_or_404(cycle_id)
    if err:
        return err
    config = _assignment_config(cycle, request.get_json(silent=True) or {})
    return result_response(preview_assignment(config, actor))


@uat_bp.route("/cycles/<cycle_id>/assignment/execute", methods=["POST"])
def assignment_execute(cycle_id):
    actor, err = _require_actor()
    if err:
        return err
    cycle, err = _cycle_or_404(cycle_id)
    if err:
        return err
    config = _assignment_config(cycle, request.get_json(silent=True) or {})
    return result_response(execute_assignment(config, actor), 201)


@uat_bp.route("/cycles/<cycle_id>/cross-validation", methods=["GET"])
def cross_validation_summary(cycle_id):
    _, err = _cycle_or_404(cycle_id)
    if err:
        return err
    return jsonify(summarize_cycle(cycle_id))


# ═════════════════════════════════════════════════════════════════════════════
# Executions
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/executions/<execution_id>", methods=["GET"])
def get_execution(execution_id):
    execution = execution_service.get_execution(execution_id)
    if execution is None:
        return api_error(E.NOT_FOUND, "Execution not found")
    return jsonify(execution.to_dict())


@uat_bp.route("/executions/<execution_id>/transitions", methods=["GET"])
def execution_transitions(execution_id):
    execution = execution_service.get_execution(execution_id)
    if execution is None:
        return api_error(E.NOT_FOUND, "Execution not found")
    actions = execution_service.available_execution_actions(execution, current_actor())
    return jsonify({"execution_id": execution_id, "transitions": actions})


@uat_bp.route("/executions/<execution_id>/transition", methods=["POST"])
def transition_execution(execution_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return result_response(
        execution_service.transition_execution(execution_id, data["status"], actor, data.get("notes"))
    )


@uat_bp.route("/executions/<execution_id>/steps", methods=["POST"])
def submit_step(execution_id):
    actor, err = _require_actor()
    if err:
        return err
    return result_response(
        execution_service.submit_step_result(execution_id, request.get_json(silent=True) or {}, actor)
    )


# ═════════════════════════════════════════════════════════════════════════════
# Defects
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/defects", methods=["GET"])
def list_defects():
    items = defect_service.list_defects(
        story_id=request.args.get("story_id"),
        status=request.args.get("status"),
        program_id=request.args.get("program_id"),
    )
    return jsonify({"items": [d.to_dict() for d in items], "total": len(items)})


@uat_bp.route("/defects", methods=["POST"])
def create_defect():
    actor, err = _require_actor()
    if err:
        return err
    return result_response(defect_service.create_defect(request.get_json(silent=True) or {}, actor), 201)


@uat_bp.route("/defects/<defect_id>/transition", methods=["POST"])
def transition_defect(defect_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return result_response(defect_service.transition_defect(defect_id, data["status"], actor, data.get("notes")))


@uat_bp.route("/defects/<defect_id>/assign", methods=["POST"])
def assign_defect(defect_id):
    actor, err = _require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return result_response(defect_service.assign_defect(defect_id, data.get("assigned_to"), actor))
