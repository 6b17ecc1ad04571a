"""API routes for pipeline runs, gavels, previews and run event streams."""

import logging
from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from pydantic import ValidationError

from council.pipeline.errors import PipelineValidationError
from council.pipeline.state import RunOptions
from council.sse.stream import format_keepalive, format_sse_message
from council.utils.helpers import generate_id

logger = logging.getLogger(__name__)

runs_bp = Blueprint("runs", __name__, url_prefix="/api")

TERMINAL_EVENTS = {"run:completed", "run:error", "run:aborted"}


def _engine() -> Dict[str, Any]:
    return current_app.extensions["council"]


def _error(message: str, status: int) -> Any:
    return jsonify({"error": message}), status


# ===== RUNS =====

@runs_bp.route("/runs", methods=["POST"])
def start_run() -> Any:
    """
    Start a pipeline run.

    Body:
        {
          "pipeline_id": "brainstorm",
          "input": "...",
          "options": {"mode": "synthesis", "variables": {...}, "continue_on_error": false},
          "wait": false
        }

    Returns:
        202 {"run_id": ...} or, with "wait": true, 200 with the RunResult
    """
    engine = _engine()
    controller = engine["controller"]
    data = request.get_json(silent=True) or {}

    pipeline_id = data.get("pipeline_id")
    if not pipeline_id:
        return _error("pipeline_id is required", 400)
    if controller.registry.get_pipeline(pipeline_id) is None:
        return _error(f"Unknown pipeline: {pipeline_id}", 404)

    try:
        options = RunOptions(**(data.get("options") or {}))
    except ValidationError as e:
        return _error(str(e), 400)
    options.run_id = options.run_id or generate_id("run")
    if options.run_id in engine["host"].call(controller.get_active_runs):
        return _error(f"Run {options.run_id} is already active", 409)

    coro = controller.start_run(pipeline_id, data.get("input"), options)
    if data.get("wait"):
        try:
            result = engine["host"].run(coro)
        except PipelineValidationError as e:
            return _error(e.message, 409)
        return jsonify(result.model_dump(mode="json"))

    engine["host"].submit(coro)
    logger.info(f"Run {options.run_id} submitted for pipeline {pipeline_id}")
    return jsonify({"run_id": options.run_id, "pipeline_id": pipeline_id}), 202


@runs_bp.route("/runs", methods=["GET"])
def list_runs() -> Any:
    controller = _engine()["controller"]
    host = _engine()["host"]
    return jsonify({
        "active": host.call(controller.get_active_runs),
        "history": [state.model_dump(mode="json") for state in host.call(controller.get_history)],
        "summary": host.call(controller.get_summary),
    })


def _control(method_name: str, run_id: str) -> Any:
    engine = _engine()
    method = getattr(engine["controller"], method_name)
    try:
        changed = engine["host"].call(method, run_id)
    except PipelineValidationError as e:
        return _error(e.message, 400)
    return jsonify({"run_id": run_id, "success": changed})


@runs_bp.route("/runs/<run_id>/pause", methods=["POST"])
def pause_run(run_id: str) -> Any:
    return _control("pause_run", run_id)


@runs_bp.route("/runs/<run_id>/resume", methods=["POST"])
def resume_run(run_id: str) -> Any:
    return _control("resume_run", run_id)


@runs_bp.route("/runs/<run_id>/abort", methods=["POST"])
def abort_run(run_id: str) -> Any:
    return _control("abort_run", run_id)


@runs_bp.route("/runs/<run_id>/state", methods=["GET"])
def get_run_state(run_id: str) -> Any:
    engine = _engine()
    state = engine["host"].call(engine["controller"].get_run_state, run_id)
    if state is None:
        return _error(f"Unknown run: {run_id}", 404)
    return jsonify(state.model_dump(mode="json"))


@runs_bp.route("/runs/<run_id>/progress", methods=["GET"])
def get_progress(run_id: str) -> Any:
    engine = _engine()
    progress = engine["host"].call(engine["controller"].get_progress, run_id)
    if progress is None:
        return _error(f"Unknown run: {run_id}", 404)
    return jsonify(progress)


@runs_bp.route("/runs/<run_id>/output", methods=["GET"])
def get_output(run_id: str) -> Any:
    engine = _engine()
    controller = engine["controller"]
    state = engine["host"].call(controller.get_run_state, run_id)
    if state is None:
        return _error(f"Unknown run: {run_id}", 404)
    output = engine["host"].call(controller.get_output, run_id)
    return jsonify({"run_id": run_id, "status": state.status.value, "mode": state.mode.value, "output": output})


@runs_bp.route("/runs/<run_id>/events", methods=["GET"])
def stream_run_events(run_id: str) -> Any:
    """
    Server-Sent Events stream of a run's events.

    The stream ends after the run's terminal event. Pass ``*`` as the run id
    to follow every run.
    """
    sse = _engine()["sse"]
    connection = sse.connect(run_id, request.args.get("client_id"))

    def generate():
        try:
            while True:
                events = connection.get_events(timeout=30.0)
                if not events:
                    yield format_keepalive()
                    continue
                for event in events:
                    yield format_sse_message(event["event"], event["data"])
                    if run_id != "*" and event["event"] in TERMINAL_EVENTS:
                        return
        finally:
            sse.disconnect(run_id, connection.client_id)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ===== GAVELS =====

@runs_bp.route("/gavels/active", methods=["GET"])
def get_active_gavel() -> Any:
    engine = _engine()
    gavel = engine["host"].call(engine["controller"].get_active_gavel, request.args.get("run_id"))
    return jsonify({"gavel": gavel.model_dump(mode="json") if gavel else None})


def _decide(method_name: str, gavel_id: str, *args) -> Any:
    engine = _engine()
    method = getattr(engine["controller"], method_name)
    try:
        outcome = engine["host"].call(method, gavel_id, *args)
    except PipelineValidationError as e:
        return _error(e.message, 404 if "No active gavel" in e.message else 400)
    return jsonify(outcome.model_dump(mode="json"))


@runs_bp.route("/gavels/<gavel_id>/approve", methods=["POST"])
def approve_gavel(gavel_id: str) -> Any:
    """
    Approve a gavel.

    Body (optional):
        {"edited_values": {"output": "edited text"}}
    """
    data = request.get_json(silent=True) or {}
    return _decide("approve_gavel", gavel_id, data or None)


@runs_bp.route("/gavels/<gavel_id>/reject", methods=["POST"])
def reject_gavel(gavel_id: str) -> Any:
    data = request.get_json(silent=True) or {}
    return _decide("reject_gavel", gavel_id, data.get("reason"))


@runs_bp.route("/gavels/<gavel_id>/skip", methods=["POST"])
def skip_gavel(gavel_id: str) -> Any:
    return _decide("skip_gavel", gavel_id)


# ===== PREVIEW =====

@runs_bp.route("/preview", methods=["POST"])
def execute_preview() -> Any:
    """
    Preview a pipeline without writing stores or calling the model.

    Body:
        {"pipeline_id": "...", "input": "...", "variables": {...}}
    """
    engine = _engine()
    data = request.get_json(silent=True) or {}
    pipeline_id = data.get("pipeline_id")
    if not pipeline_id:
        return _error("pipeline_id is required", 400)

    try:
        result = engine["host"].run(
            engine["preview"].execute_preview(pipeline_id, data.get("input"), data.get("variables"))
        )
    except PipelineValidationError as e:
        return _error(e.message, 404)
    return jsonify(result.model_dump(mode="json"))


@runs_bp.route("/executions/<execution_id>/cancel", methods=["POST"])
def cancel_execution(execution_id: str) -> Any:
    engine = _engine()
    cancelled = engine["host"].call(engine["preview"].cancel_execution, execution_id)
    return jsonify({"execution_id": execution_id, "success": cancelled})


# ===== PIPELINES =====

@runs_bp.route("/pipelines", methods=["GET"])
def list_pipelines() -> Any:
    return jsonify(_engine()["controller"].registry.list_all())


@runs_bp.route("/pipelines", methods=["POST"])
def register_pipeline() -> Any:
    """Register a custom pipeline definition (JSON body)."""
    registry = _engine()["controller"].registry
    data = request.get_json(silent=True)
    if not data:
        return _error("Pipeline definition required", 400)

    try:
        pipeline = registry.register_custom(data)
    except (ValidationError, ValueError) as e:
        return _error(str(e), 400)

    return jsonify({
        "pipeline": pipeline.model_dump(mode="json"),
        "warnings": registry.loader.validate_pipeline(pipeline),
    }), 201


@runs_bp.route("/pipelines/<pipeline_id>", methods=["GET"])
def get_pipeline(pipeline_id: str) -> Any:
    pipeline = _engine()["controller"].registry.get_pipeline(pipeline_id)
    if pipeline is None:
        return _error(f"Unknown pipeline: {pipeline_id}", 404)
    return jsonify(pipeline.model_dump(mode="json"))


@runs_bp.route("/pipelines/<pipeline_id>", methods=["DELETE"])
def delete_pipeline(pipeline_id: str) -> Any:
    if not _engine()["controller"].registry.unregister(pipeline_id):
        return _error(f"Unknown custom pipeline: {pipeline_id}", 404)
    return jsonify({"pipeline_id": pipeline_id, "deleted": True})


# ===== MODE =====

@runs_bp.route("/mode", methods=["GET", "PUT"])
def delivery_mode() -> Any:
    engine = _engine()
    controller = engine["controller"]
    if request.method == "PUT":
        data = request.get_json(silent=True) or {}
        try:
            engine["host"].call(controller.set_mode, data.get("mode"))
        except PipelineValidationError as e:
            return _error(e.message, 409)
    return jsonify({"mode": controller.mode.value})
