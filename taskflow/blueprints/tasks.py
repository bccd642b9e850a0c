"""Tasks blueprint — /api/tasks/*

Creation, deletion and moves go through the ordering engine, which owns
Task.column_id / Task.position. Engine errors (NotFound, InvalidArgument,
Conflict, StorageFailure) are turned into JSON by the app-level handler.

Route Map:
  POST   /api/tasks                — Create task at the tail of a column
  PUT    /api/tasks/<task_id>      — Update descriptive fields / assignees
  PUT    /api/tasks/<task_id>/move — Reposition (same or other column)
  DELETE /api/tasks/<task_id>      — Delete task
"""

from flask import Blueprint, abort, jsonify, request
from flask_login import current_user, login_required

from taskflow.extensions import db
from taskflow.models.task import Task
from taskflow.services import ordering, project_service, task_service

tasks_bp = Blueprint("tasks", __name__, url_prefix="/api/tasks")


def _authorize_column(column_id):
    """404 for unknown columns, 403 unless the user is a project member."""
    project_id = project_service.project_id_for_column(column_id)
    if project_id is None:
        abort(404)
    if project_service.get_membership(project_id, current_user.id) is None:
        abort(403)
    return project_id


def _authorize_task(task_id):
    task = db.session.get(Task, task_id)
    if task is None:
        abort(404)
    project_id = _authorize_column(task.column_id)
    return task, project_id


@tasks_bp.route("", methods=["POST"])
@login_required
def create_task():
    data = request.get_json(silent=True) or {}
    column_id = data.get("column_id")
    if not column_id:
        return jsonify({"success": False, "message": "column_id is required."}), 400
    _authorize_column(column_id)

    try:
        task = task_service.create_task(column_id, data, current_user.id)
    except ValueError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    return jsonify({"success": True, "task": task.to_dict()}), 201


@tasks_bp.route("/<task_id>", methods=["PUT"])
@login_required
def update_task(task_id):
    _authorize_task(task_id)
    data = request.get_json(silent=True) or {}
    try:
        task = task_service.update_task(task_id, data, current_user.id)
    except ValueError as e:
        db.session.rollback()
        return jsonify({"success": False, "message": str(e)}), 400
    db.session.commit()
    return jsonify({"success": True, "task": task.to_dict()})


@tasks_bp.route("/<task_id>/move", methods=["PUT"])
@login_required
def move_task(task_id):
    task, project_id = _authorize_task(task_id)
    data = request.get_json(silent=True) or {}
    column_id = data.get("column_id")
    position = data.get("position")
    if not column_id or position is None:
        return jsonify({
            "success": False,
            "message": "column_id and position are required.",
        }), 400

    if column_id != task.column_id:
        dest_project_id = project_service.project_id_for_column(column_id)
        if dest_project_id is None:
            abort(404)
        if dest_project_id != project_id:
            return jsonify({
                "success": False,
                "message": "Tasks can only move between columns of the same project.",
            }), 400

    task = ordering.move_task(task_id, column_id, position, actor_id=current_user.id)
    return jsonify({"success": True, "task": task.to_dict()})


@tasks_bp.route("/<task_id>", methods=["DELETE"])
@login_required
def delete_task(task_id):
    _authorize_task(task_id)
    ordering.delete_task(task_id, actor_id=current_user.id)
    return jsonify({"success": True})
