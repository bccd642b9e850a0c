"""Projects blueprint — /api/projects/*

Route Map:
  GET    /api/projects                          — Projects of the current user
  POST   /api/projects                          — Create project (+ default board)
  GET    /api/projects/<project_id>             — Project detail with members
  PUT    /api/projects/<project_id>             — Update (owner/admin)
  DELETE /api/projects/<project_id>             — Delete (owner)
  POST   /api/projects/<project_id>/members     — Add member by email (owner/admin)
  GET    /api/projects/<project_id>/tasks       — Boards → columns → tasks
"""

from flask import Blueprint, g, jsonify, request
from flask_login import current_user, login_required

from taskflow.decorators import (
    project_manager_required,
    project_member_required,
    project_owner_required,
)
from taskflow.extensions import db
from taskflow.services import project_service

projects_bp = Blueprint("projects", __name__, url_prefix="/api/projects")


@projects_bp.route("", methods=["GET"])
@login_required
def list_projects():
    projects = project_service.list_projects_for_user(current_user.id)
    return jsonify({"success": True, "count": len(projects), "projects": projects})


@projects_bp.route("", methods=["POST"])
@login_required
def create_project():
    data = request.get_json(silent=True) or {}
    try:
        project = project_service.create_project(
            owner_id=current_user.id,
            name=data.get("name"),
            description=data.get("description"),
            start_date=data.get("start_date"),
            end_date=data.get("end_date"),
        )
    except ValueError as e:
        db.session.rollback()
        return jsonify({"success": False, "message": str(e)}), 400
    db.session.commit()
    return jsonify({
        "success": True,
        "project": project_service.project_dict(project),
    }), 201


@projects_bp.route("/<project_id>", methods=["GET"])
@project_member_required
def get_project(project_id):
    project = project_service.project_dict(g.project)
    project["user_role"] = g.membership.role
    project["members"] = project_service.member_dicts(g.project)
    return jsonify({"success": True, "project": project})


@projects_bp.route("/<project_id>", methods=["PUT"])
@project_manager_required
def update_project(project_id):
    data = request.get_json(silent=True) or {}
    try:
        project_service.update_project(g.project, data, current_user.id)
    except ValueError as e:
        db.session.rollback()
        return jsonify({"success": False, "message": str(e)}), 400
    db.session.commit()
    return jsonify({
        "success": True,
        "project": project_service.project_dict(g.project),
    })


@projects_bp.route("/<project_id>", methods=["DELETE"])
@project_owner_required
def delete_project(project_id):
    db.session.delete(g.project)
    db.session.commit()
    return jsonify({"success": True})


@projects_bp.route("/<project_id>/members", methods=["POST"])
@project_manager_required
def add_member(project_id):
    data = request.get_json(silent=True) or {}
    try:
        membership = project_service.add_member(
            g.project, data.get("email"), data.get("role", "member"),
        )
    except ValueError as e:
        db.session.rollback()
        return jsonify({"success": False, "message": str(e)}), 400
    db.session.commit()
    return jsonify({
        "success": True,
        "member": {"user_id": membership.user_id, "role": membership.role},
    }), 201


@projects_bp.route("/<project_id>/tasks", methods=["GET"])
@project_member_required
def project_tasks(project_id):
    return jsonify({
        "success": True,
        "boards": project_service.get_board_layout(g.project),
    })
