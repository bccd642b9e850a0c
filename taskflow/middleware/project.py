"""Project context middleware — resolves <project_id> to a membership.

Runs before every request whose route has a `project_id` URL parameter.
Sets g.project, g.project_id and g.membership (None when the current user
is not a member). Access decisions are made by the decorators in
taskflow.decorators, not here.
"""

from flask import abort, g, request
from flask_login import current_user

from taskflow.extensions import db
from taskflow.models.project import Project, ProjectMember


def resolve_project():
    """Before-request hook for project-scoped routes."""
    if request.view_args is None:
        return
    project_id = request.view_args.get("project_id")
    if project_id is None:
        return

    project = db.session.get(Project, project_id)
    if project is None:
        abort(404)

    g.project = project
    g.project_id = project.id
    g.membership = None

    if current_user.is_authenticated:
        g.membership = ProjectMember.query.filter_by(
            project_id=project.id,
            user_id=current_user.id,
        ).first()


def init_project_middleware(app):
    """Register the project resolver as a before_request hook."""
    app.before_request(resolve_project)
