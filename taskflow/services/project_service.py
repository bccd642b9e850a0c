"""Project service — projects, members, default board, board layout.

Functions flush but do NOT commit — the caller commits.
"""

from datetime import date

from flask import current_app
from sqlalchemy import func

from taskflow.extensions import db
from taskflow.models.audit import AuditEvent
from taskflow.models.project import Board, BoardColumn, Project, ProjectMember
from taskflow.models.task import Task
from taskflow.models.user import User
from taskflow.services.task_service import sanitize


def _parse_date(value, field):
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {field} '{value}'. Expected YYYY-MM-DD.")


def create_project(owner_id, name, description=None, start_date=None, end_date=None):
    """Create a project with its owner membership and a default board.

    The board gets the columns listed in DEFAULT_COLUMNS.

    Raises:
        ValueError: If name is empty or a date is malformed.
    """
    name = sanitize(name)
    if not name:
        raise ValueError("Project name is required.")

    project = Project(
        name=name,
        description=sanitize(description) or "",
        owner_id=owner_id,
        start_date=_parse_date(start_date, "start_date"),
        end_date=_parse_date(end_date, "end_date"),
    )
    db.session.add(project)
    db.session.flush()

    db.session.add(ProjectMember(
        project_id=project.id, user_id=owner_id, role="owner",
    ))

    board = Board(
        project_id=project.id,
        name=current_app.config.get("DEFAULT_BOARD_NAME", "Main Board"),
        position=0,
    )
    db.session.add(board)
    db.session.flush()

    for position, (col_name, color) in enumerate(
        current_app.config.get("DEFAULT_COLUMNS", [])
    ):
        db.session.add(BoardColumn(
            board_id=board.id, name=col_name, position=position, color=color,
        ))

    db.session.add(AuditEvent(
        project_id=project.id,
        actor_user_id=owner_id,
        action="project.created",
        metadata_={"name": project.name},
    ))
    db.session.flush()
    return project


def update_project(project, data, actor_user_id):
    """Apply name/description/status/date changes from a request payload.

    Raises:
        ValueError: On empty name, unknown status or malformed date.
    """
    if "name" in data:
        name = sanitize(data["name"])
        if not name:
            raise ValueError("Project name is required.")
        project.name = name
    if "description" in data:
        project.description = sanitize(data["description"]) or ""
    if "status" in data:
        if data["status"] not in Project.STATUSES:
            raise ValueError(
                f"Invalid status '{data['status']}'. "
                f"Must be one of: {', '.join(Project.STATUSES)}"
            )
        project.status = data["status"]
    if "start_date" in data:
        project.start_date = _parse_date(data["start_date"], "start_date")
    if "end_date" in data:
        project.end_date = _parse_date(data["end_date"], "end_date")

    db.session.add(AuditEvent(
        project_id=project.id,
        actor_user_id=actor_user_id,
        action="project.updated",
        metadata_={k: data[k] for k in data if k != "description"},
    ))
    db.session.flush()
    return project


def add_member(project, email, role="member"):
    """Add an existing user to the project by email.

    Raises:
        ValueError: Unknown email, invalid role, or already a member.
    """
    if role not in ProjectMember.ROLES or role == "owner":
        raise ValueError(f"Invalid role '{role}'. Must be 'admin' or 'member'.")

    user = User.query.filter_by(email=(email or "").lower().strip()).first()
    if user is None:
        raise ValueError("No user with that email.")

    existing = ProjectMember.query.filter_by(
        project_id=project.id, user_id=user.id
    ).first()
    if existing:
        raise ValueError("User is already a member of this project.")

    membership = ProjectMember(project_id=project.id, user_id=user.id, role=role)
    db.session.add(membership)
    db.session.flush()
    return membership


def project_id_for_column(column_id):
    """Return the project owning a column, or None if the column is unknown."""
    return (
        db.session.query(Board.project_id)
        .join(BoardColumn, BoardColumn.board_id == Board.id)
        .filter(BoardColumn.id == column_id)
        .scalar()
    )


def get_membership(project_id, user_id):
    return ProjectMember.query.filter_by(
        project_id=project_id, user_id=user_id
    ).first()


def list_projects_for_user(user_id):
    """Projects the user belongs to, newest first, with task/member counts."""
    memberships = (
        ProjectMember.query
        .filter_by(user_id=user_id)
        .join(Project)
        .order_by(Project.created_at.desc())
        .all()
    )
    result = []
    for membership in memberships:
        project = membership.project
        total_tasks = (
            db.session.query(func.count(Task.id))
            .join(BoardColumn, Task.column_id == BoardColumn.id)
            .join(Board, BoardColumn.board_id == Board.id)
            .filter(Board.project_id == project.id)
            .scalar()
        )
        data = project_dict(project)
        data["user_role"] = membership.role
        data["total_tasks"] = total_tasks
        data["total_members"] = project.members.count()
        result.append(data)
    return result


def get_board_layout(project):
    """Boards → columns → tasks (ordered by position) for one project."""
    boards = []
    for board in project.boards:
        columns = []
        for column in board.columns:
            tasks = (
                Task.query
                .filter_by(column_id=column.id)
                .order_by(Task.position)
                .all()
            )
            columns.append({
                "id": column.id,
                "name": column.name,
                "position": column.position,
                "color": column.color,
                "tasks": [t.to_dict() for t in tasks],
            })
        boards.append({
            "board_id": board.id,
            "board_name": board.name,
            "board_position": board.position,
            "columns": columns,
        })
    return boards


def project_dict(project):
    """Serialize a Project to a JSON-safe dict."""
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description or "",
        "owner_id": project.owner_id,
        "owner_name": project.owner.full_name if project.owner else None,
        "status": project.status,
        "start_date": project.start_date.isoformat() if project.start_date else None,
        "end_date": project.end_date.isoformat() if project.end_date else None,
        "created_at": project.created_at.isoformat() if project.created_at else None,
    }


def member_dicts(project):
    members = []
    for m in project.members.all():
        user_data = m.user.to_dict()
        user_data["role"] = m.role
        user_data["joined_at"] = m.joined_at.isoformat() if m.joined_at else None
        members.append(user_data)
    return members
