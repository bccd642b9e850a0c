"""Task service — descriptive fields, assignments, request validation.

Task placement (column_id / position) is never written here; creation,
deletion and moves go through taskflow.services.ordering. Text fields are
sanitized with bleach.clean() to strip HTML tags.

update_task() flushes but does NOT commit — the caller commits.
"""

from datetime import date, datetime, timezone

import bleach

from taskflow.extensions import db
from taskflow.models.audit import AuditEvent
from taskflow.models.task import Task, TaskAssignment
from taskflow.models.user import User
from taskflow.services import ordering

# Fields a client may edit through update_task().
EDITABLE_FIELDS = ("title", "description", "priority", "due_date")


def sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def clean_task_fields(data, partial=False):
    """Validate and normalize descriptive task fields from a payload.

    Args:
        data: Request payload dict.
        partial: If True (update), only keys present in data are returned
            and title is not required.

    Returns:
        Dict of field name → cleaned value.

    Raises:
        ValueError: Missing title, unknown priority, malformed due_date.
    """
    fields = {}

    if "title" in data or not partial:
        title = sanitize(data.get("title"))
        if not title:
            raise ValueError("Title is required.")
        fields["title"] = title[:255]

    if "description" in data:
        fields["description"] = sanitize(data["description"]) or ""

    if "priority" in data and data["priority"] is not None:
        if data["priority"] not in Task.PRIORITIES:
            raise ValueError(
                f"Invalid priority '{data['priority']}'. "
                f"Must be one of: {', '.join(Task.PRIORITIES)}"
            )
        fields["priority"] = data["priority"]

    if "due_date" in data:
        value = data["due_date"]
        if value in (None, ""):
            fields["due_date"] = None
        else:
            try:
                fields["due_date"] = date.fromisoformat(value)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid due_date '{value}'. Expected YYYY-MM-DD.")

    return fields


def _clean_assignees(value):
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError("assigned_users must be a list of user ids.")
    return value


def create_task(column_id, data, actor_user_id):
    """Validate a payload and insert the task at the tail of its column.

    Commits (through the ordering engine).

    Raises:
        ValueError: Invalid payload.
        ordering.OrderingError: Engine failures (NotFound, Conflict, ...).
    """
    attrs = clean_task_fields(data)
    attrs["created_by"] = actor_user_id
    assignees = _clean_assignees(data.get("assigned_users"))
    return ordering.insert_task(
        column_id, attrs, assignee_ids=assignees, actor_id=actor_user_id,
    )


def update_task(task_id, data, actor_user_id):
    """Update descriptive fields and, if given, replace assignees.

    column_id and position in the payload are ignored; use the move
    endpoint.

    Returns:
        The updated Task.

    Raises:
        ValueError: Task or assignee not found, or invalid payload.
    """
    task = db.session.get(Task, task_id)
    if task is None:
        raise ValueError(f"Task {task_id} not found.")

    fields = clean_task_fields(
        {k: v for k, v in data.items() if k in EDITABLE_FIELDS}, partial=True,
    )
    for key, value in fields.items():
        setattr(task, key, value)

    assignees = _clean_assignees(data.get("assigned_users"))
    if assignees is not None:
        for user_id in assignees:
            if db.session.get(User, user_id) is None:
                raise ValueError(f"User {user_id} not found.")
        task.assignments.clear()
        db.session.flush()
        for user_id in dict.fromkeys(assignees):
            task.assignments.append(TaskAssignment(user_id=user_id))

    task.updated_at = datetime.now(timezone.utc)
    db.session.flush()

    db.session.add(AuditEvent(
        project_id=task.column.board.project_id,
        actor_user_id=actor_user_id,
        action="task.updated",
        metadata_={"task_id": task.id, "fields": sorted(fields)},
    ))
    db.session.flush()
    return task
