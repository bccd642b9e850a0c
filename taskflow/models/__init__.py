# Models package — import all models here so Alembic can discover them.

from taskflow.models.user import User  # noqa: F401
from taskflow.models.project import (  # noqa: F401
    Board,
    BoardColumn,
    Project,
    ProjectMember,
)
from taskflow.models.task import Task, TaskAssignment  # noqa: F401
from taskflow.models.audit import AuditEvent  # noqa: F401
