"""Task models.

Task.column_id and Task.position are owned by the ordering engine
(taskflow.services.ordering); every other field belongs to ordinary CRUD.
"""

import uuid

from taskflow.extensions import db


class Task(db.Model):
    __tablename__ = "tasks"
    __table_args__ = (
        # Not unique: range shifts rewrite many positions in one statement.
        db.Index("ix_tasks_column_position", "column_id", "position"),
    )

    PRIORITIES = ("low", "medium", "high", "urgent")

    # Fields only the ordering engine may write.
    ORDERING_FIELDS = ("id", "column_id", "position")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    column_id = db.Column(
        db.String(36),
        db.ForeignKey("board_columns.id", ondelete="CASCADE"),
        nullable=False,
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(db.String(10), nullable=False, default="medium")
    due_date = db.Column(db.Date, nullable=True)
    created_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    column = db.relationship("BoardColumn", back_populates="tasks")
    creator = db.relationship("User", foreign_keys=[created_by])
    assignments = db.relationship(
        "TaskAssignment",
        back_populates="task",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "column_id": self.column_id,
            "position": self.position,
            "title": self.title,
            "description": self.description or "",
            "priority": self.priority,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "created_by": self.created_by,
            "creator_name": self.creator.full_name if self.creator else None,
            "assigned_user_ids": [a.user_id for a in self.assignments],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Task {self.title[:40]} @{self.position}>"


class TaskAssignment(db.Model):
    __tablename__ = "task_assignments"
    __table_args__ = (
        db.UniqueConstraint("task_id", "user_id", name="uq_task_assignment"),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    task_id = db.Column(
        db.String(36),
        db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    assigned_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    task = db.relationship("Task", back_populates="assignments")
    user = db.relationship("User")

    def __repr__(self):
        return f"<TaskAssignment {self.task_id} -> {self.user_id}>"
