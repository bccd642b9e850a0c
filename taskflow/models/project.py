"""Project, membership, board and column models.

A project owns one or more boards; each board holds an ordered list of
columns. Tasks live in columns (see task.py).
"""

import uuid

from taskflow.extensions import db


class Project(db.Model):
    __tablename__ = "projects"

    STATUSES = ("active", "completed", "archived")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    owner_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    status = db.Column(db.String(20), nullable=False, default="active")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    owner = db.relationship("User", foreign_keys=[owner_id])
    members = db.relationship(
        "ProjectMember",
        back_populates="project",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )
    boards = db.relationship(
        "Board",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Board.position",
    )
    audit_events = db.relationship(
        "AuditEvent",
        back_populates="project",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Project {self.name}>"


class ProjectMember(db.Model):
    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )

    ROLES = ("owner", "admin", "member")
    MANAGER_ROLES = ("owner", "admin")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    project_id = db.Column(
        db.String(36),
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    role = db.Column(db.String(20), nullable=False, default="member")
    joined_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    project = db.relationship("Project", back_populates="members")
    user = db.relationship("User", back_populates="project_memberships")

    def __repr__(self):
        return f"<ProjectMember {self.user_id} in {self.project_id} ({self.role})>"


class Board(db.Model):
    __tablename__ = "boards"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    project_id = db.Column(
        db.String(36),
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    name = db.Column(db.String(255), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    project = db.relationship("Project", back_populates="boards")
    columns = db.relationship(
        "BoardColumn",
        back_populates="board",
        cascade="all, delete-orphan",
        order_by="BoardColumn.position",
    )

    def __repr__(self):
        return f"<Board {self.name}>"


class BoardColumn(db.Model):
    __tablename__ = "board_columns"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    board_id = db.Column(
        db.String(36),
        db.ForeignKey("boards.id", ondelete="CASCADE"),
        nullable=False,
    )
    name = db.Column(db.String(255), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    color = db.Column(db.String(7), default="#6B7280")
    # Bumped by the ordering engine on every write to this column's tasks.
    # The bump doubles as the per-column write lock.
    version = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    board = db.relationship("Board", back_populates="columns")
    tasks = db.relationship(
        "Task",
        back_populates="column",
        lazy="dynamic",
        cascade="all, delete-orphan",
        order_by="Task.position",
    )

    @property
    def project_id(self):
        return self.board.project_id

    def __repr__(self):
        return f"<BoardColumn {self.name}>"
