"""Shared test fixtures for the TaskFlow test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: users, a project with its default board and four columns
"""

import pytest
from werkzeug.security import generate_password_hash

from taskflow import create_app
from taskflow.extensions import db as _db
from taskflow.models.project import ProjectMember
from taskflow.models.user import User
from taskflow.services import project_service


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def make_user(username, password="password123", **kwargs):
    user = User(
        username=username,
        email=f"{username}@taskflow.test",
        password_hash=generate_password_hash(password),
        full_name=username.title(),
        **kwargs,
    )
    _db.session.add(user)
    _db.session.flush()
    return user


@pytest.fixture
def seed_data(app, db_session):
    """Seed an owner, a member, an outsider and one project.

    Returns a dict of plain IDs so tests can use them across app contexts.
    """
    owner = make_user("owner")
    member = make_user("member")
    outsider = make_user("outsider")

    project = project_service.create_project(
        owner_id=owner.id,
        name="Apollo",
        description="Test project",
    )
    _db.session.add(ProjectMember(
        project_id=project.id, user_id=member.id, role="member",
    ))
    _db.session.commit()

    columns = project.boards[0].columns
    return {
        "owner_id": owner.id,
        "member_id": member.id,
        "outsider_id": outsider.id,
        "project_id": project.id,
        "board_id": project.boards[0].id,
        "column_ids": [c.id for c in columns],
        "todo_id": columns[0].id,
        "doing_id": columns[1].id,
        "review_id": columns[2].id,
        "done_id": columns[3].id,
    }


@pytest.fixture
def login(client):
    """Return a helper that logs a seeded user in through the API."""

    def _login(username, password="password123"):
        resp = client.post("/api/auth/login", json={
            "email": f"{username}@taskflow.test",
            "password": password,
        })
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _login
