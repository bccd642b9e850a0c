import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from taskflow.config import config_by_name
from taskflow.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None, overrides=None):
    """Application factory.

    Args:
        config_name: Key of config_by_name; defaults to $FLASK_ENV.
        overrides: Optional mapping applied on top of the config class
            (e.g. a different SQLALCHEMY_DATABASE_URI).
    """

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if overrides:
        app.config.update(overrides)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from taskflow import models  # noqa: F401

    # --- Project middleware ---
    from taskflow.middleware.project import init_project_middleware
    init_project_middleware(app)

    # --- Register blueprints ---
    from taskflow.blueprints.auth import auth_bp
    from taskflow.blueprints.projects import projects_bp
    from taskflow.blueprints.tasks import tasks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(tasks_bp)

    # --- Root route ---
    @app.route("/")
    def index():
        return jsonify({
            "success": True,
            "message": "TaskFlow API",
            "endpoints": {
                "auth": "/api/auth",
                "projects": "/api/projects",
                "tasks": "/api/tasks",
            },
        })

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """JSON error bodies for HTTP errors and ordering engine failures."""
    from taskflow.services.ordering import OrderingError

    @app.errorhandler(OrderingError)
    def ordering_error(e):
        body = {"success": False, "message": str(e), "error": type(e).__name__}
        if e.retryable:
            body["retryable"] = True
        return jsonify(body), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"success": False, "message": e.description}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"success": False, "message": "Internal server error"}), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-demo")
    @click.option("--email", default="demo@taskflow.local", help="Demo user email")
    @click.option("--password", default="demo12345", help="Demo user password")
    def seed_demo(email, password):
        """Create a demo user + project + default board with a few tasks.

        Usage:
            flask seed-demo
            flask seed-demo --email me@example.com --password s3cret123
        """
        from taskflow.models.user import User
        from taskflow.services import ordering, project_service

        # --- 1. Demo user ---
        user = User.query.filter_by(email=email).first()
        if user:
            click.echo(f"Demo user already exists: {email}")
        else:
            user = User(
                username=email.split("@")[0],
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Demo User",
            )
            db.session.add(user)
            db.session.flush()
            click.echo(f"Created demo user: {email}")

        # --- 2. Project with default board ---
        project = project_service.create_project(
            owner_id=user.id,
            name="Demo Project",
            description="Seeded by flask seed-demo.",
        )
        db.session.commit()

        # --- 3. Tasks, through the ordering engine ---
        first_column = project.boards[0].columns[0]
        for title in ("Write brief", "Set up CI", "Design schema", "Ship it"):
            ordering.insert_task(
                first_column.id,
                {"title": title, "created_by": user.id},
                actor_id=user.id,
            )

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  User:     {email} / {password}")
        click.echo(f"  Project:  {project.name} (id: {project.id})")
        click.echo(f"  Column:   {first_column.name} (id: {first_column.id})")
        click.echo("=" * 60)

    @app.cli.command("check-ordering")
    def check_ordering():
        """Report every column whose task positions are not 0..count-1."""
        from taskflow.services import ordering

        violations = ordering.find_violations()
        if not violations:
            click.echo("All columns are densely ordered.")
            return
        for report in violations:
            click.echo(
                f"  {report['column_id']}: count={report['count']} "
                f"min={report['min']} max={report['max']} "
                f"distinct={report['distinct']}"
            )
        raise SystemExit(1)

    @app.cli.command("repair-ordering")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    def repair_ordering(yes):
        """Renumber columns that lost dense ordering, keeping relative order."""
        from taskflow.services import ordering

        violations = ordering.find_violations()
        if not violations:
            click.echo("Nothing to repair.")
            return
        click.echo(f"{len(violations)} column(s) need repair.")
        if not yes and not click.confirm("Renumber them now?"):
            click.echo("Aborted.")
            return
        for report in violations:
            changed = ordering.repair_column(report["column_id"])
            click.echo(f"  {report['column_id']}: {changed} task(s) renumbered")
