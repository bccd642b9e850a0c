"""Auth blueprint — /api/auth/*

JSON registration, login, logout and current-user lookup. Sessions are
cookie-based through Flask-Login; JSON clients fetch a CSRF token from
/api/auth/csrf-token and send it back as X-CSRFToken.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash, generate_password_hash

from taskflow.extensions import db, limiter
from taskflow.models.audit import AuditEvent
from taskflow.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


# ──────────────────────────────────────────────
# POST /api/auth/register
# ──────────────────────────────────────────────

@auth_bp.route("/register", methods=["POST"])
@limiter.limit("10 per minute")
def register():
    """Create an account and log it in."""
    data = request.get_json(silent=True) or {}
    username = (data.get("username") or "").strip()
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    full_name = (data.get("full_name") or "").strip()

    # --- Validation ---
    errors = []

    if not username:
        errors.append("Username is required.")
    if not email:
        errors.append("Email is required.")
    if not password:
        errors.append("Password is required.")
    elif len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    if not full_name:
        errors.append("Full name is required.")

    if errors:
        return jsonify({"success": False, "errors": errors}), 400

    if User.query.filter(
        (User.email == email) | (User.username == username)
    ).first():
        return jsonify({
            "success": False,
            "message": "An account with this email or username already exists.",
        }), 409

    # --- Create user ---
    user = User(
        username=username,
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name,
    )
    db.session.add(user)
    db.session.flush()  # get user.id

    # --- Audit log ---
    db.session.add(AuditEvent(
        actor_user_id=user.id,
        action="user.registered",
        metadata_={"email": email, "username": username},
    ))
    db.session.commit()

    login_user(user)
    return jsonify({"success": True, "user": user.to_dict()}), 201


# ──────────────────────────────────────────────
# POST /api/auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    """Email + password login."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        return jsonify({
            "success": False,
            "message": "Email and password are required.",
        }), 400

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({
            "success": False,
            "message": "Invalid email or password.",
        }), 401

    if not user.is_active:
        return jsonify({
            "success": False,
            "message": "Your account has been deactivated.",
        }), 401

    login_user(user, remember=remember)
    return jsonify({"success": True, "user": user.to_dict()})


# ──────────────────────────────────────────────
# POST /api/auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify({"success": True})


# ──────────────────────────────────────────────
# GET /api/auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"success": True, "user": current_user.to_dict()})


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})
