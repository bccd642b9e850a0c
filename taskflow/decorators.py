"""
Custom route decorators for access control.

- project_member_required: user is logged in AND a member of the project
  resolved from the current project_id (see middleware/project.py).
- project_manager_required: same, with role owner or admin.
- project_owner_required: same, with role owner.
"""

from functools import wraps

from flask import abort, g
from flask_login import login_required


def _require_project_role(roles=None):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            # g.project_id is set by the project middleware
            if getattr(g, "project_id", None) is None:
                abort(404)

            membership = getattr(g, "membership", None)
            if membership is None:
                abort(403)
            if roles is not None and membership.role not in roles:
                abort(403)

            return f(*args, **kwargs)

        return decorated

    return decorator


project_member_required = _require_project_role()
project_manager_required = _require_project_role(("owner", "admin"))
project_owner_required = _require_project_role(("owner",))
