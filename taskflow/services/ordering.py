"""Task ordering engine — the only writer of Task.column_id / Task.position.

Every column keeps its tasks densely ordered: positions are exactly
0..count-1, no gaps, no duplicates. The four public operations
(insert_task, delete_task, reorder_task, move_task) each run as one
transaction that:

  1. locks the affected column(s) by bumping BoardColumn.version, one row
     at a time in ascending id order (row lock on Postgres/MySQL, the
     RESERVED database lock on SQLite),
  2. re-reads the task under that lock,
  3. applies the position shifts as single range UPDATEs,
  4. re-checks density on every touched column before commit.

Lock timeouts, deadlocks, "database is locked" and failed density checks
are Conflicts: the transaction is rolled back and the whole operation is
retried a bounded number of times (ORDERING_MAX_ATTEMPTS) with jittered
exponential backoff.

Transaction bodies (_insert, _delete, ...) receive the session explicitly
and flush but do NOT commit — _run() owns commit/rollback.
"""

import logging
import random
import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import distinct, func, select, text, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from taskflow.extensions import db
from taskflow.models.audit import AuditEvent
from taskflow.models.project import Board, BoardColumn
from taskflow.models.task import Task, TaskAssignment
from taskflow.models.user import User

logger = logging.getLogger(__name__)

# Descriptive fields the caller may set on insert.
INSERTABLE_FIELDS = ("title", "description", "priority", "due_date", "created_by")

# Fragments of driver error messages that mean "try again".
_TRANSIENT_MESSAGES = (
    "database is locked",
    "deadlock",
    "lock timeout",
    "lock wait timeout",
    "could not obtain lock",
    "could not serialize",
)
# Postgres SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available.
_TRANSIENT_SQLSTATES = ("40001", "40P01", "55P03")


# ─── Errors ──────────────────────────────────────────────────────

class OrderingError(Exception):
    """Base class for ordering engine errors."""

    status_code = 500
    retryable = False


class NotFound(OrderingError):
    status_code = 404


class InvalidArgument(OrderingError):
    status_code = 400


class Conflict(OrderingError):
    """Concurrent mutation detected or lock wait timed out."""

    status_code = 409
    retryable = True


class StorageFailure(OrderingError):
    status_code = 500


# ─── Transaction primitives ──────────────────────────────────────

@contextmanager
def transaction_scope(session):
    """Commit on clean exit, roll back on any exception."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


@contextmanager
def _lock_timeout(session, timeout_ms):
    """Bound how long the enclosed transaction may wait for a lock."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        # SET LOCAL ends with the transaction.
        session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))
        yield
    elif dialect == "sqlite":
        session.execute(text(f"PRAGMA busy_timeout = {int(timeout_ms)}"))
        yield
    elif dialect in ("mysql", "mariadb"):
        # Session-scoped: put it back before the connection returns to the pool.
        previous = session.scalar(text("SELECT @@SESSION.innodb_lock_wait_timeout"))
        seconds = max(1, int(timeout_ms) // 1000)
        session.execute(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))
        try:
            yield
        finally:
            with transaction_scope(session):
                session.execute(
                    text(f"SET SESSION innodb_lock_wait_timeout = {int(previous)}")
                )
    else:
        yield


def _is_transient(exc):
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(fragment in message for fragment in _TRANSIENT_MESSAGES)


def _backoff(attempt):
    config = current_app.config
    delay = min(
        config.get("ORDERING_RETRY_BACKOFF", 0.05) * (2 ** (attempt - 1)),
        config.get("ORDERING_RETRY_BACKOFF_MAX", 1.0),
    )
    time.sleep(delay + random.uniform(0, delay))


def _run(session, body, *args, **kwargs):
    """Run a transaction body with commit/rollback and bounded conflict retry.

    *session* defaults to the request-scoped db.session.
    """
    if session is None:
        session = db.session
    config = current_app.config
    max_attempts = max(1, int(config.get("ORDERING_MAX_ATTEMPTS", 5)))
    timeout_ms = config.get("ORDERING_LOCK_TIMEOUT_MS", 5000)
    name = body.__name__.lstrip("_")

    last_conflict = None
    for attempt in range(1, max_attempts + 1):
        try:
            with _lock_timeout(session, timeout_ms), transaction_scope(session):
                result = body(session, *args, **kwargs)
            logger.debug(f"ordering.{name} committed on attempt {attempt}")
            return result
        except Conflict as e:
            last_conflict = e
        except OperationalError as e:
            # Covers a failure while setting the lock timeout, before
            # transaction_scope was entered.
            session.rollback()
            if not _is_transient(e):
                logger.exception(f"ordering.{name} storage failure")
                raise StorageFailure(f"{name} failed: {e.orig or e}") from e
            last_conflict = Conflict(f"{name}: {e.orig or e}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.exception(f"ordering.{name} storage failure")
            raise StorageFailure(f"{name} failed: {e}") from e

        if attempt < max_attempts:
            logger.warning(
                f"ordering.{name} conflict (attempt {attempt}/{max_attempts}): "
                f"{last_conflict}; retrying"
            )
            _backoff(attempt)

    logger.error(
        f"ordering.{name} gave up after {max_attempts} attempts: {last_conflict}"
    )
    raise Conflict(
        f"{name} could not complete after {max_attempts} attempts; retry later"
    ) from last_conflict


# ─── Locking / reading helpers ───────────────────────────────────

def _lock_columns(session, *column_ids):
    """Take the write lock on each column, ascending id order.

    Raises NotFound if any column does not exist.
    """
    for column_id in sorted(set(column_ids)):
        result = session.execute(
            update(BoardColumn)
            .where(BoardColumn.id == column_id)
            .values(version=BoardColumn.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound(f"Column {column_id} not found.")


def _column_of(session, task_id):
    """Unlocked read of a task's column, used to pick which lock to take."""
    column_id = session.scalar(select(Task.column_id).where(Task.id == task_id))
    if column_id is None:
        raise NotFound(f"Task {task_id} not found.")
    return column_id


def _load_locked_task(session, task_id, locked_column_id):
    """Re-read the task once its column is locked."""
    task = session.get(Task, task_id, populate_existing=True)
    if task is None:
        raise NotFound(f"Task {task_id} not found.")
    if task.column_id != locked_column_id:
        # Moved by another transaction between the first read and the lock.
        raise Conflict(f"Task {task_id} changed column while waiting for lock.")
    return task


def _count(session, column_id):
    return session.scalar(
        select(func.count(Task.id)).where(Task.column_id == column_id)
    )


def _shift(session, column_id, delta, lower=None, upper=None):
    """Add *delta* to every position in [lower, upper] of one column."""
    stmt = update(Task).where(Task.column_id == column_id)
    if lower is not None:
        stmt = stmt.where(Task.position >= lower)
    if upper is not None:
        stmt = stmt.where(Task.position <= upper)
    session.execute(stmt.values(position=Task.position + delta))


def _column_stats(session, column_id):
    count, low, high, unique = session.execute(
        select(
            func.count(Task.id),
            func.min(Task.position),
            func.max(Task.position),
            func.count(distinct(Task.position)),
        ).where(Task.column_id == column_id)
    ).one()
    return {
        "column_id": column_id,
        "count": count,
        "min": low,
        "max": high,
        "distinct": unique,
        "dense": count == 0 or (low == 0 and high == count - 1 and unique == count),
    }


def _verify_dense(session, *column_ids):
    session.flush()
    for column_id in column_ids:
        stats = _column_stats(session, column_id)
        if not stats["dense"]:
            raise Conflict(
                f"Column {column_id} lost dense ordering "
                f"(count={stats['count']}, min={stats['min']}, "
                f"max={stats['max']}, distinct={stats['distinct']})"
            )


def _check_position(value, upper, label):
    """Validate 0 <= value <= upper."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{label} must be an integer, got {value!r}.")
    if value < 0 or value > upper:
        raise InvalidArgument(f"{label} {value} out of range [0, {upper}].")


def _audit(session, actor_id, audit_column_id, action, **metadata):
    if actor_id is None:
        return
    project_id = session.scalar(
        select(Board.project_id)
        .join(BoardColumn, BoardColumn.board_id == Board.id)
        .where(BoardColumn.id == audit_column_id)
    )
    session.add(AuditEvent(
        project_id=project_id,
        actor_user_id=actor_id,
        action=action,
        metadata_=metadata,
    ))


# ─── Transaction bodies ──────────────────────────────────────────

def _insert(session, column_id, attrs, assignee_ids=None, actor_id=None):
    forbidden = sorted(set(attrs) & set(Task.ORDERING_FIELDS))
    if forbidden:
        raise InvalidArgument(
            f"Fields {', '.join(forbidden)} are assigned by the ordering engine."
        )
    unknown = sorted(set(attrs) - set(INSERTABLE_FIELDS))
    if unknown:
        raise InvalidArgument(f"Unknown task fields: {', '.join(unknown)}.")

    _lock_columns(session, column_id)
    position = _count(session, column_id)

    task = Task(column_id=column_id, position=position, **attrs)
    session.add(task)
    session.flush()

    for user_id in dict.fromkeys(assignee_ids or ()):
        if session.get(User, user_id) is None:
            raise NotFound(f"User {user_id} not found.")
        session.add(TaskAssignment(task_id=task.id, user_id=user_id))

    _audit(session, actor_id, column_id, "task.created",
           task_id=task.id, column_id=column_id, position=position)
    _verify_dense(session, column_id)
    return task


def _delete(session, task_id, actor_id=None):
    column_id = _column_of(session, task_id)
    _lock_columns(session, column_id)
    task = _load_locked_task(session, task_id, column_id)
    old_position = task.position

    session.delete(task)
    session.flush()
    _shift(session, column_id, -1, lower=old_position + 1)

    _audit(session, actor_id, column_id, "task.deleted",
           task_id=task_id, column_id=column_id, position=old_position)
    _verify_dense(session, column_id)


def _reorder_locked(session, task, new_position, actor_id=None):
    """Single-column move; caller holds the column lock."""
    column_id = task.column_id
    old_position = task.position
    _check_position(new_position, _count(session, column_id) - 1, "position")

    if new_position == old_position:
        return task
    if new_position > old_position:
        # Moving later: pull the tasks in (old, new] up by one.
        _shift(session, column_id, -1, lower=old_position + 1, upper=new_position)
    else:
        # Moving earlier: push the tasks in [new, old) down by one.
        _shift(session, column_id, +1, lower=new_position, upper=old_position - 1)
    task.position = new_position
    session.flush()

    _audit(session, actor_id, column_id, "task.reordered",
           task_id=task.id, column_id=column_id,
           from_position=old_position, to_position=new_position)
    _verify_dense(session, column_id)
    return task


def _reorder(session, task_id, new_position, actor_id=None):
    column_id = _column_of(session, task_id)
    _lock_columns(session, column_id)
    task = _load_locked_task(session, task_id, column_id)
    return _reorder_locked(session, task, new_position, actor_id=actor_id)


def _move(session, task_id, dest_column_id, new_position, actor_id=None):
    source_column_id = _column_of(session, task_id)
    _lock_columns(session, source_column_id, dest_column_id)
    task = _load_locked_task(session, task_id, source_column_id)

    if dest_column_id == source_column_id:
        # Running both shifts would count the task twice.
        return _reorder_locked(session, task, new_position, actor_id=actor_id)

    _check_position(new_position, _count(session, dest_column_id), "position")
    old_position = task.position

    _shift(session, source_column_id, -1, lower=old_position + 1)
    _shift(session, dest_column_id, +1, lower=new_position)
    task.column_id = dest_column_id
    task.position = new_position
    session.flush()

    _audit(session, actor_id, dest_column_id, "task.moved",
           task_id=task_id,
           from_column_id=source_column_id, from_position=old_position,
           to_column_id=dest_column_id, to_position=new_position)
    _verify_dense(session, source_column_id, dest_column_id)
    return task


def _repair(session, column_id):
    _lock_columns(session, column_id)
    tasks = session.scalars(
        select(Task)
        .where(Task.column_id == column_id)
        .order_by(Task.position, Task.created_at, Task.id)
    ).all()
    changed = 0
    for index, task in enumerate(tasks):
        if task.position != index:
            task.position = index
            changed += 1
    _verify_dense(session, column_id)
    return changed


# ─── Public API ──────────────────────────────────────────────────
#
# Every operation takes an optional session; the transaction runs on it and
# is committed or rolled back before the call returns. Without one, the
# request-scoped db.session is used.

def insert_task(column_id, attrs, assignee_ids=None, actor_id=None, session=None):
    """Create a task at the tail of *column_id*.

    Args:
        column_id: BoardColumn UUID string.
        attrs: Descriptive fields (see INSERTABLE_FIELDS).
        assignee_ids: Optional user UUIDs to assign.
        actor_id: User performing the action, for the audit log.
        session: SQLAlchemy session to run the transaction on.

    Returns:
        The created Task.

    Raises:
        NotFound: Column or an assignee does not exist.
        InvalidArgument: attrs names an ordering-owned or unknown field.
        Conflict: Retries exhausted.
        StorageFailure: Non-transient database error.
    """
    return _run(session, _insert, column_id, dict(attrs),
                assignee_ids=assignee_ids, actor_id=actor_id)


def delete_task(task_id, actor_id=None, session=None):
    """Delete a task and close the gap it leaves in its column."""
    _run(session, _delete, task_id, actor_id=actor_id)


def reorder_task(task_id, new_position, actor_id=None, session=None):
    """Move a task to *new_position* within its current column.

    *new_position* must lie in [0, count - 1]; equal to the current
    position is a no-op.
    """
    return _run(session, _reorder, task_id, new_position, actor_id=actor_id)


def move_task(task_id, dest_column_id, new_position, actor_id=None, session=None):
    """Move a task to *new_position* in *dest_column_id*.

    *new_position* may equal the destination count (append). When the
    destination is the task's own column this is reorder_task.
    """
    return _run(session, _move, task_id, dest_column_id, new_position,
                actor_id=actor_id)


def repair_column(column_id, session=None):
    """Renumber a column densely, keeping its current relative order.

    Returns the number of tasks whose position changed.
    """
    return _run(session, _repair, column_id)


def check_column(column_id, session=None):
    """Density report for one column (read-only)."""
    if session is None:
        session = db.session
    if session.get(BoardColumn, column_id) is None:
        raise NotFound(f"Column {column_id} not found.")
    return _column_stats(session, column_id)


def find_violations(session=None):
    """Density reports for every column that is not densely ordered."""
    if session is None:
        session = db.session
    column_ids = session.scalars(
        select(BoardColumn.id).order_by(BoardColumn.id)
    ).all()
    reports = (_column_stats(session, cid) for cid in column_ids)
    return [r for r in reports if not r["dense"]]
