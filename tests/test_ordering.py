"""Tests for the task ordering engine.

Covers:
- Insert appends at the tail; rejects engine-owned fields
- Delete closes the gap
- Reorder within a column (later, earlier, no-op, bounds)
- Move across columns (scenario, append, bounds, same-column degenerate case)
- Invariant preservation over a long random sequence of operations
- Order preservation, round trip, cross-column conservation
- Conflict retry, retry exhaustion with rollback, storage failures
- Column lock order and per-backend lock timeouts
- Density check / repair tooling
"""

import random
import sqlite3
from types import SimpleNamespace

import pytest
from sqlalchemy import event, text, update
from sqlalchemy.exc import OperationalError

from taskflow.extensions import db
from taskflow.models.audit import AuditEvent
from taskflow.models.project import BoardColumn
from taskflow.models.task import Task, TaskAssignment
from taskflow.services import ordering


# ─── Helpers ───────────────────────────────────────────────

def _fill(column_id, *titles):
    """Insert tasks in order and return their ids keyed by title."""
    return {
        title: ordering.insert_task(column_id, {"title": title}).id
        for title in titles
    }


def _titles(column_id):
    db.session.expire_all()
    return [
        t.title
        for t in Task.query.filter_by(column_id=column_id).order_by(Task.position)
    ]


def _positions(column_id):
    db.session.expire_all()
    return sorted(
        t.position for t in Task.query.filter_by(column_id=column_id)
    )


def _assert_dense(*column_ids):
    for column_id in column_ids:
        positions = _positions(column_id)
        assert positions == list(range(len(positions))), positions


def _locked_error():
    return OperationalError(
        "UPDATE board_columns", {}, sqlite3.OperationalError("database is locked")
    )


# ─── Insert ────────────────────────────────────────────────

class TestInsert:

    def test_first_task_gets_position_zero(self, seed_data):
        task = ordering.insert_task(seed_data["todo_id"], {"title": "A"})
        assert task.position == 0
        assert task.column_id == seed_data["todo_id"]

    def test_appends_at_tail(self, seed_data):
        _fill(seed_data["todo_id"], "A", "B", "C")
        assert _titles(seed_data["todo_id"]) == ["A", "B", "C"]
        assert _positions(seed_data["todo_id"]) == [0, 1, 2]

    def test_descriptive_fields_are_stored(self, seed_data):
        task = ordering.insert_task(seed_data["todo_id"], {
            "title": "Write docs",
            "description": "All of them",
            "priority": "high",
            "created_by": seed_data["owner_id"],
        })
        assert task.priority == "high"
        assert task.description == "All of them"
        assert task.created_by == seed_data["owner_id"]

    def test_unknown_column(self, seed_data):
        with pytest.raises(ordering.NotFound):
            ordering.insert_task("no-such-column", {"title": "A"})
        assert Task.query.count() == 0

    @pytest.mark.parametrize("field", ["position", "column_id", "id"])
    def test_engine_owned_fields_rejected(self, seed_data, field):
        with pytest.raises(ordering.InvalidArgument, match=field):
            ordering.insert_task(seed_data["todo_id"], {"title": "A", field: 7})
        assert Task.query.count() == 0

    def test_unknown_field_rejected(self, seed_data):
        with pytest.raises(ordering.InvalidArgument, match="colour"):
            ordering.insert_task(seed_data["todo_id"], {"title": "A", "colour": "red"})

    def test_assignees_created_in_same_transaction(self, seed_data):
        task = ordering.insert_task(
            seed_data["todo_id"],
            {"title": "A"},
            assignee_ids=[seed_data["member_id"], seed_data["member_id"]],
        )
        assignments = TaskAssignment.query.filter_by(task_id=task.id).all()
        assert [a.user_id for a in assignments] == [seed_data["member_id"]]

    def test_unknown_assignee_rolls_back_task(self, seed_data):
        with pytest.raises(ordering.NotFound):
            ordering.insert_task(
                seed_data["todo_id"], {"title": "A"}, assignee_ids=["ghost"],
            )
        assert Task.query.count() == 0

    def test_audit_event_when_actor_given(self, seed_data):
        task = ordering.insert_task(
            seed_data["todo_id"], {"title": "A"}, actor_id=seed_data["owner_id"],
        )
        event = AuditEvent.query.filter_by(action="task.created").one()
        assert event.project_id == seed_data["project_id"]
        assert event.metadata_["task_id"] == task.id

    def test_bumps_column_version(self, seed_data):
        ordering.insert_task(seed_data["todo_id"], {"title": "A"})
        ordering.insert_task(seed_data["todo_id"], {"title": "B"})
        db.session.expire_all()
        assert db.session.get(BoardColumn, seed_data["todo_id"]).version == 2
        assert db.session.get(BoardColumn, seed_data["doing_id"]).version == 0


# ─── Delete ────────────────────────────────────────────────

class TestDelete:

    def test_delete_middle_closes_gap(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C")
        ordering.delete_task(ids["B"])
        assert _titles(seed_data["todo_id"]) == ["A", "C"]
        assert _positions(seed_data["todo_id"]) == [0, 1]

    def test_delete_first(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C")
        ordering.delete_task(ids["A"])
        assert _titles(seed_data["todo_id"]) == ["B", "C"]
        _assert_dense(seed_data["todo_id"])

    def test_delete_last(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C")
        ordering.delete_task(ids["C"])
        assert _titles(seed_data["todo_id"]) == ["A", "B"]
        _assert_dense(seed_data["todo_id"])

    def test_delete_only_task(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A")
        ordering.delete_task(ids["A"])
        assert _titles(seed_data["todo_id"]) == []

    def test_delete_leaves_other_columns_alone(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B")
        _fill(seed_data["doing_id"], "X", "Y")
        ordering.delete_task(ids["A"])
        assert _titles(seed_data["doing_id"]) == ["X", "Y"]
        assert _positions(seed_data["doing_id"]) == [0, 1]

    def test_delete_removes_assignments(self, seed_data):
        task = ordering.insert_task(
            seed_data["todo_id"], {"title": "A"},
            assignee_ids=[seed_data["member_id"]],
        )
        ordering.delete_task(task.id)
        assert TaskAssignment.query.count() == 0

    def test_delete_unknown_task(self, seed_data):
        with pytest.raises(ordering.NotFound):
            ordering.delete_task("missing")

    def test_delete_twice(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A")
        ordering.delete_task(ids["A"])
        with pytest.raises(ordering.NotFound):
            ordering.delete_task(ids["A"])


# ─── Reorder within a column ───────────────────────────────

class TestReorder:

    def test_move_last_to_second(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C", "D")
        ordering.reorder_task(ids["D"], 1)
        assert _titles(seed_data["todo_id"]) == ["A", "D", "B", "C"]
        assert _positions(seed_data["todo_id"]) == [0, 1, 2, 3]

    def test_move_first_to_last(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C", "D")
        ordering.reorder_task(ids["A"], 3)
        assert _titles(seed_data["todo_id"]) == ["B", "C", "D", "A"]
        _assert_dense(seed_data["todo_id"])

    def test_move_later_inside(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C", "D", "E")
        ordering.reorder_task(ids["B"], 3)
        assert _titles(seed_data["todo_id"]) == ["A", "C", "D", "B", "E"]

    def test_same_position_is_noop(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C")
        before = {
            t.id: t.position
            for t in Task.query.filter_by(column_id=seed_data["todo_id"])
        }
        ordering.reorder_task(ids["B"], 1)
        db.session.expire_all()
        after = {
            t.id: t.position
            for t in Task.query.filter_by(column_id=seed_data["todo_id"])
        }
        assert before == after

    def test_noop_writes_no_audit(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B")
        ordering.reorder_task(ids["A"], 0, actor_id=seed_data["owner_id"])
        assert AuditEvent.query.filter_by(action="task.reordered").count() == 0

    def test_round_trip_restores_layout(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A", "B", "C", "D", "E")
        original = {t.id: t.position for t in Task.query.all()}
        ordering.reorder_task(ids["B"], 4)
        ordering.reorder_task(ids["B"], 1)
        db.session.expire_all()
        assert {t.id: t.position for t in Task.query.all()} == original

    @pytest.mark.parametrize("position", [-1, 3, 10])
    def test_out_of_range(self, seed_data, position):
        ids = _fill(seed_data["todo_id"], "A", "B", "C")
        with pytest.raises(ordering.InvalidArgument):
            ordering.reorder_task(ids["A"], position)
        assert _titles(seed_data["todo_id"]) == ["A", "B", "C"]

    @pytest.mark.parametrize("position", ["1", 1.0, True, None])
    def test_non_integer_position(self, seed_data, position):
        ids = _fill(seed_data["todo_id"], "A", "B")
        with pytest.raises(ordering.InvalidArgument):
            ordering.reorder_task(ids["A"], position)

    def test_unknown_task(self, seed_data):
        with pytest.raises(ordering.NotFound):
            ordering.reorder_task("missing", 0)

    def test_order_of_others_preserved(self, seed_data):
        titles = ["A", "B", "C", "D", "E", "F"]
        ids = _fill(seed_data["todo_id"], *titles)
        ordering.reorder_task(ids["E"], 1)
        result = _titles(seed_data["todo_id"])
        assert [t for t in result if t != "E"] == [t for t in titles if t != "E"]
        assert result.index("E") == 1


# ─── Move across columns ───────────────────────────────────

class TestMove:

    def test_move_to_head_of_other_column(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A", "B")
        _fill(y, "C")
        ordering.move_task(ids["B"], y, 0)
        assert _titles(x) == ["A"]
        assert _titles(y) == ["B", "C"]
        _assert_dense(x, y)

    def test_append_at_destination_tail(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A", "B", "C")
        _fill(y, "D", "E")
        ordering.move_task(ids["A"], y, 2)
        assert _titles(x) == ["B", "C"]
        assert _titles(y) == ["D", "E", "A"]
        _assert_dense(x, y)

    def test_move_into_empty_column(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["done_id"]
        ids = _fill(x, "A", "B")
        ordering.move_task(ids["A"], y, 0)
        assert _titles(y) == ["A"]
        assert _titles(x) == ["B"]
        _assert_dense(x, y)

    def test_conservation(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A", "B", "C", "D")
        _fill(y, "E", "F")
        before = len(_positions(x)) + len(_positions(y))
        ordering.move_task(ids["C"], y, 1)
        assert len(_positions(x)) + len(_positions(y)) == before

    def test_relative_order_preserved_in_both_columns(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A", "B", "C", "D")
        _fill(y, "E", "F", "G")
        ordering.move_task(ids["B"], y, 2)
        assert _titles(x) == ["A", "C", "D"]
        assert _titles(y) == ["E", "F", "B", "G"]

    def test_same_column_matches_reorder(self, seed_data):
        x = seed_data["todo_id"]
        ids = _fill(x, "A", "B", "C", "D")
        ordering.move_task(ids["D"], x, 1)
        assert _titles(x) == ["A", "D", "B", "C"]
        _assert_dense(x)

    def test_same_column_tail_is_out_of_range(self, seed_data):
        x = seed_data["todo_id"]
        ids = _fill(x, "A", "B", "C")
        with pytest.raises(ordering.InvalidArgument):
            ordering.move_task(ids["A"], x, 3)

    def test_position_past_tail(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A")
        _fill(y, "B")
        with pytest.raises(ordering.InvalidArgument):
            ordering.move_task(ids["A"], y, 2)
        assert _titles(x) == ["A"]
        assert _titles(y) == ["B"]

    def test_unknown_destination(self, seed_data):
        ids = _fill(seed_data["todo_id"], "A")
        with pytest.raises(ordering.NotFound):
            ordering.move_task(ids["A"], "no-such-column", 0)
        assert _titles(seed_data["todo_id"]) == ["A"]

    def test_round_trip_across_columns_restores_both_layouts(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A", "B", "C")
        _fill(y, "D", "E")
        db.session.expire_all()
        original = {t.id: (t.column_id, t.position) for t in Task.query.all()}

        ordering.move_task(ids["B"], y, 1)
        assert _titles(y) == ["D", "B", "E"]
        ordering.move_task(ids["B"], x, 1)

        db.session.expire_all()
        assert {t.id: (t.column_id, t.position) for t in Task.query.all()} == original
        _assert_dense(x, y)

    def test_locks_columns_in_ascending_id_order(self, seed_data):
        low, high = sorted([seed_data["todo_id"], seed_data["doing_id"]])
        from_high = _fill(high, "A")["A"]
        from_low = _fill(low, "B")["B"]
        locked = []

        def record_column_locks(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("UPDATE BOARD_COLUMNS"):
                locked.append(parameters[-1])

        event.listen(db.engine, "before_cursor_execute", record_column_locks)
        try:
            ordering.move_task(from_high, low, 0)
            high_to_low = list(locked)
            locked.clear()
            ordering.move_task(from_low, high, 0)
            low_to_high = list(locked)
        finally:
            event.remove(db.engine, "before_cursor_execute", record_column_locks)

        assert high_to_low == [low, high]
        assert low_to_high == [low, high]

    def test_audit_records_both_columns(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A", "B")
        ordering.move_task(ids["A"], y, 0, actor_id=seed_data["owner_id"])
        event = AuditEvent.query.filter_by(action="task.moved").one()
        assert event.metadata_["from_column_id"] == x
        assert event.metadata_["to_column_id"] == y
        assert event.metadata_["from_position"] == 0


# ─── Invariant preservation ────────────────────────────────

class TestInvariant:

    def test_random_operation_sequence_keeps_columns_dense(self, seed_data):
        rng = random.Random(20261019)
        columns = seed_data["column_ids"]
        counter = 0

        for _ in range(150):
            tasks = Task.query.all()
            op = rng.choice(["insert", "insert", "delete", "reorder", "move"])
            if op == "insert" or not tasks:
                counter += 1
                ordering.insert_task(rng.choice(columns), {"title": f"T{counter}"})
            elif op == "delete":
                ordering.delete_task(rng.choice(tasks).id)
            elif op == "reorder":
                task = rng.choice(tasks)
                size = Task.query.filter_by(column_id=task.column_id).count()
                ordering.reorder_task(task.id, rng.randrange(size))
            else:
                task = rng.choice(tasks)
                dest = rng.choice(columns)
                size = Task.query.filter_by(column_id=dest).count()
                upper = size - 1 if dest == task.column_id else size
                ordering.move_task(task.id, dest, rng.randint(0, upper))

            _assert_dense(*columns)

        assert ordering.find_violations() == []


# ─── Retry / rollback ──────────────────────────────────────

class TestRetry:

    def test_transient_lock_error_is_retried(self, seed_data, monkeypatch):
        ids = _fill(seed_data["todo_id"], "A", "B", "C")
        real_lock = ordering._lock_columns
        calls = {"n": 0}

        def flaky_lock(session, *column_ids):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise _locked_error()
            return real_lock(session, *column_ids)

        monkeypatch.setattr(ordering, "_lock_columns", flaky_lock)
        ordering.reorder_task(ids["C"], 0)

        assert calls["n"] == 3
        assert _titles(seed_data["todo_id"]) == ["C", "A", "B"]

    def test_exhausted_retries_raise_conflict(self, app, seed_data, monkeypatch):
        ids = _fill(seed_data["todo_id"], "A", "B")
        calls = {"n": 0}

        def always_locked(session, *column_ids):
            calls["n"] += 1
            raise _locked_error()

        monkeypatch.setattr(ordering, "_lock_columns", always_locked)
        with pytest.raises(ordering.Conflict) as excinfo:
            ordering.delete_task(ids["A"])

        assert excinfo.value.retryable is True
        assert calls["n"] == app.config["ORDERING_MAX_ATTEMPTS"]
        monkeypatch.undo()
        assert _titles(seed_data["todo_id"]) == ["A", "B"]

    def test_failed_density_check_rolls_back_shift(self, seed_data, monkeypatch):
        ids = _fill(seed_data["todo_id"], "A", "B", "C", "D")

        def stale(session, *column_ids):
            session.flush()
            raise ordering.Conflict("stale snapshot")

        monkeypatch.setattr(ordering, "_verify_dense", stale)
        with pytest.raises(ordering.Conflict):
            ordering.reorder_task(ids["D"], 0)

        monkeypatch.undo()
        assert _titles(seed_data["todo_id"]) == ["A", "B", "C", "D"]
        _assert_dense(seed_data["todo_id"])

    def test_task_moved_while_waiting_is_conflict(self, seed_data):
        x, y = seed_data["todo_id"], seed_data["doing_id"]
        ids = _fill(x, "A")
        ordering.move_task(ids["A"], y, 0)
        task = db.session.get(Task, ids["A"])
        with pytest.raises(ordering.Conflict):
            ordering._load_locked_task(db.session, task.id, x)

    def test_non_transient_error_is_storage_failure(self, seed_data, monkeypatch):
        ids = _fill(seed_data["todo_id"], "A")

        def broken(session, *column_ids):
            raise OperationalError(
                "UPDATE board_columns", {}, sqlite3.OperationalError("disk I/O error")
            )

        monkeypatch.setattr(ordering, "_lock_columns", broken)
        with pytest.raises(ordering.StorageFailure):
            ordering.delete_task(ids["A"])


# ─── Lock timeouts ─────────────────────────────────────────

class _RecordingSession:
    """Stands in for a session on a backend the suite has no server for."""

    def __init__(self, dialect, current_timeout):
        self.statements = []
        self._dialect = dialect
        self._current_timeout = current_timeout

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self._dialect))

    def scalar(self, statement):
        self.statements.append(str(statement))
        return self._current_timeout

    def execute(self, statement):
        self.statements.append(str(statement))

    def commit(self):
        self.statements.append("COMMIT")

    def rollback(self):
        self.statements.append("ROLLBACK")


class TestLockTimeout:

    def test_sqlite_busy_timeout_follows_config(self, seed_data):
        with ordering._lock_timeout(db.session, 1234):
            assert db.session.execute(text("PRAGMA busy_timeout")).scalar() == 1234
        db.session.rollback()

    def test_mysql_timeout_restored_after_success(self):
        session = _RecordingSession("mysql", current_timeout=50)
        with ordering._lock_timeout(session, 3000):
            assert session.statements[-1] == "SET SESSION innodb_lock_wait_timeout = 3"
        assert session.statements[-2:] == [
            "SET SESSION innodb_lock_wait_timeout = 50",
            "COMMIT",
        ]

    def test_mysql_timeout_restored_after_failure(self):
        session = _RecordingSession("mysql", current_timeout=50)
        with pytest.raises(ordering.Conflict):
            with ordering._lock_timeout(session, 200):
                raise ordering.Conflict("lock wait timeout")
        assert "SET SESSION innodb_lock_wait_timeout = 1" in session.statements
        assert session.statements[-2:] == [
            "SET SESSION innodb_lock_wait_timeout = 50",
            "COMMIT",
        ]


# ─── Check / repair tooling ────────────────────────────────

class TestRepair:

    def _corrupt(self, column_id):
        """Spread positions out with gaps, bypassing the engine."""
        db.session.execute(
            update(Task)
            .where(Task.column_id == column_id)
            .values(position=Task.position * 3 + 1)
        )
        db.session.commit()

    def test_check_column_reports_dense(self, seed_data):
        _fill(seed_data["todo_id"], "A", "B")
        report = ordering.check_column(seed_data["todo_id"])
        assert report["dense"] is True
        assert report["count"] == 2

    def test_check_empty_column(self, seed_data):
        report = ordering.check_column(seed_data["done_id"])
        assert report["dense"] is True
        assert report["count"] == 0

    def test_check_unknown_column(self, seed_data):
        with pytest.raises(ordering.NotFound):
            ordering.check_column("missing")

    def test_find_and_repair_gaps(self, seed_data):
        _fill(seed_data["todo_id"], "A", "B", "C")
        self._corrupt(seed_data["todo_id"])

        violations = ordering.find_violations()
        assert [v["column_id"] for v in violations] == [seed_data["todo_id"]]

        changed = ordering.repair_column(seed_data["todo_id"])
        assert changed == 3
        assert _titles(seed_data["todo_id"]) == ["A", "B", "C"]
        _assert_dense(seed_data["todo_id"])
        assert ordering.find_violations() == []

    def test_engine_refuses_to_commit_onto_corrupt_column(self, seed_data):
        _fill(seed_data["todo_id"], "A", "B")
        self._corrupt(seed_data["todo_id"])
        with pytest.raises(ordering.Conflict):
            ordering.insert_task(seed_data["todo_id"], {"title": "C"})
        assert Task.query.filter_by(column_id=seed_data["todo_id"]).count() == 2
