import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FIXED_NOW, make_feedback, make_protocol
from protocol_rec.catalog import DEFAULT_PROTOCOLS


def test_init_db_creates_tables(fresh_db):
    fresh_db.init_db()
    with fresh_db.get_db(read_only=True) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"feedback", "protocols"} <= tables


def test_nested_transactions_roll_back_together(fresh_db):
    fresh_db.init_db()

    with pytest.raises(RuntimeError):
        with fresh_db.get_db() as outer:
            outer.execute(fresh_db._INSERT_FEEDBACK, fresh_db._feedback_row(make_feedback()))
            with fresh_db.get_db() as inner:
                inner.execute(fresh_db._INSERT_FEEDBACK, fresh_db._feedback_row(make_feedback()))
            raise RuntimeError("boom")

    assert fresh_db.count_feedback() == 0


def test_feedback_round_trip_in_arrival_order(fresh_db):
    fresh_db.init_db()
    entries = [make_feedback(rating=r, timestamp=FIXED_NOW + timedelta(minutes=r)) for r in (3, 1, 5)]

    fresh_db.save_feedback(entries[0])
    assert fresh_db.save_feedback_batch(entries[1:]) == 2
    assert fresh_db.save_feedback_batch([]) == 0

    assert fresh_db.load_feedback() == entries
    assert [f.rating for f in fresh_db.load_feedback(limit=2)] == [1, 5]
    assert fresh_db.count_feedback() == 3

    assert fresh_db.clear_feedback() == 3
    assert fresh_db.load_feedback() == []


def test_load_feedback_skips_invalid_rows(fresh_db):
    fresh_db.init_db()
    fresh_db.save_feedback(make_feedback())
    with fresh_db.get_db() as conn:
        conn.execute("UPDATE feedback SET rating = 9")
    fresh_db.save_feedback(make_feedback(rating=2))

    assert [f.rating for f in fresh_db.load_feedback()] == [2]


def test_parse_timestamp_naive(fresh_db):
    aware = datetime(2024, 6, 15, 12, tzinfo=timezone.utc).isoformat()
    assert fresh_db.parse_timestamp_naive(aware) == datetime(2024, 6, 15, 12)
    assert fresh_db.parse_timestamp_naive(None) is None


def test_protocols_round_trip(fresh_db):
    fresh_db.init_db()
    assert fresh_db.load_protocols() == []

    fresh_db.save_protocols(DEFAULT_PROTOCOLS)
    fresh_db.save_protocols([make_protocol()])

    loaded = {p.id: p for p in fresh_db.load_protocols()}
    assert len(loaded) == 5
    assert loaded["gmax-strength-foundation"] == DEFAULT_PROTOCOLS[0]


def test_sink_writes_in_background(fresh_db):
    fresh_db.init_db()
    sink = fresh_db.SqliteFeedbackSink(retry_delay=0)
    for rating in (1, 2, 3):
        sink.submit(make_feedback(rating=rating))

    sink.flush()
    sink.close()

    assert sink.written == 3
    assert sink.failed == 0
    assert [f.rating for f in fresh_db.load_feedback()] == [1, 2, 3]
    with pytest.raises(RuntimeError):
        sink.submit(make_feedback())


def test_sink_counts_failed_writes(fresh_db):
    # No init_db: every write hits a missing table
    sink = fresh_db.SqliteFeedbackSink(max_retries=2, retry_delay=0)
    sink.submit(make_feedback())
    sink.flush()
    sink.close()

    assert sink.failed == 1
    assert sink.written == 0


def test_pool_stats_and_close(fresh_db):
    fresh_db.init_db()
    assert fresh_db._get_pool().stats()["active_connections"] == 1
    fresh_db.close_pool()
    # A new pool is created on demand
    assert fresh_db.count_feedback() == 0


def test_pool_reports_exhaustion(tmp_path):
    from protocol_rec.database import ConnectionPool

    pool = ConnectionPool(tmp_path / "tiny.db", max_size=0)
    with pytest.raises(RuntimeError):
        pool.get_connection()


def test_connection_uses_row_factory(fresh_db):
    fresh_db.init_db()
    with fresh_db.get_db(read_only=True) as conn:
        assert conn.row_factory is sqlite3.Row


def test_sink_survives_non_sqlite_errors(fresh_db):
    fresh_db.init_db()
    sink = fresh_db.SqliteFeedbackSink(retry_delay=0)
    write = sink._write
    calls = {"count": 0}

    def flaky_write(feedback):
        calls["count"] += 1
        if calls["count"] == 1:
            raise OSError("disk full")
        write(feedback)

    sink._write = flaky_write
    sink.submit(make_feedback(rating=1))
    sink.submit(make_feedback(rating=2))
    sink.flush()
    sink.close()

    assert sink.failed == 1
    assert sink.written == 1
    assert [f.rating for f in fresh_db.load_feedback()] == [2]
