"""Tests for the file and PostgreSQL history stores."""
import json
from datetime import date, datetime, timezone
from unittest import mock

import psycopg2
import pytest
from org_compliance.domain.exceptions import StorageIOException
from org_compliance.infrastructure.file_history_store import FileHistoryStore
from org_compliance.infrastructure.postgres_history_store import PostgresHistoryStore

from conftest import build_batch, build_result


def batch_on(day: int, score: int = 80):
    return build_batch(
        [build_result("acme/widgets", score)],
        timestamp=datetime(2024, 3, day, 8, 0, tzinfo=timezone.utc)
    )


def test_empty_history_has_no_prior(tmp_path):
    """A missing directory is simply an empty history."""
    store = FileHistoryStore(str(tmp_path / "missing"))

    assert store.load_nearest_prior(date(2024, 3, 15)) is None
    assert store.list_keys() == []


def test_save_writes_dated_file(tmp_path):
    """Test the snapshot file name and content."""
    store = FileHistoryStore(str(tmp_path))

    key = store.save(batch_on(15))

    assert key == "health-2024-03-15.json"
    with open(tmp_path / key, encoding="utf-8") as f:
        assert json.load(f)["summary"]["average_score"] == 80


def test_same_day_saves_never_overwrite(tmp_path):
    """A second run on the same date gets a sequence suffix."""
    store = FileHistoryStore(str(tmp_path))

    first = store.save(batch_on(15, score=60))
    second = store.save(batch_on(15, score=70))
    third = store.save(batch_on(15, score=75))

    assert (first, second, third) == (
        "health-2024-03-15.json",
        "health-2024-03-15.1.json",
        "health-2024-03-15.2.json",
    )
    with open(tmp_path / first, encoding="utf-8") as f:
        assert json.load(f)["summary"]["average_score"] == 60


def test_nearest_prior_is_strictly_earlier(tmp_path):
    """The snapshot of the reference date itself is never returned."""
    store = FileHistoryStore(str(tmp_path))
    store.save(batch_on(10, score=50))
    store.save(batch_on(12, score=60))
    store.save(batch_on(15, score=90))

    prior = store.load_nearest_prior(date(2024, 3, 15))

    assert prior.run_date == date(2024, 3, 12)
    assert prior.key == "health-2024-03-12.json"
    assert prior.batch.summary.average_score == 60
    assert store.load_nearest_prior(date(2024, 3, 10)) is None


def test_nearest_prior_prefers_latest_run_of_the_day(tmp_path):
    """Among same-day snapshots the highest sequence wins."""
    store = FileHistoryStore(str(tmp_path))
    store.save(batch_on(12, score=60))
    store.save(batch_on(12, score=65))

    prior = store.load_nearest_prior(date(2024, 3, 13))

    assert prior.key == "health-2024-03-12.1.json"
    assert prior.batch.summary.average_score == 65


def test_unrelated_files_are_ignored(tmp_path):
    """Only health-<date>[.n].json files count as snapshots."""
    (tmp_path / "notes.txt").write_text("hello")
    (tmp_path / "health-latest.json").write_text("{}")
    store = FileHistoryStore(str(tmp_path))

    assert store.load_nearest_prior(date(2024, 3, 15)) is None


def test_corrupt_snapshot_raises_storage_error(tmp_path):
    """Undecodable snapshots surface as StorageIOException."""
    (tmp_path / "health-2024-03-01.json").write_text("{not json")
    store = FileHistoryStore(str(tmp_path))

    with pytest.raises(StorageIOException):
        store.load_nearest_prior(date(2024, 3, 15))


def test_unwritable_directory_raises_storage_error(tmp_path):
    """A file where the directory should be cannot hold snapshots."""
    blocker = tmp_path / "history"
    blocker.write_text("")
    store = FileHistoryStore(str(blocker))

    with pytest.raises(StorageIOException):
        store.save(batch_on(15))


@mock.patch("org_compliance.infrastructure.postgres_history_store.psycopg2.connect")
def test_postgres_save_inserts_row(connect):
    """Test that saving inserts one row and returns its key."""
    cursor = connect.return_value.cursor.return_value
    cursor.fetchone.return_value = (42,)
    store = PostgresHistoryStore("dbname=test", "acme")

    key = store.save(batch_on(15))

    assert key == "2024-03-15#42"
    sql, params = cursor.execute.call_args[0]
    assert "INSERT INTO health_snapshots" in sql
    assert params[0] == "acme"
    assert params[1] == date(2024, 3, 15)
    connect.return_value.commit.assert_called_once()


@mock.patch("org_compliance.infrastructure.postgres_history_store.psycopg2.connect")
def test_postgres_load_nearest_prior(connect):
    """Test decoding the latest earlier row."""
    cursor = connect.return_value.cursor.return_value
    cursor.fetchone.return_value = (7, date(2024, 3, 12), batch_on(12, score=60).to_dict())
    store = PostgresHistoryStore("dbname=test", "acme")

    prior = store.load_nearest_prior(date(2024, 3, 15))

    assert prior.key == "2024-03-12#7"
    assert prior.batch.summary.average_score == 60
    sql, params = cursor.execute.call_args[0]
    assert "run_date < %s" in sql
    assert params == ("acme", date(2024, 3, 15))


@mock.patch("org_compliance.infrastructure.postgres_history_store.psycopg2.connect")
def test_postgres_empty_history(connect):
    """No row means no prior snapshot."""
    connect.return_value.cursor.return_value.fetchone.return_value = None
    store = PostgresHistoryStore("dbname=test", "acme")

    assert store.load_nearest_prior(date(2024, 3, 15)) is None


@mock.patch("org_compliance.infrastructure.postgres_history_store.psycopg2.connect")
def test_postgres_errors_roll_back(connect):
    """Database errors become StorageIOException after a rollback."""
    cursor = connect.return_value.cursor.return_value
    cursor.execute.side_effect = psycopg2.OperationalError("connection lost")
    store = PostgresHistoryStore("dbname=test", "acme")

    with pytest.raises(StorageIOException):
        store.save(batch_on(15))
    connect.return_value.rollback.assert_called_once()
