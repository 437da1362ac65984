"""PostgreSQL implementation of the snapshot history."""
import logging
from datetime import date
from typing import Optional

import psycopg2
from psycopg2.extras import Json
from org_compliance.domain.exceptions import StorageIOException
from org_compliance.domain.history_interface import IHistoryStore
from org_compliance.domain.models import HistoricalSnapshot, OrgAuditBatch


logger = logging.getLogger(__name__)


class PostgresHistoryStore(IHistoryStore):
    """PostgreSQL implementation of snapshot storage.

    Snapshots are insert-only rows of ``health_snapshots``; several rows may
    share a run date and are told apart by their serial id. The schema is
    created by ``setup_postgres.py``.
    """

    def __init__(self, connection_string: str, organization: str):
        """Initialize PostgreSQL connection.

        Args:
            connection_string: PostgreSQL connection string
            organization: Only snapshots of this organization are read

        Raises:
            StorageIOException: When the database cannot be reached
        """
        self._organization = organization
        try:
            self._conn = psycopg2.connect(connection_string)
        except psycopg2.Error as e:
            logger.error(f"Error connecting to PostgreSQL: {e}")
            raise StorageIOException(f"Could not connect to PostgreSQL: {e}") from e
        self._conn.autocommit = False
        logger.info("Connected to PostgreSQL database")

    def save(self, batch: OrgAuditBatch) -> str:
        """Insert the batch as a new row.

        Returns:
            Key of the form ``<run date>#<row id>``
        """
        cursor = self._conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO health_snapshots
                    (organization, run_date, recorded_at, average_score, unhealthy_count, payload)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    batch.organization,
                    batch.run_date,
                    batch.timestamp,
                    batch.summary.average_score,
                    batch.summary.unhealthy_count,
                    Json(batch.to_dict())
                )
            )
            snapshot_id = cursor.fetchone()[0]
            self._conn.commit()
        except psycopg2.Error as e:
            self._conn.rollback()
            logger.error(f"Error saving snapshot: {e}")
            raise StorageIOException(f"Could not save snapshot: {e}") from e
        finally:
            cursor.close()

        key = f"{batch.run_date.isoformat()}#{snapshot_id}"
        logger.info(f"Saved health snapshot {key} to database")
        return key

    def load_nearest_prior(self, reference_date: date) -> Optional[HistoricalSnapshot]:
        """Latest row of the organization dated before ``reference_date``."""
        cursor = self._conn.cursor()
        try:
            cursor.execute(
                """
                SELECT id, run_date, payload
                FROM health_snapshots
                WHERE organization = %s AND run_date < %s
                ORDER BY run_date DESC, id DESC
                LIMIT 1
                """,
                (self._organization, reference_date)
            )
            row = cursor.fetchone()
        except psycopg2.Error as e:
            self._conn.rollback()
            logger.error(f"Error loading snapshot: {e}")
            raise StorageIOException(f"Could not load snapshot: {e}") from e
        finally:
            cursor.close()

        if row is None:
            return None

        snapshot_id, run_date, payload = row
        try:
            batch = OrgAuditBatch.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageIOException(f"Snapshot {snapshot_id} is malformed: {e}") from e
        return HistoricalSnapshot(
            run_date=run_date,
            key=f"{run_date.isoformat()}#{snapshot_id}",
            batch=batch
        )

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            logger.info("Closed PostgreSQL connection")
