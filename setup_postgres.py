"""Database initialization script.

Creates the insert-only snapshot table used by the postgres history backend.
"""
import sys
import psycopg2
import logging
from dotenv import load_dotenv
from org_compliance.config import load_settings

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_schema(conn) -> None:
    """Create database schema.

    Schema design considerations:
    - one row per audit run; rows are only ever inserted
    - several runs on the same date are kept apart by the serial id
    - the full batch lives in the JSONB payload, the summary columns allow
      cheap trend queries without decoding it
    - lookups are "latest run of an organization before a date", served by
      the (organization, run_date DESC, id DESC) index
    """
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS health_snapshots (
                id SERIAL PRIMARY KEY,
                organization VARCHAR(255) NOT NULL,
                run_date DATE NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL,
                average_score NUMERIC(5, 1) NOT NULL,
                unhealthy_count INTEGER NOT NULL DEFAULT 0,
                payload JSONB NOT NULL,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_health_snapshots_org_date
            ON health_snapshots(organization, run_date DESC, id DESC)
        """)

        conn.commit()
        logger.info("Database schema created successfully")

    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating schema: {e}")
        raise
    finally:
        cursor.close()


def main():
    """Initialize the database."""
    try:
        conn_string = load_settings().connection_string()
        logger.info("Connecting to database...")

        conn = psycopg2.connect(conn_string)
        conn.autocommit = False

        create_schema(conn)

        conn.close()
        logger.info("Database initialization completed successfully")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
