"""Runtime settings read from the environment."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from org_compliance.application.batch_auditor import DEFAULT_CONCURRENCY
from org_compliance.application.issue_reconciler import DEFAULT_LABELS
from org_compliance.infrastructure.file_history_store import DEFAULT_HISTORY_DIR


HISTORY_BACKENDS = ("file", "postgres")


@dataclass(frozen=True)
class Settings:
    organization: Optional[str] = None
    concurrency: int = DEFAULT_CONCURRENCY
    history_backend: str = "file"
    history_dir: str = DEFAULT_HISTORY_DIR
    tracking_repository: Optional[str] = None
    issue_labels: Tuple[str, ...] = DEFAULT_LABELS
    repository_timeout: Optional[float] = None
    batch_deadline: Optional[float] = None
    fail_on_duplicate_issue: bool = False
    postgres_host: str = "localhost"
    postgres_port: str = "5432"
    postgres_db: str = "org_compliance"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"

    def connection_string(self) -> str:
        """Build PostgreSQL connection string from the settings."""
        return (
            f"host={self.postgres_host} port={self.postgres_port} dbname={self.postgres_db} "
            f"user={self.postgres_user} password={self.postgres_password}"
        )


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Collect settings from environment variables.

    Call ``load_dotenv`` first to pick up a ``.env`` file.

    Raises:
        ValueError: When a numeric variable or the history backend is invalid
    """
    env = os.environ if environ is None else environ

    backend = env.get("HISTORY_BACKEND", "file").strip().lower()
    if backend not in HISTORY_BACKENDS:
        raise ValueError(f"HISTORY_BACKEND must be one of {', '.join(HISTORY_BACKENDS)}, got {backend!r}")

    labels = tuple(
        label.strip() for label in env.get("ISSUE_LABELS", "").split(",") if label.strip()
    ) or DEFAULT_LABELS

    return Settings(
        organization=env.get("GITHUB_ORG") or env.get("GITHUB_REPOSITORY_OWNER") or None,
        concurrency=int(env.get("AUDIT_CONCURRENCY", str(DEFAULT_CONCURRENCY))),
        history_backend=backend,
        history_dir=env.get("HISTORY_DIR", DEFAULT_HISTORY_DIR),
        tracking_repository=env.get("TRACKING_REPOSITORY") or env.get("GITHUB_REPOSITORY") or None,
        issue_labels=labels,
        repository_timeout=_optional_float(env.get("REPOSITORY_TIMEOUT")),
        batch_deadline=_optional_float(env.get("BATCH_DEADLINE")),
        fail_on_duplicate_issue=_flag(env.get("FAIL_ON_DUPLICATE_ISSUE")),
        postgres_host=env.get("POSTGRES_HOST", "localhost"),
        postgres_port=env.get("POSTGRES_PORT", "5432"),
        postgres_db=env.get("POSTGRES_DB", "org_compliance"),
        postgres_user=env.get("POSTGRES_USER", "postgres"),
        postgres_password=env.get("POSTGRES_PASSWORD", "postgres")
    )
