"""History store interface (port) for audit snapshots.

This is the port in hexagonal architecture that the infrastructure layer implements.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Optional
from org_compliance.domain.models import HistoricalSnapshot, OrgAuditBatch


class IHistoryStore(ABC):
    """Abstract interface for append-only snapshot storage."""

    @abstractmethod
    def save(self, batch: OrgAuditBatch) -> str:
        """Persist a batch as a new dated snapshot.

        Never mutates or deletes earlier snapshots, including ones taken
        on the same date.

        Args:
            batch: The completed batch to persist

        Returns:
            Key of the stored snapshot

        Raises:
            StorageIOException: When the snapshot cannot be written
        """
        pass

    @abstractmethod
    def load_nearest_prior(self, reference_date: date) -> Optional[HistoricalSnapshot]:
        """Get the latest snapshot dated strictly before ``reference_date``.

        Returns:
            The snapshot, or None when no earlier snapshot exists

        Raises:
            StorageIOException: When snapshots cannot be read
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close any open connections."""
        pass
