"""JSON file implementation of the snapshot history."""
import json
import logging
import os
import re
from datetime import date
from typing import List, Optional, Tuple

from org_compliance.domain.exceptions import StorageIOException
from org_compliance.domain.history_interface import IHistoryStore
from org_compliance.domain.models import HistoricalSnapshot, OrgAuditBatch


logger = logging.getLogger(__name__)


DEFAULT_HISTORY_DIR = ".health-history"
SNAPSHOT_PATTERN = re.compile(r"^health-(\d{4}-\d{2}-\d{2})(?:\.(\d+))?\.json$")


class FileHistoryStore(IHistoryStore):
    """One JSON document per run, named after the run date.

    The first run of a day writes ``health-<date>.json``; later runs of the
    same day write ``health-<date>.<n>.json``. Files are opened in exclusive
    create mode, so an existing snapshot is never overwritten.
    """

    def __init__(self, directory: str = DEFAULT_HISTORY_DIR):
        self._directory = directory

    @property
    def directory(self) -> str:
        return self._directory

    def _entries(self) -> List[Tuple[date, int, str]]:
        """(run date, sequence, file name) of every snapshot on disk."""
        try:
            names = os.listdir(self._directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageIOException(f"Could not list {self._directory}: {e}") from e

        entries = []
        for name in names:
            match = SNAPSHOT_PATTERN.match(name)
            if not match:
                continue
            try:
                run_date = date.fromisoformat(match.group(1))
            except ValueError:
                logger.warning(f"Ignoring snapshot with invalid date: {name}")
                continue
            entries.append((run_date, int(match.group(2) or 0), name))
        return entries

    def list_keys(self) -> List[str]:
        """Snapshot file names, oldest first."""
        return [name for _, _, name in sorted(self._entries())]

    def save(self, batch: OrgAuditBatch) -> str:
        """Write the batch to the first free name for its run date.

        Returns:
            The snapshot file name

        Raises:
            StorageIOException: When the directory or file cannot be written
        """
        run_date = batch.run_date.isoformat()
        try:
            os.makedirs(self._directory, exist_ok=True)
        except OSError as e:
            raise StorageIOException(f"Could not create {self._directory}: {e}") from e

        payload = json.dumps(batch.to_dict(), indent=2)
        sequence = 0
        while True:
            name = f"health-{run_date}.json" if sequence == 0 else f"health-{run_date}.{sequence}.json"
            path = os.path.join(self._directory, name)
            try:
                with open(path, "x", encoding="utf-8") as f:
                    f.write(payload)
                    f.write("\n")
            except FileExistsError:
                sequence += 1
                continue
            except OSError as e:
                logger.error(f"Error saving snapshot {path}: {e}")
                raise StorageIOException(f"Could not write {path}: {e}") from e
            break

        logger.info(f"Saved health snapshot to {path}")
        return name

    def load_nearest_prior(self, reference_date: date) -> Optional[HistoricalSnapshot]:
        """Latest snapshot dated before ``reference_date``, highest sequence first.

        Raises:
            StorageIOException: When the chosen snapshot cannot be read or decoded
        """
        candidates = [entry for entry in self._entries() if entry[0] < reference_date]
        if not candidates:
            return None

        run_date, _, name = max(candidates)
        path = os.path.join(self._directory, name)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            batch = OrgAuditBatch.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error loading snapshot {path}: {e}")
            raise StorageIOException(f"Could not read {path}: {e}") from e

        return HistoricalSnapshot(run_date=run_date, key=name, batch=batch)

    def close(self) -> None:
        pass
