"""Audit service orchestrating an organization-wide compliance run."""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from org_compliance.application.batch_auditor import DEFAULT_CONCURRENCY, BatchAuditor
from org_compliance.application.issue_reconciler import IssueReconciler
from org_compliance.application.prioritizer import DEFAULT_TOP_N, prioritize
from org_compliance.application.trend_analyzer import analyze
from org_compliance.domain.exceptions import DiscoveryException, StorageIOException
from org_compliance.domain.github_interface import IRepositoryAuditor, IRepositorySource
from org_compliance.domain.history_interface import IHistoryStore
from org_compliance.domain.models import (
    OrgAuditBatch,
    PrioritizationResult,
    ReconcileOutcome,
    TrendReport,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOptions:
    """Which optional stages a run performs."""
    concurrency: int = DEFAULT_CONCURRENCY
    trending: bool = False
    save_history: bool = True
    prioritize: bool = False
    top_n: Optional[int] = DEFAULT_TOP_N
    group_by_similarity: bool = False
    reconcile_issue: bool = False


@dataclass(frozen=True)
class AuditRun:
    """Everything one run produced.

    ``stage_errors`` maps a stage name (``trends``, ``history``, ``issue``)
    to the error that stopped it; the batch is returned either way.
    """
    batch: OrgAuditBatch
    duration_seconds: float
    trends: Optional[TrendReport] = None
    priorities: Optional[PrioritizationResult] = None
    reconcile: Optional[ReconcileOutcome] = None
    snapshot_key: Optional[str] = None
    stage_errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self.batch.to_dict()
        data["duration_seconds"] = round(self.duration_seconds, 2)
        if self.trends is not None:
            data["trends"] = self.trends.to_dict()
        if self.priorities is not None:
            data["priorities"] = self.priorities.to_dict()
        if self.reconcile is not None:
            data["issue"] = self.reconcile.to_dict()
        if self.snapshot_key is not None:
            data["snapshot"] = self.snapshot_key
        if self.stage_errors:
            data["stage_errors"] = dict(self.stage_errors)
        return data


class ComplianceAuditService:
    """Application service for auditing an organization.

    Coordinates discovery, the fan-out audit, history, trends, prioritization
    and the managed issue. Only a discovery failure aborts the run; the other
    stages record their failure and let the run finish.
    """

    def __init__(
        self,
        source: IRepositorySource,
        auditor: IRepositoryAuditor,
        batch_auditor: Optional[BatchAuditor] = None,
        history: Optional[IHistoryStore] = None,
        reconciler: Optional[IssueReconciler] = None,
        history_error: Optional[str] = None
    ):
        """Initialize audit service.

        Args:
            source: Repository discovery implementation
            auditor: Per-repository auditor
            batch_auditor: Fan-out runner (a default one is created if omitted)
            history: Snapshot storage; trends and saving are skipped without it
            reconciler: Managed issue reconciler; skipped without it
            history_error: Why the history store could not be opened, if it
                could not; reported for the trends and history stages
        """
        self._source = source
        self._auditor = auditor
        self._batch_auditor = batch_auditor or BatchAuditor(
            rate_limit_probe=lambda: source.rate_limit_remaining
        )
        self._history = history
        self._reconciler = reconciler
        self._history_error = history_error

    async def run(self, organization: str, options: Optional[RunOptions] = None) -> AuditRun:
        """Audit every repository of ``organization``.

        Args:
            organization: Organization or user login
            options: Stages to run (defaults to audit plus saving history)

        Returns:
            AuditRun with the batch and the output of each enabled stage

        Raises:
            DiscoveryException: When the repositories cannot be listed
        """
        options = options or RunOptions()
        start_time = time.time()
        stage_errors: Dict[str, str] = {}

        logger.info(f"Starting compliance audit of {organization}")

        try:
            repositories = await self._source.discover_repositories(organization)
        except DiscoveryException:
            raise
        except Exception as e:
            logger.error(f"Error during discovery: {e}")
            raise DiscoveryException(f"Could not discover repositories of {organization}: {e}") from e

        batch = await self._batch_auditor.run_batch(
            repositories,
            self._auditor.audit,
            concurrency=options.concurrency,
            organization=organization
        )

        trends = None
        snapshot_key = None
        if self._history is not None:
            # The prior snapshot is read before this batch is written.
            if options.trending:
                try:
                    trends = analyze(batch, self._history)
                except StorageIOException as e:
                    logger.error(f"Trend analysis skipped: {e}")
                    stage_errors["trends"] = str(e)
            if options.save_history:
                try:
                    snapshot_key = self._history.save(batch)
                except StorageIOException as e:
                    logger.error(f"Snapshot not saved: {e}")
                    stage_errors["history"] = str(e)
        else:
            if options.trending:
                stage_errors["trends"] = self._history_error or "no history store configured"
            if options.save_history and self._history_error:
                stage_errors["history"] = self._history_error

        priorities = None
        if options.prioritize:
            priorities = prioritize(
                batch, top_n=options.top_n, group_by_similarity=options.group_by_similarity
            )

        reconcile = None
        if options.reconcile_issue:
            if self._reconciler is None:
                stage_errors["issue"] = "no tracking repository configured"
            else:
                try:
                    reconcile = await self._reconciler.reconcile(batch)
                except Exception as e:
                    logger.error(f"Issue reconciliation failed: {e}")
                    stage_errors["issue"] = str(e)

        duration = time.time() - start_time
        summary = batch.summary
        logger.info(
            f"Audit completed: {summary.total_repositories} repositories, "
            f"{summary.failed_count} failed, {summary.unhealthy_count} unhealthy, "
            f"average score {summary.average_score} in {duration:.2f} seconds"
        )

        return AuditRun(
            batch=batch,
            duration_seconds=duration,
            trends=trends,
            priorities=priorities,
            reconcile=reconcile,
            snapshot_key=snapshot_key,
            stage_errors=stage_errors
        )

    async def close(self) -> None:
        """Close connections."""
        await self._source.close()
        if self._history is not None:
            self._history.close()
