"""Keeps the single managed health issue in step with the latest batch.

The issue is looked up on every run by its label set; nothing about it is
cached locally, so re-running after a crash converges on the same state.

    Absent    + unhealthy repos -> create          -> Open
    Open      + unhealthy repos -> update body     -> Open
    Open      + none unhealthy  -> comment, close  -> Absent
    Absent    + none unhealthy  -> nothing
"""
import logging
from typing import Callable, Sequence

from org_compliance.application.reports import CLOSING_COMMENT, render_issue_body
from org_compliance.domain.exceptions import DuplicateManagedIssueException
from org_compliance.domain.github_interface import IIssueTracker
from org_compliance.domain.models import (
    ManagedIssue,
    OrgAuditBatch,
    ReconcileAction,
    ReconcileOutcome,
    RepositoryIdentity,
)


logger = logging.getLogger(__name__)


DEFAULT_LABELS = ("automation", "health-monitor")
ISSUE_TITLE = "Repository Health Monitor: unhealthy repositories detected"


class IssueReconciler:
    """Creates, updates or closes the managed issue in a tracking repository."""

    def __init__(
        self,
        tracker: IIssueTracker,
        repository: RepositoryIdentity,
        labels: Sequence[str] = DEFAULT_LABELS,
        fail_on_duplicate: bool = False,
        render_body: Callable[[OrgAuditBatch], str] = render_issue_body
    ):
        """Initialize the reconciler.

        Args:
            tracker: Issue operations (GitHub client)
            repository: Repository holding the managed issue
            labels: Label set identifying the managed issue
            fail_on_duplicate: Raise instead of picking the newest issue
                when several open issues carry the label set
            render_body: Builds the issue body from a batch
        """
        self._tracker = tracker
        self._repository = repository
        self._labels = tuple(labels)
        self._fail_on_duplicate = fail_on_duplicate
        self._render_body = render_body

    async def reconcile(self, batch: OrgAuditBatch) -> ReconcileOutcome:
        """Bring the managed issue in line with ``batch``.

        Returns:
            What was done, with the issue it was done to

        Raises:
            DuplicateManagedIssueException: Several open issues found and
                ``fail_on_duplicate`` is set
        """
        if not batch.results:
            logger.warning("No repository was audited successfully; leaving the managed issue untouched")
            return ReconcileOutcome(
                action=ReconcileAction.SKIPPED,
                reason="no successful audits in batch"
            )

        open_issues = await self._tracker.find_open_issues(self._repository, self._labels)
        canonical, duplicates = self._select_canonical(open_issues)
        unhealthy = batch.unhealthy_results

        if canonical is None:
            if not unhealthy:
                logger.info("All repositories healthy and no managed issue open")
                return ReconcileOutcome(action=ReconcileAction.NOOP)
            issue = await self._tracker.create_issue(
                self._repository, ISSUE_TITLE, self._render_body(batch), self._labels
            )
            logger.info(
                f"Created health issue #{issue.number} for {len(unhealthy)} unhealthy repositories"
            )
            return ReconcileOutcome(action=ReconcileAction.CREATED, issue=issue)

        # Repositories that could not be audited are not known to be healthy.
        if unhealthy or batch.errors:
            issue = await self._tracker.update_issue_body(canonical, self._render_body(batch))
            logger.info(
                f"Updated health issue #{issue.number} with {len(unhealthy)} unhealthy and "
                f"{len(batch.errors)} unaudited repositories"
            )
            return ReconcileOutcome(
                action=ReconcileAction.UPDATED, issue=issue, duplicate_numbers=duplicates
            )

        await self._tracker.close_issue(canonical, CLOSING_COMMENT)
        logger.info(f"Closed health issue #{canonical.number}: all repositories healthy")
        return ReconcileOutcome(
            action=ReconcileAction.CLOSED, issue=canonical, duplicate_numbers=duplicates
        )

    def _select_canonical(self, issues: Sequence[ManagedIssue]):
        """Newest open issue is canonical; the rest are reported, never touched."""
        if not issues:
            return None, ()
        ordered = sorted(issues, key=lambda issue: (issue.created_at, issue.number), reverse=True)
        canonical, others = ordered[0], tuple(issue.number for issue in ordered[1:])
        if others:
            if self._fail_on_duplicate:
                raise DuplicateManagedIssueException([canonical.number, *others])
            logger.error(
                f"Found {len(ordered)} open managed issues in {self._repository.full_name}; "
                f"using #{canonical.number}, manual cleanup needed for "
                + ", ".join(f"#{number}" for number in others)
            )
        return canonical, others
