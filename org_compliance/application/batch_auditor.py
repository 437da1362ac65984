"""Fan-out auditing of many repositories under a concurrency bound."""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from org_compliance.domain.exceptions import (
    PermissionDeniedException,
    RateLimitException,
    RepositoryNotFoundException,
    TransientException,
)
from org_compliance.domain.models import (
    AuditError,
    AuditResult,
    OrgAuditBatch,
    RepositoryIdentity,
)


logger = logging.getLogger(__name__)


DEFAULT_CONCURRENCY = 5

AuditFn = Callable[[RepositoryIdentity], Awaitable[AuditResult]]
Outcome = Union[AuditResult, AuditError]

_ERROR_KINDS = (
    (RepositoryNotFoundException, "not_found"),
    (PermissionDeniedException, "permission_denied"),
    (RateLimitException, "transient"),
    (TransientException, "transient"),
)


class BatchAuditor:
    """Runs a per-repository audit over a whole organization.

    One task per repository is started in discovery order and a semaphore
    bounds how many run at once. Each task writes only its own slot, so the
    batch keeps discovery order no matter which audits finish first. A failed
    repository is recorded in ``errors`` and never aborts the batch.
    """

    def __init__(
        self,
        repository_timeout: Optional[float] = None,
        batch_deadline: Optional[float] = None,
        rate_limit_probe: Optional[Callable[[], Optional[int]]] = None,
        requests_per_repository: int = 2,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the batch auditor.

        Args:
            repository_timeout: Seconds one audit may take before it is
                recorded as a timeout (None disables)
            batch_deadline: Seconds the whole batch may take; unfinished
                audits are cancelled and recorded (None disables)
            rate_limit_probe: Returns the remaining API quota, if known
            requests_per_repository: Estimated API calls per audit, used
                only for the rate limit warning
            clock: Returns the batch timestamp (defaults to UTC now)
        """
        self._repository_timeout = repository_timeout
        self._batch_deadline = batch_deadline
        self._rate_limit_probe = rate_limit_probe
        self._requests_per_repository = requests_per_repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_batch(
        self,
        repositories: Sequence[RepositoryIdentity],
        audit_fn: AuditFn,
        concurrency: int = DEFAULT_CONCURRENCY,
        organization: str = ""
    ) -> OrgAuditBatch:
        """Audit every repository and collect results and failures.

        Args:
            repositories: Repositories in discovery order
            audit_fn: Coroutine function auditing one repository
            concurrency: Maximum audits in flight (1 = sequential)
            organization: Organization recorded on the batch

        Returns:
            OrgAuditBatch with one entry per repository in results or errors

        Raises:
            ValueError: If concurrency is lower than 1
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        timestamp = self._clock()
        start_time = time.time()
        self._warn_on_rate_limit(len(repositories))

        logger.info(
            f"Auditing {len(repositories)} repositories "
            f"({'sequentially' if concurrency == 1 else f'{concurrency} at a time'})"
        )

        slots: List[Optional[Outcome]] = [None] * len(repositories)
        semaphore = asyncio.Semaphore(concurrency)

        async def worker(index: int, repository: RepositoryIdentity) -> None:
            async with semaphore:
                slots[index] = await self._audit_one(repository, audit_fn)

        tasks = [
            asyncio.ensure_future(worker(index, repository))
            for index, repository in enumerate(repositories)
        ]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self._batch_deadline)
            if pending:
                logger.error(
                    f"Batch deadline of {self._batch_deadline}s reached; "
                    f"cancelling {len(pending)} unfinished audits"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        results: List[AuditResult] = []
        errors: List[AuditError] = []
        for repository, outcome in zip(repositories, slots):
            if outcome is None:
                outcome = AuditError(
                    repository=repository,
                    message=f"Batch deadline of {self._batch_deadline}s exceeded",
                    kind="deadline_exceeded"
                )
            if isinstance(outcome, AuditError):
                errors.append(outcome)
            else:
                results.append(outcome)

        batch = OrgAuditBatch.create(organization, timestamp, results, errors)
        duration = time.time() - start_time
        logger.info(
            f"Batch completed: {len(results)} audited, {len(errors)} failed "
            f"in {duration:.2f} seconds (average score {batch.summary.average_score})"
        )
        return batch

    async def _audit_one(self, repository: RepositoryIdentity, audit_fn: AuditFn) -> Outcome:
        """Run one audit and convert any failure into an AuditError."""
        try:
            if self._repository_timeout is not None:
                return await asyncio.wait_for(audit_fn(repository), self._repository_timeout)
            return await audit_fn(repository)
        except asyncio.TimeoutError:
            message = (
                f"Timed out after {self._repository_timeout}s"
                if self._repository_timeout is not None else "Timed out"
            )
            logger.warning(f"Audit of {repository.full_name}: {message}")
            return AuditError(repository=repository, message=message, kind="timeout")
        except Exception as e:
            kind = next(
                (name for error_type, name in _ERROR_KINDS if isinstance(e, error_type)),
                "error"
            )
            if kind == "error":
                logger.error(f"Unexpected error auditing {repository.full_name}: {e}", exc_info=True)
            else:
                logger.warning(f"Could not audit {repository.full_name} ({kind}): {e}")
            return AuditError(repository=repository, message=str(e) or type(e).__name__, kind=kind)

    def _warn_on_rate_limit(self, repository_count: int) -> None:
        if self._rate_limit_probe is None:
            return
        remaining = self._rate_limit_probe()
        needed = repository_count * self._requests_per_repository
        if remaining is not None and remaining < needed:
            logger.warning(
                f"Rate limit may be exhausted: {remaining} requests remaining, "
                f"about {needed} needed for {repository_count} repositories"
            )
