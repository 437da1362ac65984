"""Trend analysis between the current batch and the nearest prior snapshot."""
import logging
from typing import Dict, List, Optional

from org_compliance.domain.history_interface import IHistoryStore
from org_compliance.domain.models import (
    AggregateTrend,
    HistoricalSnapshot,
    OrgAuditBatch,
    TrendDelta,
    TrendDirection,
    TrendReport,
)


logger = logging.getLogger(__name__)


def _direction(delta: float) -> TrendDirection:
    if delta > 0:
        return TrendDirection.IMPROVED
    if delta < 0:
        return TrendDirection.DECLINED
    return TrendDirection.STABLE


def diff(current: OrgAuditBatch, prior: HistoricalSnapshot) -> TrendReport:
    """Compare two batches repository by repository and in aggregate.

    Aggregate deltas come straight from the two summaries rather than from
    the per-repository deltas, so repositories missing on one side still
    count at the aggregate level.

    Args:
        current: The batch of this run
        prior: The nearest earlier snapshot

    Returns:
        TrendReport with per-repository deltas in current discovery order
    """
    previous_scores: Dict[str, float] = {
        result.repository.full_name: result.score for result in prior.batch.results
    }
    current_names = {result.repository.full_name for result in current.results}
    failed_names = {error.repository.full_name for error in current.errors}
    previously_failed = {error.repository.full_name for error in prior.batch.errors}

    deltas: List[TrendDelta] = []
    new_repositories = []
    recovered = []
    for result in current.results:
        name = result.repository.full_name
        if name not in previous_scores:
            if name in previously_failed:
                recovered.append(result.repository)
            else:
                new_repositories.append(result.repository)
            continue
        delta = round(result.score - previous_scores[name], 1)
        deltas.append(TrendDelta(
            repository=result.repository,
            previous_score=previous_scores[name],
            current_score=result.score,
            score_delta=delta,
            direction=_direction(delta)
        ))

    removed = []
    unavailable = []
    for result in prior.batch.results:
        name = result.repository.full_name
        if name in current_names:
            continue
        if name in failed_names:
            unavailable.append(result.repository)
        else:
            removed.append(result.repository)

    aggregate = AggregateTrend(
        avg_score_delta=round(
            current.summary.average_score - prior.batch.summary.average_score, 1
        ),
        unhealthy_count_delta=(
            current.summary.unhealthy_count - prior.batch.summary.unhealthy_count
        )
    )

    return TrendReport(
        prior_run_date=prior.run_date,
        per_repository=tuple(deltas),
        aggregate=aggregate,
        new_repositories=tuple(new_repositories),
        removed_repositories=tuple(removed),
        unavailable_repositories=tuple(unavailable),
        recovered_repositories=tuple(recovered)
    )


def analyze(current: OrgAuditBatch, store: IHistoryStore) -> Optional[TrendReport]:
    """Diff against the nearest snapshot before the current run date.

    Returns:
        The trend report, or None when there is no earlier snapshot

    Raises:
        StorageIOException: When the history cannot be read
    """
    prior = store.load_nearest_prior(current.run_date)
    if prior is None:
        logger.info("No historical data available for trend analysis")
        return None

    report = diff(current, prior)
    logger.info(
        f"Compared with snapshot from {report.prior_run_date}: "
        f"average score {report.aggregate.avg_score_delta:+.1f}, "
        f"unhealthy {report.aggregate.unhealthy_count_delta:+d}"
    )
    return report
