"""Tests for the fan-out batch auditor."""
import asyncio
import logging
import random

import pytest
from org_compliance.application.batch_auditor import BatchAuditor
from org_compliance.domain.exceptions import (
    PermissionDeniedException,
    RateLimitException,
    RepositoryNotFoundException,
    TransientException,
)
from org_compliance.domain.models import RepositoryIdentity

from conftest import RUN_TIME, build_result


REPOSITORIES = [RepositoryIdentity("acme", f"repo-{index:02d}") for index in range(12)]

FAILURES = {
    "repo-02": RepositoryNotFoundException("gone"),
    "repo-05": PermissionDeniedException("forbidden"),
    "repo-07": TransientException("502 Bad Gateway"),
    "repo-09": RateLimitException("API rate limit exceeded"),
    "repo-11": RuntimeError("boom"),
}


def make_audit_fn(delays=None):
    """Audit function with per-repository delays and a fixed set of failures."""
    delays = delays or {}

    async def audit(repository):
        await asyncio.sleep(delays.get(repository.name, 0))
        if repository.name in FAILURES:
            raise FAILURES[repository.name]
        return build_result(repository.full_name, 40 + int(repository.name[-2:]) * 5)

    return audit


def run(coro):
    return asyncio.run(coro)


def auditor(**kwargs):
    return BatchAuditor(clock=lambda: RUN_TIME, **kwargs)


@pytest.mark.parametrize("concurrency", [1, 2, 5, 12])
def test_every_repository_is_accounted_for(concurrency):
    """results + errors always equals the number of discovered repositories."""
    batch = run(auditor().run_batch(REPOSITORIES, make_audit_fn(), concurrency=concurrency))

    assert len(batch.results) + len(batch.errors) == len(REPOSITORIES)
    seen = [r.repository for r in batch.results] + [e.repository for e in batch.errors]
    assert sorted(seen) == sorted(REPOSITORIES)


def test_order_follows_discovery_regardless_of_completion():
    """Later repositories finishing first do not change the output order."""
    rng = random.Random(7)
    delays = {repo.name: rng.uniform(0, 0.02) for repo in REPOSITORIES}
    expected = [repo for repo in REPOSITORIES if repo.name not in FAILURES]

    for concurrency in (1, 3, 12):
        batch = run(auditor().run_batch(REPOSITORIES, make_audit_fn(delays), concurrency=concurrency))
        assert [r.repository for r in batch.results] == expected
        assert [e.repository.name for e in batch.errors] == sorted(FAILURES)


def test_sequential_and_parallel_summaries_match():
    """concurrency=1 produces the same summary as parallel mode."""
    sequential = run(auditor().run_batch(REPOSITORIES, make_audit_fn(), concurrency=1))
    parallel = run(auditor().run_batch(REPOSITORIES, make_audit_fn(), concurrency=5))

    assert sequential.summary == parallel.summary
    assert sequential.summary.failed_count == len(FAILURES)


def test_failures_are_classified():
    """Each exception type maps to an error kind."""
    batch = run(auditor().run_batch(REPOSITORIES, make_audit_fn(), concurrency=4))
    kinds = {error.repository.name: error.kind for error in batch.errors}

    assert kinds == {
        "repo-02": "not_found",
        "repo-05": "permission_denied",
        "repo-07": "transient",
        "repo-09": "transient",
        "repo-11": "error",
    }


def test_concurrency_bound_is_respected():
    """No more than `concurrency` audits run at once."""
    in_flight = 0
    peak = 0

    async def audit(repository):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.005)
        in_flight -= 1
        return build_result(repository.full_name, 90)

    run(auditor().run_batch(REPOSITORIES, audit, concurrency=3))

    assert peak == 3


def test_invalid_concurrency():
    """Test that a concurrency below one is rejected."""
    with pytest.raises(ValueError):
        run(auditor().run_batch(REPOSITORIES, make_audit_fn(), concurrency=0))


def test_empty_repository_list():
    """An organization without repositories gives an empty batch."""
    batch = run(auditor().run_batch([], make_audit_fn(), concurrency=5, organization="acme"))

    assert batch.results == ()
    assert batch.errors == ()
    assert batch.summary.average_score == 0.0
    assert batch.organization == "acme"
    assert batch.timestamp == RUN_TIME


def test_slow_repository_times_out():
    """A per-repository timeout becomes an error entry of kind timeout."""
    repositories = REPOSITORIES[:3]

    async def audit(repository):
        if repository.name == "repo-01":
            await asyncio.sleep(5)
        return build_result(repository.full_name, 90)

    batch = run(auditor(repository_timeout=0.05).run_batch(repositories, audit, concurrency=3))

    assert [r.repository.name for r in batch.results] == ["repo-00", "repo-02"]
    assert [(e.repository.name, e.kind) for e in batch.errors] == [("repo-01", "timeout")]


def test_batch_deadline_cancels_unfinished_audits():
    """Audits still running at the deadline are recorded, not lost."""
    repositories = REPOSITORIES[:4]

    async def audit(repository):
        if repository.name in ("repo-01", "repo-03"):
            await asyncio.sleep(5)
        return build_result(repository.full_name, 90)

    batch = run(auditor(batch_deadline=0.1).run_batch(repositories, audit, concurrency=4))

    assert len(batch.results) + len(batch.errors) == 4
    assert [(e.repository.name, e.kind) for e in batch.errors] == [
        ("repo-01", "deadline_exceeded"),
        ("repo-03", "deadline_exceeded"),
    ]


def test_low_rate_limit_only_warns(caplog):
    """A low remaining quota is logged and the batch still runs."""
    with caplog.at_level(logging.WARNING):
        batch = run(
            auditor(rate_limit_probe=lambda: 3).run_batch(REPOSITORIES, make_audit_fn(), concurrency=4)
        )

    assert "Rate limit may be exhausted" in caplog.text
    assert len(batch.results) == len(REPOSITORIES) - len(FAILURES)
