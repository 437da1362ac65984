"""Shared builders and in-memory fakes for the test suite."""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Sequence

import pytest
from org_compliance.domain.exceptions import RepositoryNotFoundException
from org_compliance.domain.github_interface import IIssueTracker, IRepositorySource
from org_compliance.domain.models import (
    AuditResult,
    CategoryResult,
    ManagedIssue,
    OrgAuditBatch,
    RepositoryIdentity,
    RepositorySignals,
    grade_for_score,
)


RUN_TIME = datetime(2024, 3, 15, 8, 0, tzinfo=timezone.utc)


def build_result(full_name: str, score: int, categories: Dict[str, Sequence[str]] = None,
                 classification: str = "general", vulnerabilities=()) -> AuditResult:
    categories = categories or {}
    return AuditResult(
        repository=RepositoryIdentity.parse(full_name),
        score=score,
        grade=grade_for_score(score),
        categories={
            name: CategoryResult(score=score, weight=25, issues=tuple(issues))
            for name, issues in categories.items()
        },
        timestamp=RUN_TIME,
        classification=classification,
        vulnerabilities=tuple(vulnerabilities)
    )


def build_batch(results: List[AuditResult], errors=(), timestamp: datetime = RUN_TIME,
                organization: str = "acme") -> OrgAuditBatch:
    return OrgAuditBatch.create(organization, timestamp, list(results), list(errors))


@pytest.fixture
def make_result():
    return build_result


@pytest.fixture
def make_batch():
    return build_batch


class FakeSource(IRepositorySource):
    """Repository source serving signals from a dict."""

    def __init__(self, signals: Dict[str, RepositorySignals], remaining=None):
        self.signals = signals
        self.remaining = remaining
        self.closed = False

    @property
    def rate_limit_remaining(self):
        return self.remaining

    async def discover_repositories(self, owner: str) -> List[RepositoryIdentity]:
        return [RepositoryIdentity.parse(name) for name in self.signals]

    async def fetch_repository_signals(self, repository: RepositoryIdentity) -> RepositorySignals:
        if repository.full_name not in self.signals:
            raise RepositoryNotFoundException(f"{repository.full_name} not found")
        return self.signals[repository.full_name]

    async def close(self) -> None:
        self.closed = True


class FakeIssueTracker(IIssueTracker):
    """Keeps issues in memory and records every write."""

    def __init__(self):
        self.issues: List[ManagedIssue] = []
        self.closed: List[int] = []
        self.comments: Dict[int, List[str]] = {}
        self.writes: List[str] = []
        self._next_number = 1

    def add_open_issue(self, number: int, created_at: datetime, labels=("automation", "health-monitor")):
        issue = ManagedIssue(
            node_id=f"I_{number}",
            number=number,
            title="Repository Health Monitor",
            body="",
            created_at=created_at,
            url=f"https://github.com/acme/tracker/issues/{number}",
            labels=tuple(labels)
        )
        self.issues.append(issue)
        self._next_number = max(self._next_number, number + 1)
        return issue

    @property
    def open_issues(self) -> List[ManagedIssue]:
        return [issue for issue in self.issues if issue.number not in self.closed]

    async def find_open_issues(self, repository, labels):
        return [issue for issue in self.open_issues if set(labels).issubset(issue.labels)]

    async def create_issue(self, repository, title, body, labels):
        issue = ManagedIssue(
            node_id=f"I_{self._next_number}",
            number=self._next_number,
            title=title,
            body=body,
            created_at=RUN_TIME + timedelta(minutes=self._next_number),
            url=f"https://github.com/{repository.full_name}/issues/{self._next_number}",
            labels=tuple(labels)
        )
        self._next_number += 1
        self.issues.append(issue)
        self.writes.append("create")
        return issue

    async def update_issue_body(self, issue, body):
        updated = ManagedIssue(
            node_id=issue.node_id,
            number=issue.number,
            title=issue.title,
            body=body,
            created_at=issue.created_at,
            url=issue.url,
            labels=issue.labels
        )
        self.issues = [updated if item.number == issue.number else item for item in self.issues]
        self.writes.append("update")
        return updated

    async def close_issue(self, issue, comment):
        self.comments.setdefault(issue.number, []).append(comment)
        self.closed.append(issue.number)
        self.writes.append("close")


@pytest.fixture
def issue_tracker():
    return FakeIssueTracker()


@pytest.fixture
def fake_source_factory():
    return FakeSource
