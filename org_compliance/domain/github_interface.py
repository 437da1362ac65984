"""GitHub interfaces (ports) for repository data and the managed issue.

This is the anti-corruption layer that shields the domain from GitHub API specifics.
"""
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional, Sequence
from org_compliance.domain.models import (
    AuditResult,
    ManagedIssue,
    RepositoryIdentity,
    RepositorySignals,
)


class IRepositorySource(ABC):
    """Abstract interface for discovering repositories and reading their signals."""

    @abstractmethod
    async def discover_repositories(self, owner: str) -> List[RepositoryIdentity]:
        """List the repositories owned by an organization or user.

        Args:
            owner: Organization or user login

        Returns:
            Repository identities in a stable order

        Raises:
            DiscoveryException: When the listing cannot be produced
        """
        pass

    @abstractmethod
    async def fetch_repository_signals(self, repository: RepositoryIdentity) -> RepositorySignals:
        """Collect the facts the health scorer needs for one repository.

        Raises:
            RepositoryNotFoundException: Repository is missing
            PermissionDeniedException: Token cannot read the repository
            TransientException: Network or server failure
        """
        pass

    @property
    def rate_limit_remaining(self) -> Optional[int]:
        """Last observed remaining API quota, or None if not applicable."""
        return None

    async def close(self) -> None:
        """Close any open connections."""
        pass


class IIssueTracker(ABC):
    """Abstract interface for the issue operations the reconciler needs."""

    @abstractmethod
    async def find_open_issues(
        self,
        repository: RepositoryIdentity,
        labels: Sequence[str]
    ) -> List[ManagedIssue]:
        """Return open issues carrying every label in ``labels``."""
        pass

    @abstractmethod
    async def create_issue(
        self,
        repository: RepositoryIdentity,
        title: str,
        body: str,
        labels: Sequence[str]
    ) -> ManagedIssue:
        pass

    @abstractmethod
    async def update_issue_body(self, issue: ManagedIssue, body: str) -> ManagedIssue:
        pass

    @abstractmethod
    async def close_issue(self, issue: ManagedIssue, comment: str) -> None:
        """Post ``comment`` on the issue, then close it."""
        pass


class IRepositoryAuditor(ABC):
    """Per-repository auditor: scores one repository."""

    @abstractmethod
    async def audit(self, repository: RepositoryIdentity) -> AuditResult:
        pass


class IFileCommitter(ABC):
    """Writes files to a repository's default branch in a single commit."""

    @abstractmethod
    async def commit_files(
        self,
        repository: RepositoryIdentity,
        files: Mapping[str, str],
        message: str
    ) -> str:
        """Commit ``files`` (path -> text) and return the commit URL or id."""
        pass
