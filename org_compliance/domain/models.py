"""Domain models representing core compliance entities."""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


HEALTHY_THRESHOLD = 70
COMPLIANT_THRESHOLD = 80
CRITICAL_THRESHOLD = 50

SEVERITIES = ("critical", "high", "moderate", "low")

# Community health file names, compared case-insensitively
README_NAMES = ("README.md", "README.rst", "README.txt", "README")
LICENSE_NAMES = ("LICENSE", "LICENSE.md", "LICENSE.txt", "COPYING")
CONTRIBUTING_NAMES = ("CONTRIBUTING.md", "CONTRIBUTING.rst", "CONTRIBUTING.txt", "CONTRIBUTING")
SECURITY_POLICY_NAMES = ("SECURITY.md", "SECURITY.rst", "SECURITY.txt")
CODE_OF_CONDUCT_NAMES = ("CODE_OF_CONDUCT.md", "CODE_OF_CONDUCT.rst", "CODE_OF_CONDUCT.txt")
DEPENDABOT_NAMES = ("dependabot.yml", "dependabot.yaml")
# Directories GitHub searches for community health files
COMMUNITY_DIRS = ("", ".github", "docs")


def contains_any(entries, names) -> bool:
    """Whether any of ``names`` appears among ``entries``, ignoring case."""
    present = {entry.lower() for entry in entries}
    return any(name.lower() in present for name in names)


def grade_for_score(score: float) -> str:
    """Convert a 0-100 score into a letter grade."""
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True, order=True)
class RepositoryIdentity:
    """Immutable key for a repository (owner/name)."""
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        """Returns the full repository name (owner/name)."""
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> 'RepositoryIdentity':
        """Build an identity from an ``owner/name`` string.

        Raises:
            ValueError: If the string is not of the form owner/name
        """
        owner, _, name = full_name.strip().partition("/")
        if not owner or not name or "/" in name:
            raise ValueError(f"Expected 'owner/name', got {full_name!r}")
        return cls(owner=owner, name=name)

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class VulnerabilityAlert:
    """An open dependency vulnerability reported for a repository."""
    package: str
    severity: str
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"package": self.package, "severity": self.severity, "summary": self.summary}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'VulnerabilityAlert':
        return cls(
            package=data["package"],
            severity=data["severity"],
            summary=data.get("summary", "")
        )


@dataclass(frozen=True)
class RepositorySignals:
    """Raw facts about a repository, gathered remotely or from a checkout.

    The scorer turns these into an AuditResult; the categorizer reads
    ``keywords``, ``name`` and ``description``.
    """
    repository: RepositoryIdentity
    description: str = ""
    topics: Tuple[str, ...] = ()
    language: Optional[str] = None
    is_archived: bool = False
    is_private: bool = False
    updated_at: Optional[datetime] = None
    default_branch: Optional[str] = None
    has_readme: bool = False
    has_license: bool = False
    has_contributing: bool = False
    has_security_policy: bool = False
    has_code_of_conduct: bool = False
    has_dependabot: bool = False
    # None means protection could not be observed (e.g. local checkout)
    branch_protection_rules: Optional[int] = 0
    workflow_files: Tuple[str, ...] = ()
    vulnerabilities: Tuple[VulnerabilityAlert, ...] = ()

    @property
    def name(self) -> str:
        return self.repository.name

    @property
    def keywords(self) -> Tuple[str, ...]:
        return self.topics


@dataclass(frozen=True)
class CategoryResult:
    """Score breakdown for one compliance category."""
    score: int
    weight: int
    issues: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "weight": self.weight,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CategoryResult':
        return cls(
            score=data["score"],
            weight=data["weight"],
            issues=tuple(data.get("issues", ())),
            recommendations=tuple(data.get("recommendations", ()))
        )


@dataclass(frozen=True)
class AuditResult:
    """Outcome of auditing one repository. Never mutated after creation."""
    repository: RepositoryIdentity
    score: int
    grade: str
    categories: Mapping[str, CategoryResult]
    timestamp: datetime
    classification: str = "general"
    vulnerabilities: Tuple[VulnerabilityAlert, ...] = ()
    default_branch: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.score >= HEALTHY_THRESHOLD

    @property
    def issue_count(self) -> int:
        return sum(len(category.issues) for category in self.categories.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository.full_name,
            "score": self.score,
            "grade": self.grade,
            "classification": self.classification,
            "timestamp": self.timestamp.isoformat(),
            "categories": {
                name: category.to_dict() for name, category in self.categories.items()
            },
            "vulnerabilities": [alert.to_dict() for alert in self.vulnerabilities],
            "default_branch": self.default_branch,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AuditResult':
        return cls(
            repository=RepositoryIdentity.parse(data["repository"]),
            score=data["score"],
            grade=data["grade"],
            categories={
                name: CategoryResult.from_dict(category)
                for name, category in data.get("categories", {}).items()
            },
            timestamp=_parse_timestamp(data["timestamp"]),
            classification=data.get("classification", "general"),
            vulnerabilities=tuple(
                VulnerabilityAlert.from_dict(alert)
                for alert in data.get("vulnerabilities", ())
            ),
            default_branch=data.get("default_branch")
        )


@dataclass(frozen=True)
class AuditError:
    """A repository whose audit failed, with the failure kind."""
    repository: RepositoryIdentity
    message: str
    kind: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository.full_name,
            "message": self.message,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AuditError':
        return cls(
            repository=RepositoryIdentity.parse(data["repository"]),
            message=data["message"],
            kind=data.get("kind", "error")
        )


@dataclass(frozen=True)
class BatchSummary:
    """Aggregate statistics for a batch."""
    average_score: float
    healthy_count: int
    unhealthy_count: int
    total_repositories: int
    failed_count: int

    @classmethod
    def from_outcomes(
        cls,
        results: Tuple[AuditResult, ...],
        errors: Tuple[AuditError, ...]
    ) -> 'BatchSummary':
        """Compute the summary from successful results and failures.

        The average covers successful results only and is rounded to one
        decimal so persisted and recomputed values compare equal.
        """
        average = (
            round(sum(result.score for result in results) / len(results), 1)
            if results else 0.0
        )
        healthy = sum(1 for result in results if result.is_healthy)
        return cls(
            average_score=average,
            healthy_count=healthy,
            unhealthy_count=len(results) - healthy,
            total_repositories=len(results) + len(errors),
            failed_count=len(errors)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "average_score": self.average_score,
            "healthy_count": self.healthy_count,
            "unhealthy_count": self.unhealthy_count,
            "total_repositories": self.total_repositories,
            "failed_count": self.failed_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BatchSummary':
        return cls(
            average_score=data["average_score"],
            healthy_count=data["healthy_count"],
            unhealthy_count=data["unhealthy_count"],
            total_repositories=data["total_repositories"],
            failed_count=data["failed_count"]
        )


@dataclass(frozen=True)
class OrgAuditBatch:
    """All audit results and failures of one organization-wide run.

    Every discovered repository appears in exactly one of ``results`` or
    ``errors``; both keep discovery order.
    """
    organization: str
    timestamp: datetime
    results: Tuple[AuditResult, ...]
    errors: Tuple[AuditError, ...]
    summary: BatchSummary

    @classmethod
    def create(
        cls,
        organization: str,
        timestamp: datetime,
        results: List[AuditResult],
        errors: List[AuditError]
    ) -> 'OrgAuditBatch':
        results = tuple(results)
        errors = tuple(errors)
        return cls(
            organization=organization,
            timestamp=timestamp,
            results=results,
            errors=errors,
            summary=BatchSummary.from_outcomes(results, errors)
        )

    @property
    def run_date(self) -> date:
        return self.timestamp.date()

    @property
    def unhealthy_results(self) -> Tuple[AuditResult, ...]:
        return tuple(result for result in self.results if not result.is_healthy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "organization": self.organization,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary.to_dict(),
            "results": [result.to_dict() for result in self.results],
            "errors": [error.to_dict() for error in self.errors],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'OrgAuditBatch':
        return cls(
            organization=data["organization"],
            timestamp=_parse_timestamp(data["timestamp"]),
            results=tuple(AuditResult.from_dict(item) for item in data.get("results", ())),
            errors=tuple(AuditError.from_dict(item) for item in data.get("errors", ())),
            summary=BatchSummary.from_dict(data["summary"])
        )


@dataclass(frozen=True)
class HistoricalSnapshot:
    """A persisted batch indexed by its run date."""
    run_date: date
    key: str
    batch: OrgAuditBatch


class TrendDirection(str, Enum):
    IMPROVED = "improved"
    DECLINED = "declined"
    STABLE = "stable"


@dataclass(frozen=True)
class TrendDelta:
    """Score change for a repository present in both batches."""
    repository: RepositoryIdentity
    previous_score: float
    current_score: float
    score_delta: float
    direction: TrendDirection


@dataclass(frozen=True)
class AggregateTrend:
    avg_score_delta: float
    unhealthy_count_delta: int


@dataclass(frozen=True)
class TrendReport:
    """Comparison of the current batch with the nearest prior snapshot."""
    prior_run_date: date
    per_repository: Tuple[TrendDelta, ...]
    aggregate: AggregateTrend
    new_repositories: Tuple[RepositoryIdentity, ...] = ()
    removed_repositories: Tuple[RepositoryIdentity, ...] = ()
    unavailable_repositories: Tuple[RepositoryIdentity, ...] = ()
    # Failed in the prior run, audited now
    recovered_repositories: Tuple[RepositoryIdentity, ...] = ()

    @property
    def improved(self) -> Tuple[TrendDelta, ...]:
        return tuple(d for d in self.per_repository if d.direction is TrendDirection.IMPROVED)

    @property
    def declined(self) -> Tuple[TrendDelta, ...]:
        return tuple(d for d in self.per_repository if d.direction is TrendDirection.DECLINED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prior_run_date": self.prior_run_date.isoformat(),
            "aggregate": {
                "avg_score_delta": self.aggregate.avg_score_delta,
                "unhealthy_count_delta": self.aggregate.unhealthy_count_delta,
            },
            "per_repository": [
                {
                    "repository": delta.repository.full_name,
                    "previous_score": delta.previous_score,
                    "current_score": delta.current_score,
                    "score_delta": delta.score_delta,
                    "direction": delta.direction.value,
                }
                for delta in self.per_repository
            ],
            "new_repositories": [r.full_name for r in self.new_repositories],
            "removed_repositories": [r.full_name for r in self.removed_repositories],
            "unavailable_repositories": [r.full_name for r in self.unavailable_repositories],
            "recovered_repositories": [r.full_name for r in self.recovered_repositories],
        }


@dataclass(frozen=True)
class PriorityItem:
    """One remediation-worthy finding with its computed priority."""
    repository: RepositoryIdentity
    category: str
    description: str
    impact: int
    effort: int
    score_multiplier: float
    priority: float
    repository_score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository.full_name,
            "category": self.category,
            "description": self.description,
            "impact": self.impact,
            "effort": self.effort,
            "score_multiplier": self.score_multiplier,
            "priority": self.priority,
            "repository_score": self.repository_score,
        }


@dataclass(frozen=True)
class BatchFixSuggestion:
    category: str
    action: str
    command: str
    affected_repositories: int


@dataclass(frozen=True)
class PriorityGroup:
    """Priority items bucketed by category for batch remediation."""
    category: str
    count: int
    average_priority: float
    repositories: Tuple[RepositoryIdentity, ...]
    suggestion: Optional[BatchFixSuggestion] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "category": self.category,
            "count": self.count,
            "average_priority": self.average_priority,
            "repositories": [r.full_name for r in self.repositories],
        }
        if self.suggestion:
            data["suggestion"] = {
                "action": self.suggestion.action,
                "command": self.suggestion.command,
                "affected_repositories": self.suggestion.affected_repositories,
            }
        return data


@dataclass(frozen=True)
class PrioritizationResult:
    ranked: Tuple[PriorityItem, ...]
    total_items: int
    groups: Optional[Tuple[PriorityGroup, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total_items": self.total_items,
            "ranked": [item.to_dict() for item in self.ranked],
        }
        if self.groups is not None:
            data["groups"] = [group.to_dict() for group in self.groups]
        return data


@dataclass(frozen=True)
class ManagedIssue:
    """The external tracking issue, as last read from GitHub."""
    node_id: str
    number: int
    title: str
    body: str
    created_at: datetime
    url: str = ""
    labels: Tuple[str, ...] = field(default=())


class ReconcileAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CLOSED = "closed"
    NOOP = "noop"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReconcileOutcome:
    action: ReconcileAction
    issue: Optional[ManagedIssue] = None
    duplicate_numbers: Tuple[int, ...] = ()
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "issue_number": self.issue.number if self.issue else None,
            "issue_url": self.issue.url if self.issue else None,
            "duplicate_numbers": list(self.duplicate_numbers),
            "reason": self.reason,
        }
