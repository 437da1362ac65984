"""Per-repository health scoring over repository signals."""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from org_compliance.application.categorizer import categorize
from org_compliance.domain.github_interface import IRepositoryAuditor, IRepositorySource
from org_compliance.domain.models import (
    AuditResult,
    CategoryResult,
    RepositoryIdentity,
    RepositorySignals,
    grade_for_score,
)


logger = logging.getLogger(__name__)


CATEGORY_WEIGHTS = {
    "security": 30,
    "documentation": 25,
    "cicd": 25,
    "branch-protection": 20,
}

CI_WORKFLOW_HINTS = ("ci", "test", "build", "lint")
SECURITY_WORKFLOW_HINTS = ("codeql", "security", "scan", "dependency-review")


def _score_documentation(signals: RepositorySignals) -> CategoryResult:
    score = 0
    issues: List[str] = []
    recommendations: List[str] = []

    checks = (
        (signals.has_readme, 40, "Missing README.md", "Add a README.md describing purpose and usage"),
        (signals.has_license, 25, "Missing LICENSE file", "Choose and add a LICENSE file"),
        (signals.has_contributing, 15, "Missing CONTRIBUTING.md guidelines",
         "Add contributing guidelines"),
        (signals.has_code_of_conduct, 10, "Missing CODE_OF_CONDUCT.md",
         "Adopt a code of conduct"),
        (len(signals.description or "") > 10, 10, "Repository description is missing or too short",
         "Add a comprehensive repository description"),
    )
    for passed, points, issue, recommendation in checks:
        if passed:
            score += points
        else:
            issues.append(issue)
            recommendations.append(recommendation)

    return CategoryResult(score, CATEGORY_WEIGHTS["documentation"], tuple(issues), tuple(recommendations))


def _score_security(signals: RepositorySignals) -> CategoryResult:
    score = 0
    issues: List[str] = []
    recommendations: List[str] = []

    if signals.has_security_policy:
        score += 40
    else:
        issues.append("Missing SECURITY.md security policy")
        recommendations.append("Add SECURITY.md with a vulnerability disclosure process")

    if signals.has_dependabot:
        score += 30
    else:
        issues.append("Dependabot security updates are not configured")
        recommendations.append("Add .github/dependabot.yml")

    severe = [a for a in signals.vulnerabilities if a.severity in ("critical", "high")]
    if not signals.vulnerabilities:
        score += 30
    else:
        if not severe:
            score += 15
        issues.append(
            f"{len(signals.vulnerabilities)} open vulnerability alerts "
            f"({len(severe)} critical or high)"
        )
        recommendations.append("Review and update vulnerable dependencies")

    return CategoryResult(score, CATEGORY_WEIGHTS["security"], tuple(issues), tuple(recommendations))


def _score_branch_protection(signals: RepositorySignals) -> CategoryResult:
    weight = CATEGORY_WEIGHTS["branch-protection"]
    if signals.branch_protection_rules is None:
        return CategoryResult(
            50, weight,
            ("Branch protection status could not be verified",),
            ("Run the audit with a token to verify branch protection",)
        )
    if signals.branch_protection_rules > 0:
        return CategoryResult(100, weight)
    return CategoryResult(
        0, weight,
        ("No branch protection rules on the default branch",),
        ("Enable branch protection with required reviews and status checks",)
    )


def _score_cicd(signals: RepositorySignals) -> CategoryResult:
    weight = CATEGORY_WEIGHTS["cicd"]
    workflows = [name.lower() for name in signals.workflow_files]
    if not workflows:
        return CategoryResult(
            0, weight,
            ("No GitHub Actions workflows found",),
            ("Add a CI workflow that runs tests on every pull request",)
        )

    score = 60
    issues: List[str] = []
    recommendations: List[str] = []
    if any(hint in name for name in workflows for hint in CI_WORKFLOW_HINTS):
        score += 20
    else:
        issues.append("No CI workflow running tests")
        recommendations.append("Add an automated testing workflow")
    if any(hint in name for name in workflows for hint in SECURITY_WORKFLOW_HINTS):
        score += 20
    else:
        issues.append("No security scanning workflow (e.g. CodeQL)")
        recommendations.append("Add a CodeQL or dependency review workflow")

    return CategoryResult(score, weight, tuple(issues), tuple(recommendations))


def weighted_score(categories: Dict[str, CategoryResult]) -> int:
    """Weighted mean of category scores, rounded to an integer."""
    total_weight = sum(category.weight for category in categories.values())
    if total_weight == 0:
        return 0
    total = sum(category.score * category.weight for category in categories.values())
    return int(round(total / total_weight))


def score_signals(
    signals: RepositorySignals,
    timestamp: datetime,
    classify: Callable[[RepositorySignals], str] = categorize
) -> AuditResult:
    """Turn repository signals into an AuditResult.

    Args:
        signals: Facts collected for the repository
        timestamp: Audit time recorded on the result
        classify: Categorizer used for ``classification``

    Returns:
        AuditResult with documentation, security, branch-protection and
        cicd categories
    """
    categories = {
        "documentation": _score_documentation(signals),
        "security": _score_security(signals),
        "branch-protection": _score_branch_protection(signals),
        "cicd": _score_cicd(signals),
    }
    score = weighted_score(categories)
    return AuditResult(
        repository=signals.repository,
        score=score,
        grade=grade_for_score(score),
        categories=categories,
        timestamp=timestamp,
        classification=classify(signals),
        vulnerabilities=signals.vulnerabilities,
        default_branch=signals.default_branch
    )


class HealthScorer(IRepositoryAuditor):
    """Audits a repository by fetching its signals from a source and scoring them."""

    def __init__(
        self,
        source: IRepositorySource,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the scorer.

        Args:
            source: Where repository signals are read from
            clock: Returns the audit timestamp (defaults to UTC now)
        """
        self._source = source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def audit(self, repository: RepositoryIdentity) -> AuditResult:
        signals = await self._source.fetch_repository_signals(repository)
        result = score_signals(signals, self._clock())
        logger.info(f"[{result.grade}] {repository.full_name}: {result.score}/100")
        return result
