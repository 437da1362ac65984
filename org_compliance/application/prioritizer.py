"""Prioritization of audit findings by impact, effort and repository health.

Each issue of an unhealthy repository becomes a PriorityItem with

    priority = (impact * 2 - effort) * score_multiplier

Equal priorities are ordered by repository full name, then category, then
description, so the ranking never depends on discovery order.
"""
import logging
import re
from collections import OrderedDict
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from org_compliance.domain.models import (
    AuditResult,
    BatchFixSuggestion,
    OrgAuditBatch,
    PrioritizationResult,
    PriorityGroup,
    PriorityItem,
    RepositoryIdentity,
)


logger = logging.getLogger(__name__)


DEFAULT_TOP_N = 10


class Weights(NamedTuple):
    impact: int
    effort: int


CATEGORY_WEIGHTS: Dict[str, Weights] = {
    "security": Weights(impact=10, effort=6),
    "branch-protection": Weights(impact=9, effort=4),
    "cicd": Weights(impact=7, effort=5),
    "documentation": Weights(impact=6, effort=2),
    "code-quality": Weights(impact=4, effort=2),
}
OTHER_CATEGORY = "other"
OTHER_WEIGHTS = Weights(impact=5, effort=5)

# Fallback for categories without fixed weights, matched against the issue text.
ISSUE_TEXT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("security", "vulnerability"), "security"),
    (("readme", "license"), "documentation"),
    (("branch protection",), "branch-protection"),
    (("workflow", "ci/cd"), "cicd"),
    (("documentation", "contributing"), "documentation"),
    (("linting", "formatting"), "code-quality"),
)

BRANCH_PROTECTION_FIELDS = (
    "-F enforce_admins=true -F required_status_checks=null -F restrictions=null "
    "-F 'required_pull_request_reviews[required_approving_review_count]=1'"
)

CommandRenderer = Callable[[RepositoryIdentity, Optional[str]], str]


def _protect_branch(repository: RepositoryIdentity, branch: Optional[str]) -> str:
    if not branch:
        return f"gh browse --settings --repo {repository.full_name}"
    return (
        f"gh api -X PUT repos/{repository.full_name}/branches/{branch}/protection "
        f"{BRANCH_PROTECTION_FIELDS}"
    )


BATCH_FIXES: Dict[str, Tuple[str, CommandRenderer]] = {
    "documentation": (
        "Generate missing documentation files across repositories",
        lambda repository, branch: "org-compliance --auto-fix --target all",
    ),
    "security": (
        "Enable Dependabot alerts across repositories",
        lambda repository, branch: f"gh api -X PUT repos/{repository.full_name}/vulnerability-alerts",
    ),
    "branch-protection": (
        "Require reviewed pull requests on default branches",
        _protect_branch,
    ),
    "cicd": (
        "Add a CI workflow from GitHub's starter workflows",
        lambda repository, branch: f"https://github.com/{repository.full_name}/actions/new",
    ),
    "code-quality": (
        "Roll out shared linting and formatting configuration",
        lambda repository, branch: "pre-commit autoupdate && pre-commit run --all-files",
    ),
}
DEFAULT_BATCH_FIX: Tuple[str, CommandRenderer] = (
    "Review and resolve the remaining findings",
    lambda repository, branch: "org-compliance --org-health --prioritize",
)


def normalize_category(name: str) -> str:
    """``branchProtection`` / ``branch_protection`` -> ``branch-protection``."""
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"-\1", name)
    return name.replace("_", "-").lower()


def classify_issue(category: str, description: str) -> Tuple[str, Weights]:
    """Resolve the category and weights used for one issue."""
    normalized = normalize_category(category)
    if normalized in CATEGORY_WEIGHTS:
        return normalized, CATEGORY_WEIGHTS[normalized]
    text = description.lower()
    for needles, resolved in ISSUE_TEXT_RULES:
        if any(needle in text for needle in needles):
            return resolved, CATEGORY_WEIGHTS[resolved]
    return OTHER_CATEGORY, OTHER_WEIGHTS


def score_multiplier(repository_score: float) -> float:
    """Worse repositories get their issues boosted."""
    if repository_score < 50:
        return 1.5
    if repository_score < 60:
        return 1.2
    return 1.0


def compute_priority(impact: int, effort: int, repository_score: float) -> float:
    """Priority for a finding, rounded to one decimal and never negative."""
    priority = (impact * 2 - effort) * score_multiplier(repository_score)
    return round(max(0.0, priority), 1)


def _items_for(result: AuditResult) -> List[PriorityItem]:
    items = []
    multiplier = score_multiplier(result.score)
    for category_name, category in result.categories.items():
        for description in category.issues:
            category_key, weights = classify_issue(category_name, description)
            items.append(PriorityItem(
                repository=result.repository,
                category=category_key,
                description=description,
                impact=weights.impact,
                effort=weights.effort,
                score_multiplier=multiplier,
                priority=compute_priority(weights.impact, weights.effort, result.score),
                repository_score=result.score
            ))
    return items


def _rank_key(item: PriorityItem):
    return (-item.priority, item.repository.full_name, item.category, item.description)


def _batch_command(
    render: CommandRenderer,
    repositories: Sequence[RepositoryIdentity],
    branches: Mapping[RepositoryIdentity, Optional[str]]
) -> str:
    """One line per affected repository, identical lines collapsed."""
    lines: List[str] = []
    for repository in repositories:
        line = render(repository, branches.get(repository))
        if line not in lines:
            lines.append(line)
    return "\n".join(lines)


def group_items(
    items: List[PriorityItem],
    branches: Optional[Mapping[RepositoryIdentity, Optional[str]]] = None
) -> Tuple[PriorityGroup, ...]:
    """Bucket items by category with a batch-fix suggestion per bucket.

    ``branches`` maps repositories to their default branch for commands
    that act on a branch.
    """
    buckets: Dict[str, List[PriorityItem]] = OrderedDict()
    for item in items:
        buckets.setdefault(item.category, []).append(item)

    groups = []
    for category, members in buckets.items():
        repositories = tuple(sorted({item.repository for item in members}))
        action, render = BATCH_FIXES.get(category, DEFAULT_BATCH_FIX)
        groups.append(PriorityGroup(
            category=category,
            count=len(members),
            average_priority=round(sum(item.priority for item in members) / len(members), 1),
            repositories=repositories,
            suggestion=BatchFixSuggestion(
                category=category,
                action=action,
                command=_batch_command(render, repositories, branches or {}),
                affected_repositories=len(repositories)
            )
        ))

    groups.sort(key=lambda group: (-group.average_priority, group.category))
    return tuple(groups)


def prioritize(
    batch: OrgAuditBatch,
    top_n: Optional[int] = DEFAULT_TOP_N,
    group_by_similarity: bool = False
) -> PrioritizationResult:
    """Rank the findings of all unhealthy repositories.

    Args:
        batch: Completed audit batch
        top_n: Keep only the first N ranked items (None keeps all)
        group_by_similarity: Also bucket all items by category

    Returns:
        PrioritizationResult with ranked items and optional groups
    """
    items: List[PriorityItem] = []
    for result in batch.unhealthy_results:
        items.extend(_items_for(result))

    items.sort(key=_rank_key)
    ranked = items if top_n is None else items[:top_n]
    groups = None
    if group_by_similarity:
        branches = {result.repository: result.default_branch for result in batch.unhealthy_results}
        groups = group_items(items, branches)

    logger.info(
        f"Prioritized {len(items)} issues across "
        f"{len(batch.unhealthy_results)} unhealthy repositories"
    )
    return PrioritizationResult(ranked=tuple(ranked), total_items=len(items), groups=groups)
