"""Tests for the prioritization engine."""
import dataclasses

from org_compliance.application.prioritizer import (
    CATEGORY_WEIGHTS,
    classify_issue,
    compute_priority,
    normalize_category,
    prioritize,
    score_multiplier,
)

from conftest import build_batch, build_result


def test_priority_formula():
    """impact 9, effort 3 on a repository scoring 45 gives 22.5."""
    assert score_multiplier(45) == 1.5
    assert compute_priority(9, 3, 45) == 22.5


def test_multiplier_bands():
    """Test the score multiplier boundaries."""
    assert score_multiplier(49) == 1.5
    assert score_multiplier(50) == 1.2
    assert score_multiplier(59) == 1.2
    assert score_multiplier(60) == 1.0


def test_priority_is_never_negative():
    """Effort larger than twice the impact floors at zero."""
    assert compute_priority(1, 5, 40) == 0.0


def test_category_normalization():
    """camelCase and snake_case keys map to the fixed weight table."""
    assert normalize_category("branchProtection") == "branch-protection"
    assert normalize_category("branch_protection") == "branch-protection"
    assert classify_issue("branchProtection", "anything") == (
        "branch-protection", CATEGORY_WEIGHTS["branch-protection"]
    )


def test_unknown_category_falls_back_to_issue_text():
    """Test classification of issues from categories without weights."""
    assert classify_issue("misc", "Known vulnerability in lodash")[0] == "security"
    assert classify_issue("misc", "Missing README")[0] == "documentation"
    assert classify_issue("misc", "No linting configured")[0] == "code-quality"
    category, weights = classify_issue("misc", "Something else entirely")
    assert category == "other"
    assert (weights.impact, weights.effort) == (5, 5)


def test_only_unhealthy_repositories_are_ranked():
    """Healthy repositories contribute no items."""
    batch = build_batch([
        build_result("acme/good", 85, {"documentation": ["Missing CODE_OF_CONDUCT.md"]}),
        build_result("acme/bad", 45, {"security": ["Missing SECURITY.md security policy"]}),
    ])

    result = prioritize(batch)

    assert result.total_items == 1
    item = result.ranked[0]
    assert item.repository.full_name == "acme/bad"
    assert (item.impact, item.effort, item.score_multiplier) == (10, 6, 1.5)
    assert item.priority == 21.0


def test_ranking_and_tie_break():
    """Higher priority first; ties go by repository, category, description."""
    batch = build_batch([
        build_result("acme/zeta", 65, {"documentation": ["Missing README.md", "Missing LICENSE file"]}),
        build_result("acme/alpha", 65, {"documentation": ["Missing README.md"]}),
        build_result("acme/mid", 55, {"security": ["Missing SECURITY.md security policy"]}),
    ])

    result = prioritize(batch, top_n=None)

    assert [(i.repository.name, i.description, i.priority) for i in result.ranked] == [
        ("mid", "Missing SECURITY.md security policy", 16.8),
        ("alpha", "Missing README.md", 10.0),
        ("zeta", "Missing LICENSE file", 10.0),
        ("zeta", "Missing README.md", 10.0),
    ]


def test_ranking_does_not_depend_on_input_order():
    """Reversing discovery order gives the same ranking."""
    results = [
        build_result(f"acme/repo-{n}", 40 + n, {"cicd": ["No GitHub Actions workflows found"]})
        for n in range(6)
    ]

    forward = prioritize(build_batch(results), top_n=None)
    backward = prioritize(build_batch(list(reversed(results))), top_n=None)

    assert forward.ranked == backward.ranked


def test_top_n_truncates():
    """Test the ranked list limit."""
    batch = build_batch([
        build_result(f"acme/repo-{n}", 40, {"documentation": ["Missing README.md"]})
        for n in range(15)
    ])

    result = prioritize(batch, top_n=10)

    assert len(result.ranked) == 10
    assert result.total_items == 15
    assert result.groups is None


def test_group_by_similarity():
    """Items are bucketed by category with one batch fix each."""
    batch = build_batch([
        build_result("acme/b", 45, {
            "documentation": ["Missing README.md"],
            "security": ["Missing SECURITY.md security policy"],
        }),
        build_result("acme/a", 65, {"documentation": ["Missing LICENSE file"]}),
    ])

    result = prioritize(batch, top_n=1, group_by_similarity=True)

    assert len(result.ranked) == 1
    assert [group.category for group in result.groups] == ["security", "documentation"]
    documentation = result.groups[1]
    assert documentation.count == 2
    assert documentation.average_priority == 12.5
    assert [r.full_name for r in documentation.repositories] == ["acme/a", "acme/b"]
    assert documentation.suggestion.affected_repositories == 2
    assert "--auto-fix" in documentation.suggestion.command
    security = result.groups[0]
    assert security.suggestion.command == "gh api -X PUT repos/acme/b/vulnerability-alerts"
    for group in result.groups:
        assert "{" not in group.suggestion.command


def test_batch_commands_name_each_repository():
    """Branch commands use each repository's default branch."""
    batch = build_batch([
        dataclasses.replace(
            build_result("acme/api", 40, {"branch-protection": ["No branch protection rules"]}),
            default_branch="trunk"
        ),
        build_result("acme/web", 40, {"branch-protection": ["No branch protection rules"]}),
        build_result("acme/cli", 40, {"cicd": ["No GitHub Actions workflows found"]}),
    ])

    result = prioritize(batch, group_by_similarity=True)

    commands = {group.category: group.suggestion.command.splitlines() for group in result.groups}
    assert commands["branch-protection"][0].startswith(
        "gh api -X PUT repos/acme/api/branches/trunk/protection"
    )
    assert commands["branch-protection"][1] == "gh browse --settings --repo acme/web"
    assert commands["cicd"] == ["https://github.com/acme/cli/actions/new"]
