"""JSON reports and the managed issue body built from an audit batch."""
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List

from org_compliance.domain.exceptions import StorageIOException
from org_compliance.domain.models import (
    COMPLIANT_THRESHOLD,
    CRITICAL_THRESHOLD,
    SEVERITIES,
    OrgAuditBatch,
)


logger = logging.getLogger(__name__)


def build_compliance_report(batch: OrgAuditBatch) -> Dict[str, Any]:
    """Organization compliance summary.

    ``compliant`` counts repositories scoring at least 80 and
    ``criticalIssues`` those below 50. Failed audits are counted in
    ``failed`` and never in either bucket.
    """
    compliant = [r for r in batch.results if r.score >= COMPLIANT_THRESHOLD]
    critical = [r for r in batch.results if r.score < CRITICAL_THRESHOLD]
    return {
        "timestamp": batch.timestamp.isoformat(),
        "organization": batch.organization,
        "totalRepositories": batch.summary.total_repositories,
        "compliant": len(compliant),
        "nonCompliant": len(batch.results) - len(compliant),
        "failed": batch.summary.failed_count,
        "averageScore": batch.summary.average_score,
        "criticalIssues": len(critical),
        "details": [
            {
                "repository": result.repository.full_name,
                "score": result.score,
                "grade": result.grade,
                "compliant": result.score >= COMPLIANT_THRESHOLD,
                "classification": result.classification,
                "issues": [
                    issue
                    for category in result.categories.values()
                    for issue in category.issues
                ],
                "categories": {
                    name: category.score for name, category in result.categories.items()
                },
            }
            for result in batch.results
        ] + [
            {
                "repository": error.repository.full_name,
                "error": error.message,
                "kind": error.kind,
            }
            for error in batch.errors
        ],
    }


def build_security_dashboard(batch: OrgAuditBatch) -> Dict[str, Any]:
    """Vulnerability counts bucketed by severity, with affected repositories."""
    buckets: Dict[str, Dict[str, Any]] = {
        severity: {"count": 0, "repositories": []} for severity in SEVERITIES
    }
    total = 0
    for result in batch.results:
        for alert in result.vulnerabilities:
            bucket = buckets.setdefault(alert.severity, {"count": 0, "repositories": []})
            bucket["count"] += 1
            total += 1
            if result.repository.full_name not in bucket["repositories"]:
                bucket["repositories"].append(result.repository.full_name)

    low_security = [
        {"repository": result.repository.full_name, "score": result.categories["security"].score}
        for result in batch.results
        if "security" in result.categories
        and result.categories["security"].score < CRITICAL_THRESHOLD
    ]

    return {
        "timestamp": batch.timestamp.isoformat(),
        "organization": batch.organization,
        "totalRepositories": batch.summary.total_repositories,
        "totalVulnerabilities": total,
        "bySeverity": buckets,
        "lowSecurityScore": low_security,
    }


def save_report(report: Dict[str, Any], prefix: str, directory: str = ".") -> str:
    """Write a report as ``<prefix>-<date>.json`` and return the path.

    Raises:
        StorageIOException: When the file cannot be written
    """
    report_date = report.get("timestamp", "")[:10] or datetime.now().strftime("%Y-%m-%d")
    path = os.path.join(directory, f"{prefix}-{report_date}.json")
    try:
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
    except OSError as e:
        logger.error(f"Error saving report to {path}: {e}")
        raise StorageIOException(f"Could not write {path}: {e}") from e
    logger.info(f"Report saved to {path}")
    return path


def render_issue_body(batch: OrgAuditBatch) -> str:
    """Markdown body for the managed health issue."""
    unhealthy = sorted(
        batch.unhealthy_results,
        key=lambda result: (result.score, result.repository.full_name)
    )
    summary = batch.summary
    lines: List[str] = [
        "## Repository Health Alert",
        "",
        f"**Organization:** {batch.organization}",
        f"**Last audit:** {batch.timestamp.strftime('%Y-%m-%d %H:%M')} UTC",
        f"**Average score:** {summary.average_score}/100",
        f"**Unhealthy repositories:** {summary.unhealthy_count} of "
        f"{summary.total_repositories - summary.failed_count} audited",
        "",
        "| Repository | Score | Grade | Issues |",
        "|---|---|---|---|",
    ]
    for result in unhealthy:
        lines.append(
            f"| {result.repository.full_name} | {result.score}/100 | "
            f"{result.grade} | {result.issue_count} |"
        )

    if batch.errors:
        lines.extend(["", f"**Could not audit {len(batch.errors)} repositories:**", ""])
        lines.extend(
            f"- {error.repository.full_name}: {error.message}" for error in batch.errors
        )

    lines.extend([
        "",
        "This issue is maintained automatically and will be closed once every "
        "repository is healthy again.",
    ])
    return "\n".join(lines)


CLOSING_COMMENT = (
    "All repositories are healthy again (score of 70 or more). "
    "Closing this issue automatically."
)
