"""Command line entry point for the compliance engine.

Audits every repository of an organization, keeps a dated history, reports
trends and priorities and keeps the tracking issue up to date.
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from org_compliance.application.audit_service import AuditRun, ComplianceAuditService, RunOptions
from org_compliance.application.auto_fixer import AutoFixer
from org_compliance.application.batch_auditor import BatchAuditor
from org_compliance.application.categorizer import group_by_category
from org_compliance.application.health_scorer import HealthScorer
from org_compliance.application.issue_reconciler import IssueReconciler
from org_compliance.application.prioritizer import DEFAULT_TOP_N
from org_compliance.application.reports import (
    build_compliance_report,
    build_security_dashboard,
    save_report,
)
from org_compliance.config import HISTORY_BACKENDS, Settings, load_settings
from org_compliance.domain.exceptions import (
    AuthenticationMissingException,
    ComplianceException,
    StorageIOException,
)
from org_compliance.domain.github_interface import IRepositorySource
from org_compliance.domain.history_interface import IHistoryStore
from org_compliance.domain.models import RepositoryIdentity
from org_compliance.infrastructure.file_history_store import FileHistoryStore
from org_compliance.infrastructure.github_client import GitHubGraphQLClient
from org_compliance.infrastructure.local_workspace import LocalWorkspace
from org_compliance.infrastructure.postgres_history_store import PostgresHistoryStore
from org_compliance.infrastructure.token_resolver import TokenResolver


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="org-compliance",
        description="Audit and remediate compliance across an organization's repositories."
    )
    parser.add_argument("--org", help="Organization or user to audit (default: $GITHUB_ORG)")
    parser.add_argument("--token", help="GitHub token (default: resolved from the environment)")
    parser.add_argument("--local", action="store_true",
                        help="Audit the repository in the current directory without the API")

    audit = parser.add_argument_group("audit")
    audit.add_argument("--org-health", action="store_true",
                       help="Run the organization health audit (default action)")
    audit.add_argument("--concurrency", type=int, help="Audits in flight (default: 5)")
    audit.add_argument("--sequential", action="store_true", help="Same as --concurrency 1")
    audit.add_argument("--repository-timeout", type=float,
                       help="Seconds one repository audit may take")
    audit.add_argument("--batch-deadline", type=float, help="Seconds the whole batch may take")
    audit.add_argument("--categorize", action="store_true", help="Group repositories by category")

    trends = parser.add_argument_group("history and trends")
    trends.add_argument("--trending", action="store_true",
                        help="Compare with the nearest earlier snapshot")
    trends.add_argument("--history-backend", choices=HISTORY_BACKENDS)
    trends.add_argument("--history-dir", help="Snapshot directory for the file backend")
    trends.add_argument("--no-save-history", action="store_true",
                        help="Do not store a snapshot of this run")

    priorities = parser.add_argument_group("prioritization")
    priorities.add_argument("--prioritize", action="store_true", help="Rank outstanding issues")
    priorities.add_argument("--top-n", type=int, default=DEFAULT_TOP_N,
                            help="Ranked issues to show (0 shows all)")
    priorities.add_argument("--batch-suggestions", action="store_true",
                            help="Suggest one batch fix per issue category")
    priorities.add_argument("--group-by-similarity", action="store_true",
                            help="Group ranked issues by category")

    fixes = parser.add_argument_group("auto-fix")
    fixes.add_argument("--auto-fix", action="store_true", help="Add missing community files")
    fixes.add_argument("--dry-run", action="store_true", help="Only report what would change")
    fixes.add_argument("--target", choices=("current", "all"), default="current",
                       help="Fix the tracking repository or every repository")

    output = parser.add_argument_group("reports and output")
    output.add_argument("--compliance-report", action="store_true")
    output.add_argument("--security-dashboard", action="store_true")
    output.add_argument("--save", action="store_true", help="Write requested reports to files")
    output.add_argument("--json", action="store_true", help="Print JSON to stdout")
    output.add_argument("--reconcile-issue", action="store_true",
                        help="Create, update or close the tracking issue")
    output.add_argument("--tracking-repo", help="owner/name holding the tracking issue")
    output.add_argument("--log-level", default="INFO",
                        choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def build_history(args: argparse.Namespace, settings: Settings, organization: str) -> IHistoryStore:
    backend = args.history_backend or settings.history_backend
    if backend == "postgres":
        return PostgresHistoryStore(settings.connection_string(), organization)
    return FileHistoryStore(args.history_dir or settings.history_dir)


def _print_text(run: AuditRun, args: argparse.Namespace) -> None:
    batch = run.batch
    summary = batch.summary
    print("=" * 50)
    print(f"Organization health: {batch.organization}")
    print(f"  Repositories: {summary.total_repositories} ({summary.failed_count} failed)")
    print(f"  Average score: {summary.average_score}/100")
    print(f"  Healthy: {summary.healthy_count}  Unhealthy: {summary.unhealthy_count}")
    print("=" * 50)
    for result in batch.results:
        print(f"  [{result.grade}] {result.repository.full_name}: {result.score}/100")
    for error in batch.errors:
        print(f"  [!] {error.repository.full_name}: {error.kind} - {error.message}")

    if args.categorize:
        print("\nCategories:")
        for category, names in group_by_category(batch.results).items():
            print(f"  {category} ({len(names)}): {', '.join(names)}")

    if run.trends is not None:
        aggregate = run.trends.aggregate
        print(f"\nTrend since {run.trends.prior_run_date}:")
        print(f"  Average score {aggregate.avg_score_delta:+.1f}, "
              f"unhealthy {aggregate.unhealthy_count_delta:+d}")
        for delta in run.trends.improved + run.trends.declined:
            print(f"  {delta.repository.full_name}: {delta.previous_score} -> "
                  f"{delta.current_score} ({delta.score_delta:+.1f})")
        if run.trends.recovered_repositories:
            print("  Audited again after failing last time: "
                  + ", ".join(r.full_name for r in run.trends.recovered_repositories))
    elif args.trending:
        print("\nNo historical data available for trend analysis")

    if run.priorities is not None:
        print(f"\nTop issues ({len(run.priorities.ranked)} of {run.priorities.total_items}):")
        for rank, item in enumerate(run.priorities.ranked, 1):
            print(f"  {rank}. [{item.priority}] {item.repository.full_name} "
                  f"({item.category}): {item.description}")
        for group in run.priorities.groups or ():
            print(f"  {group.category}: {group.count} issues in "
                  f"{len(group.repositories)} repositories, avg priority {group.average_priority}")
            print(f"    -> {group.suggestion.action}:")
            for line in group.suggestion.command.splitlines():
                print(f"       {line}")

    if run.reconcile is not None:
        issue = run.reconcile.issue
        print(f"\nTracking issue: {run.reconcile.action.value}"
              + (f" #{issue.number} {issue.url}" if issue else ""))

    for stage, message in run.stage_errors.items():
        print(f"\nStage '{stage}' failed: {message}")


def _emit_reports(run: AuditRun, args: argparse.Namespace, output: Dict[str, Any]) -> None:
    requested = []
    if args.compliance_report:
        requested.append(("compliance-report", "compliance_report", build_compliance_report))
    if args.security_dashboard:
        requested.append(("security-dashboard", "security_dashboard", build_security_dashboard))

    for prefix, key, builder in requested:
        report = builder(run.batch)
        output[key] = report
        if args.save:
            try:
                save_report(report, prefix)
            except ComplianceException as e:
                logger.error(f"Could not save {prefix}: {e}")
        if not args.json:
            print(f"\n{prefix}:")
            print(json.dumps(report, indent=2))


async def _auto_fix(
    args: argparse.Namespace,
    source: IRepositorySource,
    committer: Optional[GitHubGraphQLClient],
    organization: str,
    settings: Settings
) -> int:
    if args.target == "all":
        targets = await source.discover_repositories(organization)
    elif isinstance(source, LocalWorkspace):
        targets = [source.identity()]
    else:
        if not (args.tracking_repo or settings.tracking_repository):
            logger.error("--target current needs --tracking-repo or GITHUB_REPOSITORY")
            return 1
        targets = [RepositoryIdentity.parse(args.tracking_repo or settings.tracking_repository)]

    outcomes = await AutoFixer(source, committer).run(targets, dry_run=args.dry_run)
    if args.json:
        print(json.dumps({"auto_fix": [outcome.to_dict() for outcome in outcomes]}, indent=2))
    else:
        for outcome in outcomes:
            files = ", ".join(f"{path} ({action})" for path, action in outcome.files.items())
            print(f"{outcome.repository.full_name}: {outcome.status}"
                  + (f" - {files}" if files else "")
                  + (f" - {outcome.error}" if outcome.error else ""))
    return 1 if any(outcome.status == "failed" for outcome in outcomes) else 0


async def _run_audit(
    args: argparse.Namespace,
    settings: Settings,
    source: IRepositorySource,
    client: Optional[GitHubGraphQLClient],
    organization: str
) -> int:
    history: Optional[IHistoryStore] = None
    history_error = None
    try:
        history = build_history(args, settings, organization)
    except StorageIOException as e:
        logger.error(f"History store unavailable, continuing without it: {e}")
        history_error = str(e)

    reconciler = None
    if args.reconcile_issue:
        tracking = args.tracking_repo or settings.tracking_repository
        if not tracking:
            logger.error("--reconcile-issue needs --tracking-repo or TRACKING_REPOSITORY")
        else:
            reconciler = IssueReconciler(
                client,
                RepositoryIdentity.parse(tracking),
                labels=settings.issue_labels,
                fail_on_duplicate=settings.fail_on_duplicate_issue
            )

    concurrency = 1 if args.sequential else (args.concurrency or settings.concurrency)
    batch_auditor = BatchAuditor(
        repository_timeout=args.repository_timeout or settings.repository_timeout,
        batch_deadline=args.batch_deadline or settings.batch_deadline,
        rate_limit_probe=lambda: source.rate_limit_remaining
    )
    service = ComplianceAuditService(
        source=source,
        auditor=HealthScorer(source),
        batch_auditor=batch_auditor,
        history=history,
        reconciler=reconciler,
        history_error=history_error
    )
    options = RunOptions(
        concurrency=concurrency,
        trending=args.trending,
        save_history=not args.no_save_history,
        prioritize=args.prioritize or args.batch_suggestions or args.group_by_similarity,
        top_n=args.top_n or None,
        group_by_similarity=args.group_by_similarity or args.batch_suggestions,
        reconcile_issue=args.reconcile_issue
    )

    try:
        run = await service.run(organization, options)
    finally:
        await service.close()

    output = run.to_dict()
    if args.categorize:
        output["categories"] = group_by_category(run.batch.results)
    if not args.json:
        _print_text(run, args)
    _emit_reports(run, args, output)
    if args.json:
        print(json.dumps(output, indent=2))
    return 0


async def run_cli(args: argparse.Namespace, settings: Settings) -> int:
    """Execute the requested action. Returns the process exit code."""
    resolved = TokenResolver().resolve(args.token)
    local_mode = args.local or not resolved.is_available
    needs_api = args.reconcile_issue or (args.auto_fix and not args.dry_run)
    if local_mode and needs_api:
        raise AuthenticationMissingException(
            "--reconcile-issue and --auto-fix without --dry-run need a GitHub token"
        )

    client: Optional[GitHubGraphQLClient] = None
    if local_mode:
        source: IRepositorySource = LocalWorkspace(".")
    else:
        client = GitHubGraphQLClient(resolved.require())
        source = client

    try:
        if local_mode:
            organization = args.org or settings.organization or source.identity().owner
        else:
            organization = args.org or settings.organization
            if not organization:
                logger.error("No organization given. Use --org or set GITHUB_ORG")
                return 1
            logger.info(f"Using GitHub token from {resolved.source}")

        if args.auto_fix:
            return await _auto_fix(args, source, client, organization, settings)
        return await _run_audit(args, settings, source, client, organization)
    finally:
        await source.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, configure logging and run."""
    args = build_parser().parse_args(argv)

    # Load environment variables from .env or env file
    load_dotenv('.env') or load_dotenv('env')

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    try:
        settings = load_settings()
        if args.concurrency is not None and args.concurrency < 1:
            raise ValueError("--concurrency must be at least 1")
        return asyncio.run(run_cli(args, settings))
    except (ComplianceException, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.error(f"Audit failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
