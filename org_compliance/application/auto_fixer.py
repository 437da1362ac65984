"""Generates missing community files in audited repositories."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from org_compliance.domain.github_interface import IFileCommitter, IRepositorySource
from org_compliance.domain.models import RepositoryIdentity, RepositorySignals


logger = logging.getLogger(__name__)


COMMIT_MESSAGE = "docs: add missing community health files"

SECURITY_TEMPLATE = """# Security Policy

## Reporting a Vulnerability

Please do not report security vulnerabilities through public GitHub issues.
Use the repository's private vulnerability reporting or contact the maintainers
of {full_name} directly.

We acknowledge reports within 48 hours and publish an advisory once a fix is
available.
"""

CONTRIBUTING_TEMPLATE = """# Contributing to {name}

Thank you for your interest in contributing!

1. Fork the repository and create a branch from the default branch.
2. Make your change and add tests where it makes sense.
3. Open a pull request describing what you changed and why.

Please read and follow our [Code of Conduct](CODE_OF_CONDUCT.md).
"""

CODE_OF_CONDUCT_TEMPLATE = """# Code of Conduct

This project follows the Contributor Covenant, version 2.1:
https://www.contributor-covenant.org/version/2/1/code_of_conduct/

Report unacceptable behavior to the maintainers of {full_name}.
"""

README_TEMPLATE = """# {name}

{description}

## Usage

Describe how to install and use this project.

## Contributing

See [CONTRIBUTING.md](CONTRIBUTING.md).
"""


@dataclass(frozen=True)
class FixOutcome:
    """What auto-fix did (or would do) for one repository."""
    repository: RepositoryIdentity
    status: str
    files: Dict[str, str] = field(default_factory=dict)
    commit: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "repository": self.repository.full_name,
            "status": self.status,
            "files": dict(self.files),
        }
        if self.commit:
            data["commit"] = self.commit
        if self.error:
            data["error"] = self.error
        return data


def missing_files(signals: RepositorySignals) -> Dict[str, str]:
    """Stub content for each community file the repository lacks."""
    context = {
        "name": signals.name,
        "full_name": signals.repository.full_name,
        "description": signals.description or "Project description goes here.",
    }
    files = {}
    if not signals.has_readme:
        files["README.md"] = README_TEMPLATE.format(**context)
    if not signals.has_contributing:
        files["CONTRIBUTING.md"] = CONTRIBUTING_TEMPLATE.format(**context)
    if not signals.has_security_policy:
        files["SECURITY.md"] = SECURITY_TEMPLATE.format(**context)
    if not signals.has_code_of_conduct:
        files["CODE_OF_CONDUCT.md"] = CODE_OF_CONDUCT_TEMPLATE.format(**context)
    return files


class AutoFixer:
    """Adds missing README, CONTRIBUTING, SECURITY and CODE_OF_CONDUCT files.

    All files of one repository go into a single commit. Failures are
    recorded per repository and never stop the remaining ones.
    """

    def __init__(self, source: IRepositorySource, committer: Optional[IFileCommitter] = None):
        """Initialize the auto-fixer.

        Args:
            source: Reads the signals that tell which files are missing
            committer: Writes the files; only needed outside dry-run mode
        """
        self._source = source
        self._committer = committer

    async def fix(self, repository: RepositoryIdentity, dry_run: bool = False) -> FixOutcome:
        try:
            signals = await self._source.fetch_repository_signals(repository)
            files = missing_files(signals)
            if not files:
                logger.info(f"{repository.full_name}: all community files present")
                return FixOutcome(repository=repository, status="compliant")

            if dry_run:
                logger.info(f"[DRY RUN] {repository.full_name}: would create {', '.join(files)}")
                return FixOutcome(
                    repository=repository,
                    status="fixed",
                    files={path: "would-generate" for path in files}
                )

            if self._committer is None:
                raise ValueError("Auto-fix needs a GitHub token to commit files")
            commit = await self._committer.commit_files(repository, files, COMMIT_MESSAGE)
            logger.info(f"{repository.full_name}: created {', '.join(files)}")
            return FixOutcome(
                repository=repository,
                status="fixed",
                files={path: "generated" for path in files},
                commit=commit
            )
        except Exception as e:
            logger.error(f"Auto-fix failed for {repository.full_name}: {e}")
            return FixOutcome(repository=repository, status="failed", error=str(e))

    async def run(
        self,
        repositories: Sequence[RepositoryIdentity],
        dry_run: bool = False
    ) -> List[FixOutcome]:
        """Fix repositories one after another, in the given order."""
        outcomes = []
        for repository in repositories:
            outcomes.append(await self.fix(repository, dry_run))

        fixed = sum(1 for outcome in outcomes if outcome.status == "fixed")
        failed = sum(1 for outcome in outcomes if outcome.status == "failed")
        logger.info(
            f"Auto-fix {'dry run ' if dry_run else ''}completed: "
            f"{fixed} fixed, {failed} failed, {len(outcomes) - fixed - failed} compliant"
        )
        return outcomes
