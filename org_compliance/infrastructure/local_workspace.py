"""Repository source backed by a local checkout, for runs without a token."""
import configparser
import json
import logging
import os
import re
from typing import List, Optional, Sequence

from org_compliance.domain.exceptions import DiscoveryException, RepositoryNotFoundException
from org_compliance.domain.github_interface import IRepositorySource
from org_compliance.domain.models import (
    CODE_OF_CONDUCT_NAMES,
    COMMUNITY_DIRS,
    CONTRIBUTING_NAMES,
    DEPENDABOT_NAMES,
    LICENSE_NAMES,
    README_NAMES,
    SECURITY_POLICY_NAMES,
    RepositoryIdentity,
    RepositorySignals,
    contains_any,
)


logger = logging.getLogger(__name__)


REMOTE_URL_PATTERN = re.compile(r"[:/]([^/:]+)/([^/]+?)(?:\.git)?/?$")



def parse_remote_url(url: str) -> Optional[RepositoryIdentity]:
    """Owner and name from an https or ssh remote URL."""
    match = REMOTE_URL_PATTERN.search(url.strip())
    if not match:
        return None
    return RepositoryIdentity(owner=match.group(1), name=match.group(2))


class LocalWorkspace(IRepositorySource):
    """Audits the single repository checked out at ``path``.

    Everything is read from the working tree. Branch protection cannot be
    seen from a checkout and is reported as unknown.
    """

    def __init__(self, path: str = ".", default_owner: str = "local"):
        self._path = os.path.abspath(path)
        self._default_owner = default_owner

    def identity(self) -> RepositoryIdentity:
        """Repository named by the ``origin`` remote, else by the directory."""
        config_path = os.path.join(self._path, ".git", "config")
        if os.path.isfile(config_path):
            parser = configparser.ConfigParser(strict=False, interpolation=None)
            try:
                parser.read(config_path, encoding="utf-8")
            except configparser.Error as e:
                logger.warning(f"Could not parse {config_path}: {e}")
            else:
                url = parser.get('remote "origin"', "url", fallback="")
                identity = parse_remote_url(url) if url else None
                if identity is not None:
                    return identity
        return RepositoryIdentity(owner=self._default_owner, name=os.path.basename(self._path))

    async def discover_repositories(self, owner: str) -> List[RepositoryIdentity]:
        if not os.path.isdir(self._path):
            raise DiscoveryException(f"Workspace {self._path} does not exist")
        identity = self.identity()
        logger.info(f"Local mode: auditing {identity.full_name} from {self._path}")
        return [identity]

    def _exists(self, names: Sequence[str], directories: Sequence[str] = ("",)) -> bool:
        for directory in directories:
            base = os.path.join(self._path, directory)
            if not os.path.isdir(base):
                continue
            if contains_any(os.listdir(base), names):
                return True
        return False

    def _workflow_files(self) -> tuple:
        workflows = os.path.join(self._path, ".github", "workflows")
        if not os.path.isdir(workflows):
            return ()
        return tuple(sorted(
            name for name in os.listdir(workflows) if name.endswith((".yml", ".yaml"))
        ))

    def _package_metadata(self) -> dict:
        path = os.path.join(self._path, "package.json")
        if not os.path.isfile(path):
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    async def fetch_repository_signals(self, repository: RepositoryIdentity) -> RepositorySignals:
        if not os.path.isdir(self._path):
            raise RepositoryNotFoundException(f"Workspace {self._path} does not exist")

        metadata = self._package_metadata()
        keywords = metadata.get("keywords") or []
        return RepositorySignals(
            repository=repository,
            description=metadata.get("description") or "",
            topics=tuple(str(keyword) for keyword in keywords),
            has_readme=self._exists(README_NAMES, COMMUNITY_DIRS),
            has_license=self._exists(LICENSE_NAMES),
            has_contributing=self._exists(CONTRIBUTING_NAMES, COMMUNITY_DIRS),
            has_security_policy=self._exists(SECURITY_POLICY_NAMES, COMMUNITY_DIRS),
            has_code_of_conduct=self._exists(CODE_OF_CONDUCT_NAMES, COMMUNITY_DIRS),
            has_dependabot=self._exists(DEPENDABOT_NAMES, (".github",)),
            branch_protection_rules=None,
            workflow_files=self._workflow_files()
        )
