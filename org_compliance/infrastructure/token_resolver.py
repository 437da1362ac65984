"""GitHub token lookup across explicit values, CI, environment and .env files."""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import dotenv_values
from org_compliance.domain.exceptions import AuthenticationMissingException


logger = logging.getLogger(__name__)


TOKEN_VARIABLES = ("GITHUB_TOKEN", "AGENT_ORG_TOKEN")


@dataclass(frozen=True)
class ResolvedToken:
    """A token and where it came from. ``token`` is None in local-only mode."""
    token: Optional[str]
    source: str

    @property
    def is_available(self) -> bool:
        return bool(self.token)

    def require(self) -> str:
        """Return the token or fail for operations that need the API.

        Raises:
            AuthenticationMissingException: When no token was found
        """
        if not self.token:
            raise AuthenticationMissingException(
                "A GitHub token is required. Set GITHUB_TOKEN or AGENT_ORG_TOKEN, "
                "or add it to a .env file."
            )
        return self.token


def is_github_actions(environ: Mapping[str, str]) -> bool:
    return environ.get("GITHUB_ACTIONS") == "true" or (
        environ.get("CI") == "true" and "GITHUB_REPOSITORY" in environ
    )


class TokenResolver:
    """Resolves the GitHub token in a fixed order.

    1. an explicitly passed token
    2. ``GITHUB_TOKEN`` inside GitHub Actions
    3. ``GITHUB_TOKEN`` or ``AGENT_ORG_TOKEN`` from the environment
    4. the same names in a ``.env`` file
    5. nothing, which means local-only mode
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: str = ".env"
    ):
        self._environ = os.environ if environ is None else environ
        self._dotenv_path = dotenv_path

    def resolve(self, explicit: Optional[str] = None) -> ResolvedToken:
        if explicit:
            return ResolvedToken(explicit, "explicit")

        if is_github_actions(self._environ) and self._environ.get("GITHUB_TOKEN"):
            return ResolvedToken(self._environ["GITHUB_TOKEN"], "github-actions")

        for name in TOKEN_VARIABLES:
            if self._environ.get(name):
                return ResolvedToken(self._environ[name], f"env:{name}")

        if os.path.isfile(self._dotenv_path):
            values = dotenv_values(self._dotenv_path)
            for name in TOKEN_VARIABLES:
                if values.get(name):
                    return ResolvedToken(values[name], "dotenv-file")

        logger.info("No GitHub token found; running in local-only mode")
        return ResolvedToken(None, "none")
