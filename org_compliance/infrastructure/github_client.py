"""GitHub GraphQL API client implementation with rate limit tracking and retry logic."""
import asyncio
import base64
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp
from gql import gql, Client
from gql.client import AsyncClientSession
from gql.transport.aiohttp import AIOHTTPTransport
from gql.transport.exceptions import TransportQueryError, TransportServerError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)
from org_compliance.domain.exceptions import (
    DiscoveryException,
    PermissionDeniedException,
    RateLimitException,
    RepositoryNotFoundException,
    TransientException,
)
from org_compliance.domain.github_interface import (
    IFileCommitter,
    IIssueTracker,
    IRepositorySource,
)
from org_compliance.domain.models import (
    CODE_OF_CONDUCT_NAMES,
    COMMUNITY_DIRS,
    CONTRIBUTING_NAMES,
    DEPENDABOT_NAMES,
    LICENSE_NAMES,
    README_NAMES,
    SECURITY_POLICY_NAMES,
    ManagedIssue,
    RepositoryIdentity,
    RepositorySignals,
    VulnerabilityAlert,
    contains_any,
)


logger = logging.getLogger(__name__)


GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
RATE_LIMIT_WARNING_THRESHOLD = 100


def classify_graphql_error(error: Exception) -> Exception:
    """Map a gql transport error onto the domain exception taxonomy."""
    message = str(error)
    if isinstance(error, TransportQueryError):
        types = {item.get("type") for item in (error.errors or []) if isinstance(item, dict)}
        if "RATE_LIMITED" in types or "rate limit" in message.lower():
            return RateLimitException(message)
        if "NOT_FOUND" in types:
            return RepositoryNotFoundException(message)
        if "FORBIDDEN" in types:
            return PermissionDeniedException(message)
        return TransientException(message)
    if isinstance(error, TransportServerError):
        if "rate limit" in message.lower():
            return RateLimitException(message)
        if error.code in (401, 403):
            return PermissionDeniedException(message)
        if error.code == 404:
            return RepositoryNotFoundException(message)
        return TransientException(message)
    return TransientException(message or type(error).__name__)


def _tree_names(node: Optional[Dict[str, Any]]) -> Tuple[str, ...]:
    """Entry names of a tree object; empty when the path does not exist."""
    return tuple(entry["name"] for entry in (node or {}).get("entries") or () if entry.get("name"))


def _to_issue(node: Dict[str, Any]) -> ManagedIssue:
    """Convert an issue node to the domain entity."""
    return ManagedIssue(
        node_id=node["id"],
        number=node["number"],
        title=node.get("title", ""),
        body=node.get("body") or "",
        created_at=datetime.fromisoformat(node["createdAt"].replace("Z", "+00:00")),
        url=node.get("url", ""),
        labels=tuple(
            label["name"] for label in (node.get("labels") or {}).get("nodes", []) if label
        )
    )


class GitHubGraphQLClient(IRepositorySource, IIssueTracker, IFileCommitter):
    """GitHub GraphQL API client with rate limit tracking and retry mechanisms.

    Implements the IRepositorySource, IIssueTracker and IFileCommitter ports,
    providing an anti-corruption layer between the domain and GitHub's API.
    One session is opened lazily and shared by all concurrent audits.
    """

    DISCOVER_QUERY = gql("""
        query DiscoverRepositories($owner: String!, $cursor: String) {
            repositoryOwner(login: $owner) {
                repositories(
                    first: 100
                    after: $cursor
                    orderBy: {field: NAME, direction: ASC}
                ) {
                    pageInfo {
                        hasNextPage
                        endCursor
                    }
                    nodes {
                        name
                        owner {
                            login
                        }
                    }
                }
            }
            rateLimit {
                remaining
                resetAt
            }
        }
    """)

    SIGNALS_QUERY = gql("""
        query RepositorySignals($owner: String!, $name: String!) {
            repository(owner: $owner, name: $name) {
                description
                isArchived
                isPrivate
                updatedAt
                isSecurityPolicyEnabled
                primaryLanguage {
                    name
                }
                repositoryTopics(first: 20) {
                    nodes {
                        topic {
                            name
                        }
                    }
                }
                licenseInfo {
                    spdxId
                }
                codeOfConduct {
                    key
                }
                defaultBranchRef {
                    name
                }
                branchProtectionRules(first: 1) {
                    totalCount
                }
                rootTree: object(expression: "HEAD:") {
                    ... on Tree {
                        entries {
                            name
                        }
                    }
                }
                githubTree: object(expression: "HEAD:.github") {
                    ... on Tree {
                        entries {
                            name
                        }
                    }
                }
                docsTree: object(expression: "HEAD:docs") {
                    ... on Tree {
                        entries {
                            name
                        }
                    }
                }
                workflows: object(expression: "HEAD:.github/workflows") {
                    ... on Tree {
                        entries {
                            name
                        }
                    }
                }
            }
            rateLimit {
                remaining
                resetAt
            }
        }
    """)

    VULNERABILITY_QUERY = gql("""
        query VulnerabilityAlerts($owner: String!, $name: String!) {
            repository(owner: $owner, name: $name) {
                vulnerabilityAlerts(first: 100, states: OPEN) {
                    nodes {
                        securityVulnerability {
                            severity
                            package {
                                name
                            }
                            advisory {
                                summary
                            }
                        }
                    }
                }
            }
        }
    """)

    RATE_LIMIT_QUERY = gql("""
        query RateLimit {
            rateLimit {
                remaining
                resetAt
            }
        }
    """)

    OPEN_ISSUES_QUERY = gql("""
        query ManagedIssues($owner: String!, $name: String!, $labels: [String!]) {
            repository(owner: $owner, name: $name) {
                issues(
                    first: 50
                    states: OPEN
                    labels: $labels
                    orderBy: {field: CREATED_AT, direction: DESC}
                ) {
                    nodes {
                        id
                        number
                        title
                        body
                        createdAt
                        url
                        labels(first: 20) {
                            nodes {
                                name
                            }
                        }
                    }
                }
            }
        }
    """)

    LABELS_QUERY = gql("""
        query RepositoryLabels($owner: String!, $name: String!) {
            repository(owner: $owner, name: $name) {
                id
                labels(first: 100) {
                    nodes {
                        id
                        name
                    }
                }
            }
        }
    """)

    CREATE_LABEL_MUTATION = gql("""
        mutation CreateLabel($repositoryId: ID!, $name: String!, $color: String!) {
            createLabel(input: {repositoryId: $repositoryId, name: $name, color: $color}) {
                label {
                    id
                    name
                }
            }
        }
    """)

    CREATE_ISSUE_MUTATION = gql("""
        mutation CreateIssue($repositoryId: ID!, $title: String!, $body: String!, $labelIds: [ID!]) {
            createIssue(input: {
                repositoryId: $repositoryId
                title: $title
                body: $body
                labelIds: $labelIds
            }) {
                issue {
                    id
                    number
                    title
                    body
                    createdAt
                    url
                    labels(first: 20) {
                        nodes {
                            name
                        }
                    }
                }
            }
        }
    """)

    UPDATE_ISSUE_MUTATION = gql("""
        mutation UpdateIssue($id: ID!, $body: String!) {
            updateIssue(input: {id: $id, body: $body}) {
                issue {
                    id
                    number
                    title
                    body
                    createdAt
                    url
                    labels(first: 20) {
                        nodes {
                            name
                        }
                    }
                }
            }
        }
    """)

    CLOSE_ISSUE_MUTATION = gql("""
        mutation CloseIssue($id: ID!, $comment: String!) {
            addComment(input: {subjectId: $id, body: $comment}) {
                clientMutationId
            }
            closeIssue(input: {issueId: $id}) {
                issue {
                    number
                    state
                }
            }
        }
    """)

    DEFAULT_BRANCH_QUERY = gql("""
        query DefaultBranch($owner: String!, $name: String!) {
            repository(owner: $owner, name: $name) {
                defaultBranchRef {
                    name
                    target {
                        oid
                    }
                }
            }
        }
    """)

    COMMIT_MUTATION = gql("""
        mutation CommitFiles(
            $repository: String!
            $branch: String!
            $headline: String!
            $expectedHeadOid: GitObjectID!
            $additions: [FileAddition!]
        ) {
            createCommitOnBranch(input: {
                branch: {repositoryNameWithOwner: $repository, branchName: $branch}
                message: {headline: $headline}
                expectedHeadOid: $expectedHeadOid
                fileChanges: {additions: $additions}
            }) {
                commit {
                    oid
                    url
                }
            }
        }
    """)

    LABEL_COLOR = "d73a4a"

    def __init__(self, access_token: str, execute_timeout: int = 30):
        """Initialize GitHub client.

        Args:
            access_token: GitHub personal access token
            execute_timeout: Seconds before a single query times out
        """
        self._access_token = access_token
        self._execute_timeout = execute_timeout
        self._transport: Optional[AIOHTTPTransport] = None
        self._client: Optional[Client] = None
        self._session: Optional[AsyncClientSession] = None
        self._connect_lock = asyncio.Lock()
        self._rate_limit_remaining: Optional[int] = None
        self._rate_limit_reset_at: Optional[datetime] = None

    @property
    def rate_limit_remaining(self) -> Optional[int]:
        return self._rate_limit_remaining

    async def _init_client(self) -> AsyncClientSession:
        """Initialize the GraphQL client (lazy initialization)."""
        async with self._connect_lock:
            if self._session is None:
                headers = {"Authorization": f"Bearer {self._access_token}"}
                self._transport = AIOHTTPTransport(
                    url=GITHUB_GRAPHQL_URL,
                    headers=headers
                )
                self._client = Client(
                    transport=self._transport,
                    fetch_schema_from_transport=False,
                    execute_timeout=self._execute_timeout
                )
                self._session = await self._client.connect_async(reconnecting=False)
        return self._session

    def _check_rate_limit(self) -> None:
        """Warn when the remaining quota runs low. Never blocks."""
        if (
            self._rate_limit_remaining is not None
            and self._rate_limit_remaining <= RATE_LIMIT_WARNING_THRESHOLD
        ):
            logger.warning(
                f"Rate limit nearly exhausted: {self._rate_limit_remaining} requests left, "
                f"resets at {self._rate_limit_reset_at}"
            )

    def _record_rate_limit(self, result: Dict[str, Any]) -> None:
        rate_limit = result.get("rateLimit") or {}
        if "remaining" in rate_limit:
            self._rate_limit_remaining = rate_limit["remaining"]
        reset_at_str = rate_limit.get("resetAt")
        if reset_at_str:
            self._rate_limit_reset_at = datetime.fromisoformat(
                reset_at_str.replace("Z", "+00:00")
            )
        logger.debug(
            f"Rate limit remaining: {self._rate_limit_remaining}, "
            f"resets at: {self._rate_limit_reset_at}"
        )

    @retry(
        retry=retry_if_exception_type(
            (RateLimitException, asyncio.TimeoutError, aiohttp.ClientConnectionError)
        ),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True
    )
    async def _execute_query(self, document, variables: Optional[Dict[str, Any]] = None) -> dict:
        """Execute GraphQL query with retry logic.

        Args:
            document: Parsed gql document
            variables: Query variables

        Returns:
            Query result dictionary

        Raises:
            RateLimitException: When rate limit is hit (after retries)
            RepositoryNotFoundException: GraphQL NOT_FOUND error
            PermissionDeniedException: Token lacks access
            TransientException: Any other query or server failure
        """
        session = await self._init_client()
        self._check_rate_limit()

        try:
            result = await session.execute(document, variable_values=variables or {})
        except (TransportQueryError, TransportServerError) as e:
            logger.debug(f"GraphQL query failed: {e}")
            raise classify_graphql_error(e) from e

        self._record_rate_limit(result)
        return result

    async def fetch_rate_limit(self) -> Optional[int]:
        """Query the current remaining quota."""
        result = await self._execute_query(self.RATE_LIMIT_QUERY)
        return (result.get("rateLimit") or {}).get("remaining")

    async def discover_repositories(self, owner: str) -> List[RepositoryIdentity]:
        """Fetch every repository of an organization or user.

        Implements pagination over the owner's repositories, ordered by name.

        Args:
            owner: Organization or user login

        Returns:
            Repository identities

        Raises:
            DiscoveryException: When the owner is unknown or listing fails
        """
        repositories: List[RepositoryIdentity] = []
        cursor = None

        logger.info(f"Discovering repositories for {owner}")

        while True:
            try:
                result = await self._execute_query(
                    self.DISCOVER_QUERY, {"owner": owner, "cursor": cursor}
                )
            except Exception as e:
                logger.error(f"Error discovering repositories: {e}")
                raise DiscoveryException(f"Could not list repositories of {owner}: {e}") from e

            repository_owner = result.get("repositoryOwner")
            if repository_owner is None:
                raise DiscoveryException(f"Organization or user {owner!r} not found")

            connection = repository_owner.get("repositories", {})
            for node in connection.get("nodes", []):
                login = (node.get("owner") or {}).get("login")
                name = node.get("name")
                if login and name:
                    repositories.append(RepositoryIdentity(owner=login, name=name))

            page_info = connection.get("pageInfo", {})
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")
            logger.info(f"Discovered {len(repositories)} repositories so far")

        logger.info(f"Found {len(repositories)} repositories via GitHub API")
        return repositories

    async def fetch_repository_signals(self, repository: RepositoryIdentity) -> RepositorySignals:
        """Collect repository facts with one query plus a vulnerability lookup."""
        variables = {"owner": repository.owner, "name": repository.name}
        result = await self._execute_query(self.SIGNALS_QUERY, variables)
        node = result.get("repository")
        if node is None:
            raise RepositoryNotFoundException(f"Repository {repository.full_name} not found")

        topics = tuple(
            item["topic"]["name"]
            for item in (node.get("repositoryTopics") or {}).get("nodes", [])
            if item and item.get("topic")
        )
        workflows = tuple(
            entry["name"]
            for entry in (node.get("workflows") or {}).get("entries", [])
            if entry.get("name", "").endswith((".yml", ".yaml"))
        )
        updated_at = node.get("updatedAt")
        trees = dict(zip(
            COMMUNITY_DIRS,
            (_tree_names(node.get(alias)) for alias in ("rootTree", "githubTree", "docsTree"))
        ))

        def present(names: Sequence[str], directories: Sequence[str] = COMMUNITY_DIRS) -> bool:
            return any(contains_any(trees[directory], names) for directory in directories)

        return RepositorySignals(
            repository=repository,
            description=node.get("description") or "",
            topics=topics,
            language=(node.get("primaryLanguage") or {}).get("name"),
            is_archived=bool(node.get("isArchived")),
            is_private=bool(node.get("isPrivate")),
            updated_at=(
                datetime.fromisoformat(updated_at.replace("Z", "+00:00")) if updated_at else None
            ),
            default_branch=(node.get("defaultBranchRef") or {}).get("name"),
            has_readme=present(README_NAMES),
            has_license=bool(node.get("licenseInfo")) or present(LICENSE_NAMES, ("",)),
            has_contributing=present(CONTRIBUTING_NAMES),
            has_security_policy=(
                bool(node.get("isSecurityPolicyEnabled")) or present(SECURITY_POLICY_NAMES)
            ),
            has_code_of_conduct=bool(node.get("codeOfConduct")) or present(CODE_OF_CONDUCT_NAMES),
            has_dependabot=present(DEPENDABOT_NAMES, (".github",)),
            branch_protection_rules=(node.get("branchProtectionRules") or {}).get("totalCount", 0),
            workflow_files=workflows,
            vulnerabilities=await self._fetch_vulnerabilities(repository)
        )

    async def _fetch_vulnerabilities(
        self,
        repository: RepositoryIdentity
    ) -> Tuple[VulnerabilityAlert, ...]:
        """Open Dependabot alerts; empty when the token may not read them."""
        try:
            result = await self._execute_query(
                self.VULNERABILITY_QUERY,
                {"owner": repository.owner, "name": repository.name}
            )
        except (PermissionDeniedException, TransientException) as e:
            logger.debug(f"Vulnerability alerts unavailable for {repository.full_name}: {e}")
            return ()

        nodes = (
            ((result.get("repository") or {}).get("vulnerabilityAlerts") or {}).get("nodes") or []
        )
        alerts = []
        for node in nodes:
            vulnerability = (node or {}).get("securityVulnerability") or {}
            if not vulnerability:
                continue
            alerts.append(VulnerabilityAlert(
                package=(vulnerability.get("package") or {}).get("name", "unknown"),
                severity=(vulnerability.get("severity") or "low").lower(),
                summary=(vulnerability.get("advisory") or {}).get("summary", "")
            ))
        return tuple(alerts)

    async def find_open_issues(
        self,
        repository: RepositoryIdentity,
        labels: Sequence[str]
    ) -> List[ManagedIssue]:
        """Open issues carrying every label in ``labels``, newest first.

        GitHub's label filter matches any of the labels, so the remaining
        ones are checked here.
        """
        result = await self._execute_query(
            self.OPEN_ISSUES_QUERY,
            {"owner": repository.owner, "name": repository.name, "labels": list(labels)}
        )
        node = result.get("repository")
        if node is None:
            raise RepositoryNotFoundException(f"Repository {repository.full_name} not found")

        wanted = set(labels)
        issues = [_to_issue(item) for item in (node.get("issues") or {}).get("nodes", []) if item]
        return [issue for issue in issues if wanted.issubset(issue.labels)]

    async def ensure_labels(self, repository: RepositoryIdentity, labels: Sequence[str]) -> List[str]:
        """Create missing labels and return the node ids of all of them.

        Returns:
            Label node ids in the order of ``labels``
        """
        result = await self._execute_query(
            self.LABELS_QUERY, {"owner": repository.owner, "name": repository.name}
        )
        node = result.get("repository")
        if node is None:
            raise RepositoryNotFoundException(f"Repository {repository.full_name} not found")

        existing = {
            label["name"].lower(): label["id"]
            for label in (node.get("labels") or {}).get("nodes", [])
            if label
        }
        label_ids = []
        for name in labels:
            label_id = existing.get(name.lower())
            if label_id is None:
                created = await self._execute_query(
                    self.CREATE_LABEL_MUTATION,
                    {"repositoryId": node["id"], "name": name, "color": self.LABEL_COLOR}
                )
                label_id = created["createLabel"]["label"]["id"]
                logger.info(f"Created label '{name}' in {repository.full_name}")
            label_ids.append(label_id)
        return label_ids

    async def create_issue(
        self,
        repository: RepositoryIdentity,
        title: str,
        body: str,
        labels: Sequence[str]
    ) -> ManagedIssue:
        label_ids = await self.ensure_labels(repository, labels)
        repository_id = await self._repository_id(repository)
        result = await self._execute_query(
            self.CREATE_ISSUE_MUTATION,
            {"repositoryId": repository_id, "title": title, "body": body, "labelIds": label_ids}
        )
        return _to_issue(result["createIssue"]["issue"])

    async def _repository_id(self, repository: RepositoryIdentity) -> str:
        result = await self._execute_query(
            self.LABELS_QUERY, {"owner": repository.owner, "name": repository.name}
        )
        return result["repository"]["id"]

    async def update_issue_body(self, issue: ManagedIssue, body: str) -> ManagedIssue:
        result = await self._execute_query(
            self.UPDATE_ISSUE_MUTATION, {"id": issue.node_id, "body": body}
        )
        return _to_issue(result["updateIssue"]["issue"])

    async def close_issue(self, issue: ManagedIssue, comment: str) -> None:
        await self._execute_query(
            self.CLOSE_ISSUE_MUTATION, {"id": issue.node_id, "comment": comment}
        )

    async def commit_files(
        self,
        repository: RepositoryIdentity,
        files: Mapping[str, str],
        message: str
    ) -> str:
        """Add ``files`` to the default branch in one commit.

        Args:
            repository: Target repository
            files: Path to text content
            message: Commit headline

        Returns:
            URL of the created commit
        """
        result = await self._execute_query(
            self.DEFAULT_BRANCH_QUERY, {"owner": repository.owner, "name": repository.name}
        )
        branch = ((result.get("repository") or {}).get("defaultBranchRef")) or {}
        if not branch:
            raise RepositoryNotFoundException(
                f"Repository {repository.full_name} has no default branch"
            )

        additions = [
            {"path": path, "contents": base64.b64encode(text.encode("utf-8")).decode("ascii")}
            for path, text in files.items()
        ]
        result = await self._execute_query(
            self.COMMIT_MUTATION,
            {
                "repository": repository.full_name,
                "branch": branch["name"],
                "headline": message,
                "expectedHeadOid": branch["target"]["oid"],
                "additions": additions,
            }
        )
        commit = result["createCommitOnBranch"]["commit"]
        logger.info(f"Committed {len(additions)} files to {repository.full_name}: {commit['oid'][:7]}")
        return commit["url"]

    async def close(self) -> None:
        """Close the GraphQL client and transport."""
        if self._client and self._session:
            await self._client.close_async()
        self._session = None
        self._client = None
        self._transport = None
