"""
Project catalog client and domain matcher.

Projects live on the auth server (GET /api/projects). A feedback page URL is
mapped to a project by comparing its host against each project's
environment domains.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from common.errors import ErrorKind, error_message
from libs.config import Config, config as default_config

logger = logging.getLogger(__name__)

DOMAIN_FIELDS = ("domainLocal", "domainDevelopment", "domainStaging", "domainProduction")

# Lower wins
SCORE_EXACT = 0
SCORE_LOCALHOST_PORT = 1
SCORE_SUFFIX = 2

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}


class CatalogError(Exception):
    """Project catalog unavailable (not configured or upstream error)."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UPSTREAM):
        super().__init__(message)
        self.kind = kind


@dataclass
class Project:
    """A project entry from the catalog. Unused catalog fields are kept in `extra`."""

    name: str
    display_name: str = ""
    github_repository: Optional[str] = None
    domain_local: Optional[str] = None
    domain_development: Optional[str] = None
    domain_staging: Optional[str] = None
    domain_production: Optional[str] = None
    id: Optional[int] = None
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Project":
        known = {"name", "displayName", "githubRepository", "id", "description", *DOMAIN_FIELDS}
        return cls(
            name=data.get("name") or "",
            display_name=data.get("displayName") or "",
            github_repository=data.get("githubRepository"),
            domain_local=data.get("domainLocal"),
            domain_development=data.get("domainDevelopment"),
            domain_staging=data.get("domainStaging"),
            domain_production=data.get("domainProduction"),
            id=data.get("id"),
            description=data.get("description"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    @property
    def domains(self) -> List[str]:
        """Configured domains in catalog field order, blanks dropped."""
        values = [
            self.domain_local,
            self.domain_development,
            self.domain_staging,
            self.domain_production,
        ]
        return [d for d in values if d]


@dataclass
class ProjectLookup:
    """Outcome of a catalog lookup; `project` is None for no match or error."""

    project: Optional[Project] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


def extract_domain_from_url(url: str) -> str:
    """Return host[:port] of a URL, or "" when it cannot be parsed."""
    if not url or not isinstance(url, str):
        return ""
    try:
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.netloc:
            return ""
        # Validates the port
        parts.port
    except ValueError:
        logger.debug(f"Invalid URL: {url}")
        return ""
    host = parts.netloc.rsplit("@", 1)[-1].lower()
    # Same as the WHATWG URL host: the scheme's default port is not part of it
    if parts.port is not None and DEFAULT_PORTS.get(parts.scheme.lower()) == parts.port:
        host = host.rsplit(":", 1)[0]
    return host


def _localhost_port_match(url_domain: str, project_domain: str) -> bool:
    url_parts = url_domain.split(".")
    project_parts = project_domain.split(".")
    if len(url_parts) >= 2 and len(project_parts) >= 2:
        # "a.localhost:9999" -> "localhost:9999"
        return url_parts[-1] == project_parts[-1]
    return False


def match_score(url_domain: str, project_domain: str) -> Optional[int]:
    """Score a domain pair; None means no match."""
    if not url_domain or not project_domain:
        return None
    if url_domain == project_domain:
        return SCORE_EXACT
    if "localhost" in url_domain and "localhost" in project_domain:
        if _localhost_port_match(url_domain, project_domain):
            return SCORE_LOCALHOST_PORT
        return None
    if url_domain.endswith(f".{project_domain}") or project_domain.endswith(f".{url_domain}"):
        return SCORE_SUFFIX
    return None


def is_domain_match(url_domain: str, project_domain: str) -> bool:
    """
    Check whether a URL host matches a project domain.

    Rules, in order: exact equality; two localhost hosts match when their
    last dot-separated token (localhost:PORT) is equal; otherwise either
    side may be a dot-suffix of the other.
    """
    return match_score(url_domain, project_domain) is not None


def pick_project(url_domain: str, projects: List[Project]) -> Optional[Project]:
    """Lowest score across every (project, domain) pair wins; ties keep catalog order."""
    best: Optional[Tuple[int, int, Project]] = None
    for index, project in enumerate(projects):
        for domain in project.domains:
            score = match_score(url_domain, domain.lower())
            if score is None:
                continue
            if best is None or (score, index) < best[:2]:
                best = (score, index, project)
    return best[2] if best else None


def normalize_repository(value: Optional[str]) -> Optional[str]:
    """Reduce a GitHub URL (SSH or HTTPS) or "owner/repo" to lowercase "owner/repo"."""
    if not value:
        return None
    # Local import keeps the catalog importable without the GitHub client
    from libs.github_client import parse_github_repository

    repo = parse_github_repository(value.strip())
    if repo:
        return f"{repo.owner}/{repo.repo}".lower()
    parts = value.strip().strip("/").split("/")
    if len(parts) == 2 and all(parts):
        owner, name = parts
        if name.endswith(".git"):
            name = name[: -len(".git")]
        return f"{owner}/{name}".lower()
    return None


class ProjectCatalog:
    """Fetches the project list from the auth server and matches against it."""

    def __init__(self, config: Optional[Config] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_config
        self._client = http_client

    async def fetch_projects(self) -> List[Project]:
        """
        Fetch all projects from the auth server.

        Raises:
            CatalogError: When the auth server is not configured or answers with an error
        """
        if not self.config.validate_auth_server_config():
            raise CatalogError(
                "AUTH_SERVER_URL and AUTH_SERVER_TOKEN environment variables are required",
                kind=ErrorKind.CONFIGURATION,
            )

        url = f"{self.config.AUTH_SERVER_URL.rstrip('/')}/api/projects"
        headers = {
            "Authorization": f"Bearer {self.config.AUTH_SERVER_TOKEN}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.get(url, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise CatalogError(
                f"Failed to fetch projects: {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.RequestError as e:
            raise CatalogError(f"Failed to fetch projects: {e}", kind=ErrorKind.TRANSPORT) from e
        except ValueError as e:
            raise CatalogError(f"Invalid project catalog response: {e}") from e

        projects = [Project.from_api(item) for item in (data.get("data") or [])]
        logger.info(f"Fetched {len(projects)} projects from auth server")
        return projects

    async def lookup_by_url(self, url: str) -> ProjectLookup:
        """Find the best project for a page URL, keeping the failure reason."""
        url_domain = extract_domain_from_url(url)
        if not url_domain:
            logger.warning(f"Could not extract domain from URL: {url}")
            return ProjectLookup()

        try:
            projects = await self.fetch_projects()
        except CatalogError as e:
            logger.error(f"Error finding project by URL: {e}")
            return ProjectLookup(error_kind=e.kind, error=error_message(e))

        logger.info(f"Searching for project matching domain: {url_domain}")
        project = pick_project(url_domain, projects)
        if project:
            logger.info(
                f"Found matching project: {project.name} ({project.display_name}) for domain {url_domain}"
            )
        else:
            logger.warning(f"No project found for domain: {url_domain}")
        return ProjectLookup(project=project)

    async def find_project_by_url(self, url: str) -> Optional[Project]:
        """Best matching project for a URL; None on no match, bad URL or catalog error."""
        return (await self.lookup_by_url(url)).project

    async def lookup_by_repository(self, hint: str) -> ProjectLookup:
        """Find the project whose githubRepository names the same owner/repo as `hint`."""
        wanted = normalize_repository(hint)
        if not wanted:
            return ProjectLookup()
        try:
            projects = await self.fetch_projects()
        except CatalogError as e:
            logger.error(f"Error finding project by repository: {e}")
            return ProjectLookup(error_kind=e.kind, error=error_message(e))

        for project in projects:
            if normalize_repository(project.github_repository) == wanted:
                return ProjectLookup(project=project)
        return ProjectLookup()

    async def find_project_by_repository(self, hint: str) -> Optional[Project]:
        return (await self.lookup_by_repository(hint)).project

