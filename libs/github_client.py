"""
GitHub issues client.

Creates issues through the REST API (POST /repos/{owner}/{repo}/issues)
and builds the Markdown issue body for a feedback.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from common.errors import ErrorKind, error_message
from common.records import FeedbackRecord
from libs.config import Config, config as default_config
from libs.slack_client import format_tokyo_time

logger = logging.getLogger(__name__)

ISSUE_LABELS = ["feedback", "user-report"]

SSH_REPOSITORY_RE = re.compile(r"git@github\.com:([^/]+)/([^.]+)(?:\.git)?$")
HTTPS_REPOSITORY_RE = re.compile(r"https://github\.com/([^/]+)/([^/]+?)(?:\.git)?$")

ISSUE_FOOTER = "*このissueは自動的にフィードバックシステムから作成されました*"


class GitHubConfigurationError(Exception):
    """GITHUB_TOKEN is missing."""


@dataclass
class GitHubRepository:
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass
class GitHubIssueData:
    title: str
    body: str
    labels: List[str] = field(default_factory=lambda: list(ISSUE_LABELS))


@dataclass
class IssueResult:
    success: bool
    issue_number: Optional[int] = None
    issue_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


def parse_github_repository(url: Optional[str]) -> Optional[GitHubRepository]:
    """Extract owner/repo from an SSH or HTTPS GitHub URL; None for anything else."""
    if not url or not isinstance(url, str):
        return None

    ssh_match = SSH_REPOSITORY_RE.search(url)
    if ssh_match:
        return GitHubRepository(owner=ssh_match.group(1), repo=ssh_match.group(2))

    https_match = HTTPS_REPOSITORY_RE.search(url)
    if https_match:
        return GitHubRepository(owner=https_match.group(1), repo=https_match.group(2))

    logger.warning(f"Invalid GitHub repository URL: {url}")
    return None


def create_issue_data_from_feedback(
    feedback: FeedbackRecord, user_name: Optional[str] = None
) -> GitHubIssueData:
    """
    Build the issue title and Markdown body for a feedback.

    Page info and the screenshot image only appear when screenshot data is
    attached; the reporter line only when a user name is known.
    """
    screenshot = feedback.screenshot_data
    reporter = user_name or feedback.user_name
    received_at = format_tokyo_time(feedback.timestamp)

    if screenshot:
        title = f"[フィードバック] {screenshot.tab_title}"
    else:
        title = f"[エラーレポート] フィードバック #{feedback.id}"

    sections = ["## フィードバック詳細", "", "**コメント:**", feedback.comment, ""]

    if screenshot:
        sections += [
            "**ページ情報:**",
            f"- URL: {screenshot.tab_url}",
            f"- タイトル: {screenshot.tab_title}",
            f"- 受信日時: {received_at}",
            "",
            "**スクリーンショット:**",
            f"![Screenshot]({screenshot.screenshot_url})",
            "",
        ]

    if reporter:
        sections += [f"**報告者:** {reporter}", ""]

    sections += [
        "**技術情報:**",
        f"- フィードバックID: {feedback.id}",
        f"- User Agent: {feedback.user_agent or 'Unknown'}",
    ]
    if not screenshot:
        if feedback.url:
            sections.append(f"- URL: {feedback.url}")
        sections.append(f"- 受信日時: {received_at}")

    sections += ["", "---", ISSUE_FOOTER]

    return GitHubIssueData(title=title, body="\n".join(sections), labels=list(ISSUE_LABELS))


class GitHubClient:
    """Thin async wrapper around the GitHub issues API."""

    def __init__(self, config: Optional[Config] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_config
        self._client = http_client

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.GITHUB_TOKEN}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def create_issue(self, repository: GitHubRepository, issue_data: GitHubIssueData) -> IssueResult:
        """
        Create an issue in the given repository.

        Args:
            repository: Target owner/repo
            issue_data: Title, body and labels

        Returns:
            IssueResult; transport and API errors come back as success=False

        Raises:
            GitHubConfigurationError: If GITHUB_TOKEN is not set
        """
        if not self.config.GITHUB_TOKEN:
            raise GitHubConfigurationError("GITHUB_TOKEN environment variable is not set")

        url = f"{self.config.GITHUB_API_URL}/repos/{repository.owner}/{repository.repo}/issues"
        body = {"title": issue_data.title, "body": issue_data.body, "labels": issue_data.labels or []}

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.post(url, json=body, headers=self._headers())
            response.raise_for_status()
            data = response.json()

            logger.info(f"GitHub issue created: {data.get('html_url')}")
            return IssueResult(
                success=True,
                issue_number=data.get("number"),
                issue_url=data.get("html_url"),
            )

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            try:
                detail = e.response.json().get("message") or e.response.text
            except ValueError:
                detail = e.response.text
            logger.error(f"GitHub API error for {repository.full_name}: {status} - {detail}")
            # 4xx means a bad repo, permissions or token: retrying will not help
            kind = ErrorKind.UPSTREAM if status >= 500 or status == 429 else ErrorKind.CONFIGURATION
            return IssueResult(success=False, error=f"{status}: {detail}", error_kind=kind)
        except httpx.RequestError as e:
            logger.error(f"GitHub request error: {e}")
            return IssueResult(success=False, error=error_message(e), error_kind=ErrorKind.TRANSPORT)
        except Exception as e:
            logger.error(f"Unexpected error creating GitHub issue: {e}", exc_info=True)
            return IssueResult(success=False, error=error_message(e), error_kind=ErrorKind.UNKNOWN)

