"""
Handlers for the three notification jobs.

Each handler turns adapter results into a JobOutcome. Handlers do not
retry, alert or touch the database; the worker does that from the outcome.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from common.errors import RETRYABLE_ERROR_KINDS, ErrorKind, error_message
from common.records import FeedbackRecord
from libs.config import Config, config as default_config
from libs.github_client import (
    GitHubClient,
    GitHubConfigurationError,
    create_issue_data_from_feedback,
    parse_github_repository,
)
from libs.project_catalog import Project, ProjectCatalog
from libs.slack_client import FeedbackNotificationData, SlackNotifier
from libs.task_server_client import TaskServerClient
from services.feedback.ingestion import UNKNOWN_URL
from services.feedback.types import JobStatus

logger = logging.getLogger(__name__)

UNKNOWN_TAB_TITLE = "ページタイトル不明"


@dataclass
class JobOutcome:
    status: JobStatus
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def retryable(self) -> bool:
        return self.status == JobStatus.FAILED and self.error_kind in RETRYABLE_ERROR_KINDS

    @classmethod
    def done(cls, **result) -> "JobOutcome":
        return cls(status=JobStatus.DONE, result=result)

    @classmethod
    def skipped(cls, reason: str, **result) -> "JobOutcome":
        return cls(status=JobStatus.SKIPPED, result={"reason": reason, **result})

    @classmethod
    def failed(cls, error: str, kind: Optional[ErrorKind], **result) -> "JobOutcome":
        return cls(status=JobStatus.FAILED, result=result, error=error, error_kind=kind or ErrorKind.UNKNOWN)


@dataclass
class NotificationAdapters:
    """Outbound clients used by the handlers; tests swap in fakes."""

    catalog: ProjectCatalog
    github: GitHubClient
    task_server: TaskServerClient
    slack: SlackNotifier

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "NotificationAdapters":
        config = config or default_config
        return cls(
            catalog=ProjectCatalog(config),
            github=GitHubClient(config),
            task_server=TaskServerClient(config),
            slack=SlackNotifier(config),
        )


def project_label(project: Optional[Project]) -> Optional[str]:
    if project is None:
        return None
    return project.display_name or project.name or None


class NotificationHandlers:
    """Runs one job kind against one feedback."""

    def __init__(self, adapters: NotificationAdapters, config: Optional[Config] = None):
        self.adapters = adapters
        self.config = config or default_config

    async def run_github_issue(self, feedback: FeedbackRecord, payload: Dict[str, Any]) -> JobOutcome:
        """
        Resolve project and repository, then create the issue.

        Project by URL first, then by the repository hint. A hint that is not
        in the catalog is used as the repository directly.
        """
        url = payload.get("url")
        hint = payload.get("githubRepository")

        if not url and not hint:
            logger.info(f"No URL or repository hint for feedback {feedback.id}; skipping GitHub issue")
            return JobOutcome.skipped("no url or repository hint")

        project: Optional[Project] = None
        if url:
            lookup = await self.adapters.catalog.lookup_by_url(url)
            if not lookup.ok and lookup.error_kind in RETRYABLE_ERROR_KINDS and not hint:
                return JobOutcome.failed(f"project catalog unavailable: {lookup.error}", lookup.error_kind)
            project = lookup.project

        repo_url: Optional[str] = None
        if project is not None:
            repo_url = project.github_repository
        elif hint:
            lookup = await self.adapters.catalog.lookup_by_repository(hint)
            project = lookup.project
            repo_url = project.github_repository if project and project.github_repository else hint

        if project is None and not repo_url:
            logger.warning(f"No project found for feedback {feedback.id} (url={url}); skipping GitHub issue")
            return JobOutcome.skipped("no matching project")

        context = {"project_name": project_label(project), "repository": repo_url}

        if not repo_url:
            return JobOutcome.failed(
                f"プロジェクト {context['project_name']} にGitHubリポジトリが設定されていません",
                ErrorKind.CONFIGURATION,
                **context,
            )

        repository = parse_github_repository(repo_url)
        if repository is None:
            return JobOutcome.failed(
                f"GitHubリポジトリURLの形式が不正です: {repo_url}", ErrorKind.CONFIGURATION, **context
            )

        issue_data = create_issue_data_from_feedback(feedback, payload.get("userName"))
        try:
            issue = await self.adapters.github.create_issue(repository, issue_data)
        except GitHubConfigurationError as e:
            return JobOutcome.failed(error_message(e), ErrorKind.CONFIGURATION, **context)

        if not issue.success:
            return JobOutcome.failed(issue.error or "GitHub issue creation failed", issue.error_kind, **context)

        logger.info(f"GitHub issue created for feedback {feedback.id}: {issue.issue_url}")
        return JobOutcome.done(issue_url=issue.issue_url, issue_number=issue.issue_number, **context)

    async def run_task(self, feedback: FeedbackRecord, payload: Dict[str, Any]) -> JobOutcome:
        api_key = self.config.TASK_SERVER_API_KEY
        if not api_key:
            return JobOutcome.skipped("task server not configured")

        task = await self.adapters.task_server.create_task_from_feedback(
            feedback,
            api_key,
            error_details=payload.get("errorDetails"),
            github_repository=payload.get("githubRepository"),
            user_name=payload.get("userName"),
        )
        if not task.success:
            return JobOutcome.failed(task.error or "task creation failed", task.error_kind)

        logger.info(f"Task created for feedback {feedback.id}: {task.task_url}")
        return JobOutcome.done(task_id=task.task_id, task_url=task.task_url)

    def build_slack_data(
        self,
        feedback: FeedbackRecord,
        payload: Dict[str, Any],
        github_result: Optional[Dict[str, Any]] = None,
    ) -> FeedbackNotificationData:
        screenshot = feedback.screenshot_data
        github_result = github_result or {}
        return FeedbackNotificationData(
            id=str(feedback.id),
            comment=feedback.comment,
            tab_url=payload.get("url") or UNKNOWN_URL,
            tab_title=(screenshot.tab_title if screenshot else None) or UNKNOWN_TAB_TITLE,
            timestamp=feedback.timestamp,
            user_agent=feedback.user_agent or "Unknown",
            screenshot_url=screenshot.screenshot_url if screenshot else None,
            screenshot_data_id=feedback.screenshot_data_id,
            github_issue_url=github_result.get("issue_url"),
            github_repository=github_result.get("repository") or payload.get("githubRepository"),
            project_name=github_result.get("project_name"),
            reporter_name=payload.get("userName") or feedback.user_name,
        )

    async def run_slack(
        self,
        feedback: FeedbackRecord,
        payload: Dict[str, Any],
        github_result: Optional[Dict[str, Any]] = None,
    ) -> JobOutcome:
        data = self.build_slack_data(feedback, payload, github_result)
        sent = await self.adapters.slack.send_feedback_notification(data)
        if sent.success:
            return JobOutcome.done(ts=sent.ts, issue_url=data.github_issue_url)
        if sent.error_kind == ErrorKind.CONFIGURATION:
            return JobOutcome.skipped("slack not configured")
        return JobOutcome.failed(sent.error or "slack notification failed", sent.error_kind)

    async def send_github_failure_alert(self, feedback_id: int, outcome: JobOutcome) -> bool:
        """Post the "GitHub issue failed" alert for a terminally failed job."""
        return await self.adapters.slack.notify_github_issue_error(
            feedback_id,
            outcome.error or "GitHub issue creation failed",
            outcome.result.get("project_name"),
            outcome.result.get("repository"),
        )
