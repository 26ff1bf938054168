"""
Task server client.

Creates a TODO task for a feedback via POST {base}/api/external/tasks,
authenticated with an X-API-Key header.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from common.errors import ErrorKind, UNKNOWN_ERROR_LABEL, error_message
from common.records import FeedbackRecord
from libs.config import Config, config as default_config
from libs.llm_summarizer import LLMSummarizer
from libs.slack_client import format_tokyo_time

logger = logging.getLogger(__name__)

TASK_TAGS = ["フィードバック", "自動作成"]
DEFAULT_ESTIMATED_MINUTES = 60

# Keys rendered on their own line in the error details block
KNOWN_ERROR_DETAIL_KEYS = ("source", "pageUrl", "userAgent", "stack")


@dataclass
class TaskResult:
    success: bool
    task_id: Optional[int] = None
    task_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


def build_task_description(
    feedback: FeedbackRecord,
    error_details: Optional[Dict[str, Any]] = None,
    github_repository: Optional[str] = None,
    user_name: Optional[str] = None,
) -> str:
    """Markdown task description for a feedback."""
    screenshot = feedback.screenshot_data
    tab_url = (screenshot.tab_url if screenshot else None) or feedback.url or "URL不明"
    tab_title = (screenshot.tab_title if screenshot else None) or "ページタイトル不明"

    lines = [
        "## フィードバック内容",
        feedback.comment,
        "",
        "## ページ情報",
        f"- URL: {tab_url}",
        f"- タイトル: {tab_title}",
    ]
    if screenshot and screenshot.screenshot_url:
        lines.append(f"- スクリーンショット: {screenshot.screenshot_url}")

    reporter = user_name or feedback.user_name
    if reporter:
        lines += ["", "## 報告者", reporter]

    if error_details:
        lines += ["", "## エラー詳細"]
        for key in KNOWN_ERROR_DETAIL_KEYS:
            value = error_details.get(key)
            if not value:
                continue
            if key == "stack":
                lines += ["- stack:", "```", str(value), "```"]
            else:
                lines.append(f"- {key}: {value}")
        extra = {k: v for k, v in error_details.items() if k not in KNOWN_ERROR_DETAIL_KEYS}
        if extra:
            lines += ["```json", json.dumps(extra, ensure_ascii=False, indent=2, default=str), "```"]

    if github_repository:
        lines += ["", "## GitHubリポジトリ", github_repository]

    lines += [
        "",
        "## 受信日時",
        format_tokyo_time(feedback.timestamp),
        "",
        "---",
        "*このタスクは自動的に作成されました*",
    ]
    return "\n".join(lines)


class TaskServerClient:
    """Creates tasks on the external task server. Never raises past `create_task_from_feedback`."""

    def __init__(
        self,
        config: Optional[Config] = None,
        summarizer: Optional[LLMSummarizer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or default_config
        self.summarizer = summarizer or LLMSummarizer(self.config)
        self._client = http_client

    @property
    def tasks_url(self) -> str:
        return f"{self.config.TASK_SERVER_BASE_URL}/api/external/tasks"

    def task_url(self, task_id: Any) -> str:
        return f"{self.config.TASK_SERVER_BASE_URL}/tasks/{task_id}"

    async def build_task_payload(
        self,
        feedback: FeedbackRecord,
        error_details: Optional[Dict[str, Any]] = None,
        github_repository: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        title = await self.summarizer.summarize(feedback.comment)
        return {
            "title": title,
            "description": build_task_description(feedback, error_details, github_repository, user_name),
            "status": "TODO",
            "tags": list(TASK_TAGS),
            "estimatedMinutes": DEFAULT_ESTIMATED_MINUTES,
        }

    async def create_task_from_feedback(
        self,
        feedback: FeedbackRecord,
        api_key: str,
        error_details: Optional[Dict[str, Any]] = None,
        github_repository: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> TaskResult:
        """
        Create a task for a feedback.

        Args:
            feedback: Feedback with optional screenshot data
            api_key: Task server API key
            error_details: Optional structured error report from the extension
            github_repository: Optional repository reference for the description
            user_name: Optional reporter name

        Returns:
            TaskResult with task id and URL on success
        """
        if not api_key:
            return TaskResult(
                success=False,
                error="TASK_SERVER_API_KEY is not set",
                error_kind=ErrorKind.CONFIGURATION,
            )

        try:
            payload = await self.build_task_payload(feedback, error_details, github_repository, user_name)
            logger.info(f"Creating task on task server: url={self.tasks_url}, title={payload['title']}")

            headers = {"Content-Type": "application/json", "X-API-Key": api_key}
            if self._client is not None:
                response = await self._client.post(self.tasks_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.post(self.tasks_url, json=payload, headers=headers)

            try:
                data = response.json()
            except ValueError:
                data = {}
            if not isinstance(data, dict):
                data = {}

            if response.status_code >= 400:
                logger.error(
                    f"Task creation failed: {response.status_code} - "
                    f"{data.get('error') or data.get('message')}"
                )
                kind = ErrorKind.CONFIGURATION if response.status_code in (401, 403) else ErrorKind.UPSTREAM
                return TaskResult(
                    success=False,
                    error=data.get("error") or f"HTTPエラー: {response.status_code}",
                    error_kind=kind,
                )

            task = data.get("data") or {}
            if data.get("success") and task.get("id") is not None:
                logger.info(f"Task created: id={task['id']}, title={task.get('title')}")
                return TaskResult(success=True, task_id=task["id"], task_url=self.task_url(task["id"]))

            return TaskResult(
                success=False,
                error=data.get("error") or UNKNOWN_ERROR_LABEL,
                error_kind=ErrorKind.UPSTREAM,
            )

        except httpx.RequestError as e:
            logger.error(f"Task server request error: {e}")
            return TaskResult(success=False, error=error_message(e), error_kind=ErrorKind.TRANSPORT)
        except Exception as e:
            logger.error(f"Unexpected error creating task: {e}", exc_info=True)
            return TaskResult(success=False, error=error_message(e), error_kind=ErrorKind.UNKNOWN)
