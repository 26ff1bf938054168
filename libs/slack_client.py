"""
Slack notification client.

Sends feedback notifications either through the Web API (bot token,
chat.postMessage, replies threaded under the title message) or through an
incoming webhook (two plain posts). The bot token wins when both are set.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import httpx

from common.errors import ErrorKind, error_message
from libs.config import Config, config as default_config

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"

# Asia/Tokyo has no DST
JST = timezone(timedelta(hours=9), name="Asia/Tokyo")

# Below this an epoch value is read as seconds, otherwise as milliseconds
SECONDS_MS_BOUNDARY = 10_000_000_000

DEFAULT_PROJECT_LABEL = "プロジェクト"
ANONYMOUS_LABEL = "匿名"


@dataclass
class SlackSendResult:
    """Result of one Slack post."""

    success: bool
    ts: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None


@dataclass
class FeedbackNotificationData:
    """Everything the title and detail messages show."""

    id: str
    comment: str
    tab_url: str
    tab_title: str
    timestamp: Union[int, float, str, None]
    user_agent: str
    screenshot_url: Optional[str] = None
    screenshot_data_id: Optional[str] = None
    github_issue_url: Optional[str] = None
    github_repository: Optional[str] = None
    project_name: Optional[str] = None
    reporter_name: Optional[str] = None


def normalize_timestamp_ms(value: Union[int, float, str, None]) -> Optional[float]:
    """
    Normalize an epoch value to milliseconds.

    Numbers and numeric strings below 10**10 are seconds and get multiplied by
    1000; larger values are already milliseconds. Other strings are parsed as
    ISO dates. Returns None when nothing works.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        numeric = float(value)
    else:
        try:
            numeric = float(str(value).strip())
        except ValueError:
            try:
                parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp() * 1000

    if numeric != numeric:  # NaN
        return None
    return numeric * 1000 if numeric < SECONDS_MS_BOUNDARY else numeric


def format_tokyo_time(value: Union[int, float, str, datetime, None]) -> str:
    """Render an epoch value (or datetime) as YYYY/MM/DD HH:MM:SS in Asia/Tokyo."""
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    else:
        ms = normalize_timestamp_ms(value)
        if ms is None:
            return str(value)
        try:
            moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            # Outside the datetime range (year 1..9999)
            return str(value)
    try:
        return moment.astimezone(JST).strftime("%Y/%m/%d %H:%M:%S")
    except (ValueError, OverflowError):
        return str(value)


def _mrkdwn(text: str) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": text}


class SlackNotifier:
    """Posts feedback notifications and GitHub failure alerts to Slack."""

    def __init__(self, config: Optional[Config] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_config
        self._client = http_client

    @property
    def mode(self) -> Optional[str]:
        return self.config.slack_mode()

    @property
    def channel(self) -> str:
        return self.config.SLACK_CHANNEL_ID or "#general"

    # ----- message builders -----

    def create_title_message(self, data: FeedbackNotificationData) -> Dict[str, Any]:
        """Thread parent: "[FB]{project} ({reporter})" plus the page link."""
        title_text = (
            f"[FB]{data.project_name or DEFAULT_PROJECT_LABEL} "
            f"({data.reporter_name or ANONYMOUS_LABEL})"
        )
        return {
            "channel": self.channel,
            "text": title_text,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": title_text}},
                {"type": "section", "text": _mrkdwn(f"*{data.tab_title}*\n<{data.tab_url}|{data.tab_url}>")},
            ],
        }

    def create_detail_message(
        self, data: FeedbackNotificationData, thread_ts: Optional[str] = None
    ) -> Dict[str, Any]:
        """Detail reply: ID, time, comment, repository, issue link, screenshot, user agent."""
        blocks: List[Dict[str, Any]] = [
            {
                "type": "section",
                "fields": [
                    _mrkdwn(f"*ID:*\n{data.id}"),
                    _mrkdwn(f"*投稿時刻:*\n{format_tokyo_time(data.timestamp)}"),
                ],
            },
            {"type": "section", "text": _mrkdwn(f"*コメント:*\n{data.comment}")},
        ]

        if data.github_repository:
            blocks.append(
                {"type": "section", "text": _mrkdwn(f"*GitHubリポジトリ:*\n{data.github_repository}")}
            )

        if data.github_issue_url:
            blocks.append(
                {
                    "type": "section",
                    "text": _mrkdwn(f"*GitHub Issue:*\n<{data.github_issue_url}|Issue を確認>"),
                }
            )

        # Slack only renders publicly reachable images
        if data.screenshot_url and data.screenshot_url.startswith(("http://", "https://")):
            blocks.append(
                {
                    "type": "image",
                    "title": {"type": "plain_text", "text": "スクリーンショット"},
                    "image_url": data.screenshot_url,
                    "alt_text": "フィードバック時のスクリーンショット",
                }
            )

        blocks.append(
            {"type": "context", "elements": [_mrkdwn(f"*ユーザーエージェント:* {data.user_agent}")]}
        )

        message: Dict[str, Any] = {
            "channel": self.channel,
            "text": "フィードバックの詳細",
            "blocks": blocks,
        }
        if thread_ts:
            message["thread_ts"] = thread_ts
        return message

    def create_github_issue_error_message(
        self,
        feedback_id: int,
        error: str,
        project_name: Optional[str] = None,
        repo_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        blocks: List[Dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": "⚠️ GitHub Issue作成エラー"}},
            {
                "type": "section",
                "fields": [
                    _mrkdwn(f"*フィードバックID:*\n{feedback_id}"),
                    _mrkdwn(f"*エラー発生時刻:*\n{format_tokyo_time(datetime.now(timezone.utc))}"),
                ],
            },
        ]

        if project_name or repo_url:
            fields = []
            if project_name:
                fields.append(_mrkdwn(f"*プロジェクト:*\n{project_name}"))
            if repo_url:
                fields.append(_mrkdwn(f"*リポジトリ:*\n{repo_url}"))
            blocks.append({"type": "section", "fields": fields})

        blocks.append({"type": "section", "text": _mrkdwn(f"*エラー内容:*\n```{error}```")})
        blocks.append(
            {
                "type": "context",
                "elements": [
                    _mrkdwn(
                        "💡 *考えられる原因:* リポジトリが存在しない、アクセス権限がない、GitHub Tokenが無効など"
                    )
                ],
            }
        )

        return {
            "channel": self.channel,
            "text": "GitHub Issue作成に失敗しました",
            "blocks": blocks,
        }

    # ----- transport -----

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, **kwargs)
        async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
            return await client.post(url, **kwargs)

    async def send_message(self, message: Dict[str, Any]) -> SlackSendResult:
        """Post one message with whichever transport is configured. Never raises."""
        mode = self.mode
        if mode is None:
            logger.warning("SLACK_BOT_TOKEN / SLACK_WEBHOOK_URL not set. Skipping Slack notification.")
            return SlackSendResult(
                success=False,
                error_kind=ErrorKind.CONFIGURATION,
                error="Slack is not configured",
            )

        try:
            if mode == "bot":
                response = await self._post(
                    SLACK_POST_MESSAGE_URL,
                    json=message,
                    headers={
                        "Authorization": f"Bearer {self.config.SLACK_BOT_TOKEN}",
                        "Content-Type": "application/json",
                    },
                )
            else:
                # Webhooks post to a fixed channel and cannot thread
                payload = {k: v for k, v in message.items() if k not in ("channel", "thread_ts")}
                response = await self._post(self.config.SLACK_WEBHOOK_URL, json=payload)

            if response.status_code >= 400:
                logger.error(
                    f"Slack send error: {response.status_code} {response.reason_phrase} - {response.text}"
                )
                return SlackSendResult(
                    success=False,
                    error_kind=ErrorKind.UPSTREAM,
                    error=f"HTTP {response.status_code}",
                )

            if mode == "webhook":
                return SlackSendResult(success=True)

            data = response.json()
            if not data.get("ok"):
                logger.error(f"Slack API error: {data.get('error')}")
                return SlackSendResult(
                    success=False,
                    error_kind=ErrorKind.UPSTREAM,
                    error=str(data.get("error") or "unknown Slack error"),
                )

            return SlackSendResult(success=True, ts=data.get("ts"))

        except httpx.RequestError as e:
            logger.error(f"Slack request error: {e}")
            return SlackSendResult(success=False, error_kind=ErrorKind.TRANSPORT, error=error_message(e))
        except Exception as e:
            logger.error(f"Unexpected error sending Slack message: {e}", exc_info=True)
            return SlackSendResult(success=False, error_kind=ErrorKind.UNKNOWN, error=error_message(e))

    # ----- notifications -----

    async def send_feedback_notification(self, data: FeedbackNotificationData) -> SlackSendResult:
        """
        Send the title message, then the detail message.

        In bot mode the detail is a thread reply to the title, so a title
        without a `ts` counts as a failure. Success needs both posts.

        Returns:
            SlackSendResult of the failing step, or of the detail post on success
        """
        # Built up front so nothing after the title post can fail before the reply
        detail_message = self.create_detail_message(data)

        title_result = await self.send_message(self.create_title_message(data))
        if not title_result.success:
            logger.error(f"Slack title send failed for feedback {data.id}")
            return title_result

        thread_ts = title_result.ts
        if self.mode == "bot" and not thread_ts:
            logger.error(f"Slack title response carried no ts for feedback {data.id}")
            return SlackSendResult(
                success=False,
                error_kind=ErrorKind.UPSTREAM,
                error="missing ts in chat.postMessage response",
            )

        if thread_ts:
            detail_message["thread_ts"] = thread_ts
        detail_result = await self.send_message(detail_message)
        if not detail_result.success:
            logger.error(f"Slack detail send failed for feedback {data.id}")
            return detail_result

        logger.info(f"Slack notification sent for feedback {data.id}")
        detail_result.ts = thread_ts
        return detail_result

    async def notify_feedback_received(self, data: FeedbackNotificationData) -> bool:
        return (await self.send_feedback_notification(data)).success

    async def notify_github_issue_error(
        self,
        feedback_id: int,
        error: str,
        project_name: Optional[str] = None,
        repo_url: Optional[str] = None,
    ) -> bool:
        """Alert the channel that issue creation failed for a feedback."""
        message = self.create_github_issue_error_message(feedback_id, error, project_name, repo_url)
        result = await self.send_message(message)
        return result.success
