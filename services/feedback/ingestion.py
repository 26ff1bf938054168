"""
Feedback ingestion: the synchronous part of POST /feedback.

Validates the body, resolves the optional screenshot, then stores the
feedback row and its notification jobs in one transaction. Side effects
happen later in the outbox worker.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from common.records import ScreenshotRecord
from libs.config import Config
from models.feedback import NotificationJob, utcnow
from services.feedback.feedback_factory import PersistenceError, get_feedback_factory
from services.feedback.schemas import FeedbackCreateRequest
from services.feedback.types import JobKind, JobStatus

logger = logging.getLogger(__name__)

UNKNOWN_URL = "Unknown URL"


class FeedbackValidationError(Exception):
    """Client input is missing or malformed (400)."""


@dataclass
class IngestionResult:
    feedback_id: int
    enqueued: List[str] = field(default_factory=list)
    deduplicated: List[str] = field(default_factory=list)


def resolve_url(
    url: Optional[str],
    screenshot: Optional[ScreenshotRecord] = None,
    error_details: Optional[Dict[str, Any]] = None,
) -> str:
    """Request url > screenshot tab URL > errorDetails.pageUrl > "Unknown URL"."""
    if url:
        return url
    if screenshot and screenshot.tab_url:
        return screenshot.tab_url
    page_url = (error_details or {}).get("pageUrl")
    if page_url and isinstance(page_url, str):
        return page_url
    return UNKNOWN_URL


def compute_dedup_key(
    comment: str,
    resolved_url: str,
    screenshot_data_id: Optional[str],
    user_name: Optional[str],
) -> str:
    """Stable fingerprint of a submission; identical resubmissions share it."""
    parts = [comment.strip(), resolved_url, screenshot_data_id or "", user_name or ""]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def jobs_for(config: Config) -> List[JobKind]:
    """Job kinds created per feedback; the task job only when the task server is configured."""
    kinds = [JobKind.GITHUB_ISSUE]
    if config.task_server_enabled():
        kinds.append(JobKind.TASK)
    kinds.append(JobKind.SLACK)
    return kinds


async def _recent_duplicate_kinds(db: AsyncSession, dedup_key: str, window_seconds: int) -> set:
    since = utcnow() - timedelta(seconds=window_seconds)
    result = await db.execute(
        select(NotificationJob.kind).where(
            NotificationJob.dedup_key == dedup_key,
            NotificationJob.status != JobStatus.FAILED.value,
            NotificationJob.created_at >= since,
        )
    )
    return set(result.scalars().all())


async def ingest_feedback(db: AsyncSession, body: FeedbackCreateRequest, config: Config) -> IngestionResult:
    """
    Validate and persist a feedback submission plus its outbox jobs.

    Args:
        db: Database session
        body: Parsed request body
        config: Service configuration

    Returns:
        IngestionResult with the new feedback id and the job kinds enqueued

    Raises:
        FeedbackValidationError: If the comment is missing or blank
        PersistenceError: If the feedback or its jobs cannot be stored
    """
    if not body.comment or not body.comment.strip():
        raise FeedbackValidationError("必須項目が不足しています (comment)")

    factory = get_feedback_factory()

    screenshot: Optional[ScreenshotRecord] = None
    if body.uploadedDataId:
        screenshot = await factory.get_screenshot_data(db, body.uploadedDataId)
        if screenshot is None:
            logger.warning(
                f"Screenshot data {body.uploadedDataId} not found; storing feedback without screenshot"
            )

    timestamp_ms = body.timestamp if body.timestamp is not None else int(time.time() * 1000)
    resolved_url = resolve_url(body.url, screenshot, body.errorDetails)
    screenshot_id = screenshot.id if screenshot else None
    dedup_key = compute_dedup_key(body.comment, resolved_url, screenshot_id, body.userName)

    feedback_id = await factory.insert_feedback_new(
        db,
        comment=body.comment,
        timestamp=timestamp_ms,
        screenshot_data_id=screenshot_id,
        user_agent=body.userAgent,
        url=body.url,
        user_name=body.userName,
        commit=False,
    )

    result = IngestionResult(feedback_id=feedback_id)
    payload = {
        "url": None if resolved_url == UNKNOWN_URL else resolved_url,
        "githubRepository": body.githubRepository or None,
        "userName": body.userName or None,
        "errorDetails": body.errorDetails,
    }

    try:
        duplicates = await _recent_duplicate_kinds(db, dedup_key, config.DEDUP_WINDOW_SECONDS)
        now = utcnow()
        for kind in jobs_for(config):
            if kind.value in duplicates:
                result.deduplicated.append(kind.value)
                continue
            db.add(
                NotificationJob(
                    feedback_id=feedback_id,
                    kind=kind.value,
                    status=JobStatus.PENDING.value,
                    dedup_key=dedup_key,
                    payload=payload,
                    available_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            result.enqueued.append(kind.value)
        await db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to store feedback and notification jobs: {e}")
        await db.rollback()
        raise PersistenceError("フィードバックの保存に失敗しました") from e

    if result.deduplicated:
        logger.info(
            f"Feedback {feedback_id} matches a recent submission; skipped jobs: {', '.join(result.deduplicated)}"
        )
    logger.info(f"フィードバックを受信しました: ID {feedback_id}")
    return result
