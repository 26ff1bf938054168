"""
Feedback Factory - Database operations for feedback submissions.

Provides factory pattern for creating and managing feedback and screenshot
records in the database. Every store failure is logged and re-raised as a
PersistenceError carrying a fixed, user-facing message.
"""

import base64
import binascii
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from common.records import FeedbackRecord, ScreenshotRecord
from models.feedback import Feedback, ScreenshotData, utcnow

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Store access failed. The message is safe to show to clients."""


def encode_dom_tree(dom_tree: str) -> str:
    return base64.b64encode(dom_tree.encode("utf-8")).decode("ascii")


def decode_dom_tree(encoded: str) -> str:
    """Decode a stored DOM tree; rows written before encoding come back unchanged."""
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        logger.warning("Failed to decode DOM tree, returning stored value")
        return encoded


def to_seconds(timestamp_ms: Any) -> int:
    """Millisecond timestamp -> whole seconds (floor)."""
    return int(math.floor(float(timestamp_ms) / 1000))


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    return value if value else None


def screenshot_to_record(row: ScreenshotData) -> ScreenshotRecord:
    return ScreenshotRecord(
        id=row.id,
        screenshot_url=row.screenshot_url,
        dom_tree=decode_dom_tree(row.dom_tree),
        tab_url=row.tab_url,
        tab_title=row.tab_title,
        timestamp=row.timestamp,
        page_info=row.page_info,
        temp_comment=row.temp_comment,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def feedback_to_record(row: Feedback) -> FeedbackRecord:
    return FeedbackRecord(
        id=row.id,
        comment=row.comment,
        timestamp=row.timestamp,
        screenshot_data_id=row.screenshot_data_id,
        user_agent=row.user_agent,
        url=row.url,
        user_name=row.user_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
        screenshot_data=screenshot_to_record(row.screenshot_data) if row.screenshot_data else None,
    )


def local_midnight_utc(now: Optional[datetime] = None) -> datetime:
    """Start of today in server-local time, as naive UTC."""
    local_now = (now or datetime.now(timezone.utc)).astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


class FeedbackFactory:
    """
    Factory for creating and managing Feedback and ScreenshotData records.

    Follows the singleton pattern; every method takes the caller's session.
    """

    _instance: Optional["FeedbackFactory"] = None

    def __new__(cls):
        """Singleton pattern - ensures only one factory instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def _fail(self, db: AsyncSession, message: str, error: Exception) -> None:
        logger.error(f"{message}: {error}")
        try:
            await db.rollback()
        except SQLAlchemyError as rollback_error:
            logger.error(f"Rollback failed: {rollback_error}")
        raise PersistenceError(message) from error

    # ----- ScreenshotData -----

    async def insert_screenshot_data(
        self,
        db: AsyncSession,
        *,
        screenshot_url: str,
        dom_tree: str,
        tab_url: str,
        tab_title: str,
        timestamp: Any,
        page_info: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Store a screenshot + DOM snapshot.

        Args:
            db: Database session
            screenshot_url: Public URL of the uploaded image
            dom_tree: Raw DOM markup (stored base64 encoded)
            tab_url: Page URL at capture time
            tab_title: Page title at capture time
            timestamp: Capture time in epoch milliseconds
            page_info: Optional page metadata

        Returns:
            New screenshot data id

        Raises:
            PersistenceError: If the insert fails
        """
        try:
            row = ScreenshotData(
                screenshot_url=screenshot_url,
                dom_tree=encode_dom_tree(dom_tree),
                tab_url=tab_url,
                tab_title=tab_title or "",
                timestamp=to_seconds(timestamp),
                page_info=page_info or None,
            )
            db.add(row)
            await db.commit()
            return row.id
        except SQLAlchemyError as e:
            await self._fail(db, "スクリーンショットデータの保存に失敗しました", e)

    async def screenshot_exists(self, db: AsyncSession, screenshot_id: str) -> bool:
        try:
            result = await db.execute(select(ScreenshotData.id).where(ScreenshotData.id == screenshot_id))
            return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            await self._fail(db, "スクリーンショットデータの取得に失敗しました", e)

    async def get_screenshot_data(self, db: AsyncSession, screenshot_id: str) -> Optional[ScreenshotRecord]:
        try:
            row = await db.get(ScreenshotData, screenshot_id)
            return screenshot_to_record(row) if row else None
        except SQLAlchemyError as e:
            await self._fail(db, "スクリーンショットデータの取得に失敗しました", e)

    async def update_temp_comment(
        self, db: AsyncSession, screenshot_id: str, temp_comment: str
    ) -> Optional[ScreenshotRecord]:
        """Replace the draft comment; None when the screenshot does not exist."""
        try:
            row = await db.get(ScreenshotData, screenshot_id)
            if row is None:
                return None
            row.temp_comment = temp_comment
            row.updated_at = utcnow()
            await db.commit()
            return screenshot_to_record(row)
        except SQLAlchemyError as e:
            await self._fail(db, "一時コメントの保存に失敗しました", e)

    # ----- Feedback -----

    async def insert_feedback_new(
        self,
        db: AsyncSession,
        *,
        comment: str,
        timestamp: Any,
        screenshot_data_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        url: Optional[str] = None,
        user_name: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        """
        Create a feedback row.

        Args:
            db: Database session
            comment: Feedback comment (required)
            timestamp: Submission time in epoch milliseconds
            screenshot_data_id: Optional screenshot reference
            user_agent: Optional browser user agent
            url: Optional page URL
            user_name: Optional reporter name
            commit: False to only flush, leaving the transaction to the caller

        Returns:
            New feedback id

        Raises:
            PersistenceError: If the insert fails
        """
        try:
            row = Feedback(
                comment=comment,
                screenshot_data_id=_blank_to_none(screenshot_data_id),
                timestamp=to_seconds(timestamp),
                user_agent=_blank_to_none(user_agent),
                url=_blank_to_none(url),
                user_name=_blank_to_none(user_name),
            )
            db.add(row)
            if commit:
                await db.commit()
            else:
                await db.flush()
            return row.id
        except SQLAlchemyError as e:
            await self._fail(db, "フィードバックの保存に失敗しました", e)

    async def get_feedback_by_id(self, db: AsyncSession, feedback_id: int) -> Optional[FeedbackRecord]:
        """
        Retrieve a feedback with its screenshot data.

        Returns:
            FeedbackRecord with decoded DOM tree, or None if not found
        """
        try:
            result = await db.execute(select(Feedback).where(Feedback.id == feedback_id))
            row = result.scalar_one_or_none()
            return feedback_to_record(row) if row else None
        except SQLAlchemyError as e:
            await self._fail(db, "フィードバックの取得に失敗しました", e)

    async def get_all_feedback(self, db: AsyncSession) -> List[FeedbackRecord]:
        try:
            result = await db.execute(select(Feedback).order_by(Feedback.created_at.desc(), Feedback.id.desc()))
            return [feedback_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            await self._fail(db, "フィードバックの取得に失敗しました", e)

    async def get_paginated_feedback(self, db: AsyncSession, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """
        One page of feedback, newest first. Callers clamp page and limit.

        Returns:
            Dict with feedbacks, total, page, limit and totalPages
        """
        skip = (page - 1) * limit
        try:
            total = (await db.execute(select(func.count()).select_from(Feedback))).scalar_one()
            result = await db.execute(
                select(Feedback)
                .order_by(Feedback.created_at.desc(), Feedback.id.desc())
                .offset(skip)
                .limit(limit)
            )
            feedbacks = [feedback_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            await self._fail(db, "フィードバックの取得に失敗しました", e)

        return {
            "feedbacks": feedbacks,
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if limit else 0,
        }

    async def update_feedback_comment(self, db: AsyncSession, feedback_id: int, comment: str) -> bool:
        """False when the feedback does not exist."""
        try:
            result = await db.execute(
                update(Feedback)
                .where(Feedback.id == feedback_id)
                .values(comment=comment, updated_at=utcnow())
            )
            await db.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            await self._fail(db, "フィードバックのコメント更新に失敗しました", e)

    async def delete_feedback(self, db: AsyncSession, feedback_id: int) -> bool:
        """False when the feedback does not exist. Screenshot data is left alone."""
        try:
            result = await db.execute(delete(Feedback).where(Feedback.id == feedback_id))
            await db.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            await self._fail(db, "フィードバックの削除に失敗しました", e)

    async def get_feedback_stats(self, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Counts by creation time.

        Returns:
            Dict with total, today (since local midnight) and thisWeek (last 7 days)
        """
        now = now or datetime.now(timezone.utc)
        today_start = local_midnight_utc(now)
        week_start = now.astimezone(timezone.utc).replace(tzinfo=None) - timedelta(days=7)
        try:
            total = (await db.execute(select(func.count()).select_from(Feedback))).scalar_one()
            today = (
                await db.execute(select(func.count()).select_from(Feedback).where(Feedback.created_at >= today_start))
            ).scalar_one()
            this_week = (
                await db.execute(select(func.count()).select_from(Feedback).where(Feedback.created_at >= week_start))
            ).scalar_one()
        except SQLAlchemyError as e:
            await self._fail(db, "統計情報の取得に失敗しました", e)

        return {"total": total, "today": today, "thisWeek": this_week}


# Global factory instance
_feedback_factory: Optional[FeedbackFactory] = None


def get_feedback_factory() -> FeedbackFactory:
    """
    Get or create the global feedback factory instance.

    Returns:
        FeedbackFactory instance
    """
    global _feedback_factory
    if _feedback_factory is None:
        _feedback_factory = FeedbackFactory()
    return _feedback_factory
