# pytest services/feedback/tests/test_feedback_factory.py -q

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from models.feedback import Feedback, ScreenshotData
from services.feedback.feedback_factory import (
    PersistenceError,
    decode_dom_tree,
    encode_dom_tree,
    get_feedback_factory,
    to_seconds,
)

pytestmark = pytest.mark.unit

factory = get_feedback_factory()


async def add_screenshot(db, **overrides):
    values = dict(
        screenshot_url="https://cdn.example.com/shot.png",
        dom_tree="<html><body>日本語</body></html>",
        tab_url="https://acme.example.com/page",
        tab_title="Page",
        timestamp=1734944285123,
        page_info={"url": "https://acme.example.com/page", "title": "Page"},
    )
    values.update(overrides)
    return await factory.insert_screenshot_data(db, **values)


async def add_feedback(db, comment="comment", **overrides):
    values = dict(comment=comment, timestamp=1734944285999)
    values.update(overrides)
    return await factory.insert_feedback_new(db, **values)


def test_factory_is_singleton():
    assert get_feedback_factory() is factory


def test_dom_tree_round_trip_and_legacy_rows():
    encoded = encode_dom_tree("<p>こんにちは</p>")
    assert encoded != "<p>こんにちは</p>"
    assert decode_dom_tree(encoded) == "<p>こんにちは</p>"
    # Rows written before encoding was introduced
    assert decode_dom_tree("<p>raw</p>") == "<p>raw</p>"


def test_to_seconds_floors():
    assert to_seconds(1734944285999) == 1734944285
    assert to_seconds("1000") == 1


# ----------------------------
# Screenshot data
# ----------------------------


@pytest.mark.asyncio
async def test_insert_and_get_screenshot(db_session):
    screenshot_id = await add_screenshot(db_session)

    record = await factory.get_screenshot_data(db_session, screenshot_id)
    assert record.dom_tree == "<html><body>日本語</body></html>"
    assert record.timestamp == 1734944285
    assert record.page_info["title"] == "Page"
    assert await factory.screenshot_exists(db_session, screenshot_id)

    stored = (await db_session.execute(select(ScreenshotData.dom_tree))).scalar_one()
    assert stored == encode_dom_tree("<html><body>日本語</body></html>")


@pytest.mark.asyncio
async def test_missing_screenshot_is_none_not_error(db_session):
    assert await factory.get_screenshot_data(db_session, "missing") is None
    assert not await factory.screenshot_exists(db_session, "missing")
    assert await factory.update_temp_comment(db_session, "missing", "x") is None


@pytest.mark.asyncio
async def test_update_temp_comment(db_session):
    screenshot_id = await add_screenshot(db_session)

    record = await factory.update_temp_comment(db_session, screenshot_id, "下書き")
    assert record.temp_comment == "下書き"

    record = await factory.update_temp_comment(db_session, screenshot_id, None)
    assert record.temp_comment is None


# ----------------------------
# Feedback
# ----------------------------


@pytest.mark.asyncio
async def test_insert_feedback_with_screenshot(db_session):
    screenshot_id = await add_screenshot(db_session)
    feedback_id = await add_feedback(
        db_session, screenshot_data_id=screenshot_id, user_agent="UA", url="", user_name="tanaka"
    )

    record = await factory.get_feedback_by_id(db_session, feedback_id)
    assert record.timestamp == 1734944285
    assert record.url is None
    assert record.user_name == "tanaka"
    assert record.screenshot_data.id == screenshot_id
    assert record.screenshot_data.dom_tree.startswith("<html>")

    api = record.to_api(include_dom=False)
    assert api["screenshotDataId"] == screenshot_id
    assert "domTree" not in api["screenshotData"]
    assert api["createdAt"].endswith("Z")


@pytest.mark.asyncio
async def test_get_feedback_not_found(db_session):
    assert await factory.get_feedback_by_id(db_session, 999) is None


@pytest.mark.asyncio
async def test_update_and_delete_report_missing_rows(db_session):
    feedback_id = await add_feedback(db_session)

    assert await factory.update_feedback_comment(db_session, feedback_id, "edited")
    assert (await factory.get_feedback_by_id(db_session, feedback_id)).comment == "edited"
    assert not await factory.update_feedback_comment(db_session, 999, "edited")

    assert await factory.delete_feedback(db_session, feedback_id)
    assert not await factory.delete_feedback(db_session, feedback_id)


@pytest.mark.asyncio
async def test_delete_feedback_keeps_screenshot(db_session):
    screenshot_id = await add_screenshot(db_session)
    feedback_id = await add_feedback(db_session, screenshot_data_id=screenshot_id)

    assert await factory.delete_feedback(db_session, feedback_id)
    assert await factory.screenshot_exists(db_session, screenshot_id)


@pytest.mark.asyncio
async def test_pagination_newest_first(db_session):
    for i in range(5):
        await add_feedback(db_session, comment=f"c{i}")

    page1 = await factory.get_paginated_feedback(db_session, page=1, limit=2)
    page3 = await factory.get_paginated_feedback(db_session, page=3, limit=2)

    assert page1["total"] == 5
    assert page1["totalPages"] == 3
    assert [f.comment for f in page1["feedbacks"]] == ["c4", "c3"]
    assert [f.comment for f in page3["feedbacks"]] == ["c0"]
    assert len(await factory.get_all_feedback(db_session)) == 5


@pytest.mark.asyncio
async def test_feedback_stats(db_session):
    now = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
    ids = [await add_feedback(db_session, comment=f"c{i}") for i in range(3)]

    naive_now = now.replace(tzinfo=None)
    ages = [timedelta(0), timedelta(days=3), timedelta(days=30)]
    for feedback_id, age in zip(ids, ages):
        await db_session.execute(
            update(Feedback).where(Feedback.id == feedback_id).values(created_at=naive_now - age)
        )
    await db_session.commit()

    stats = await factory.get_feedback_stats(db_session, now=now)
    assert stats["total"] == 3
    assert stats["thisWeek"] == 2
    assert stats["today"] == 1


@pytest.mark.asyncio
async def test_store_failure_becomes_persistence_error(db_session, mocker):
    mocker.patch.object(
        db_session, "commit", AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))
    )
    rollback = mocker.patch.object(db_session, "rollback", AsyncMock())

    with pytest.raises(PersistenceError, match="フィードバックの保存に失敗しました"):
        await add_feedback(db_session)
    rollback.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operation, message",
    [
        (lambda db, fid: factory.update_feedback_comment(db, fid, "edited"), "フィードバックのコメント更新に失敗しました"),
        (lambda db, fid: factory.delete_feedback(db, fid), "フィードバックの削除に失敗しました"),
    ],
)
async def test_update_and_delete_failures_become_persistence_error(db_session, mocker, operation, message):
    feedback_id = await add_feedback(db_session)
    mocker.patch.object(
        db_session, "commit", AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("connection lost")))
    )

    with pytest.raises(PersistenceError, match=message):
        await operation(db_session, feedback_id)
