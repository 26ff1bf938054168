# pytest libs/tests/test_slack_client.py -q

import json
from datetime import datetime, timezone

import httpx
import pytest

from common.errors import ErrorKind
from conftest import make_config
from libs.slack_client import (
    SLACK_POST_MESSAGE_URL,
    FeedbackNotificationData,
    SlackNotifier,
    format_tokyo_time,
    normalize_timestamp_ms,
)

pytestmark = pytest.mark.unit

WEBHOOK_URL = "https://hooks.slack.test/services/T000/B000/XXX"


def make_data(**overrides) -> FeedbackNotificationData:
    values = dict(
        id="12",
        comment="ボタンが押せません",
        tab_url="https://acme.example.com/settings",
        tab_title="Settings",
        timestamp=1734944285000,
        user_agent="Mozilla/5.0",
        screenshot_url="https://cdn.example.com/shot.png",
        screenshot_data_id="abc",
    )
    values.update(overrides)
    return FeedbackNotificationData(**values)


def recorder(responses):
    """MockTransport handler returning `responses` in order and recording requests."""
    calls = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return queue.pop(0)

    return handler, calls


# ----------------------------
# Time formatting
# ----------------------------


@pytest.mark.parametrize(
    "value",
    [1734944285, 1734944285000, "1734944285", "1734944285000", "2024-12-23T08:58:05Z"],
)
def test_timestamp_forms_render_the_same_tokyo_time(value):
    assert format_tokyo_time(value) == "2024/12/23 17:58:05"


def test_format_tokyo_time_datetime():
    moment = datetime(2024, 12, 23, 8, 58, 5, tzinfo=timezone.utc)
    assert format_tokyo_time(moment) == "2024/12/23 17:58:05"


def test_format_tokyo_time_unparsable_returns_raw():
    assert format_tokyo_time("yesterday") == "yesterday"


@pytest.mark.parametrize("value", [10**17, -(10**18), "99999999999999999999"])
def test_format_tokyo_time_out_of_range_returns_raw(value):
    assert format_tokyo_time(value) == str(value)


def test_normalize_timestamp_ms_boundary():
    assert normalize_timestamp_ms(9_999_999_999) == 9_999_999_999_000
    assert normalize_timestamp_ms(10_000_000_000) == 10_000_000_000
    assert normalize_timestamp_ms(None) is None
    assert normalize_timestamp_ms(True) is None


# ----------------------------
# Message builders
# ----------------------------


def test_title_message_uses_project_and_reporter():
    notifier = SlackNotifier(make_config())
    message = notifier.create_title_message(make_data(project_name="Acme Web", reporter_name="tanaka"))

    assert message["channel"] == "#feedback"
    assert message["text"] == "[FB]Acme Web (tanaka)"
    assert "<https://acme.example.com/settings|" in message["blocks"][1]["text"]["text"]


def test_title_message_defaults():
    message = SlackNotifier(make_config()).create_title_message(make_data())
    assert message["text"] == "[FB]プロジェクト (匿名)"


def test_detail_message_sections():
    notifier = SlackNotifier(make_config())
    message = notifier.create_detail_message(
        make_data(
            github_issue_url="https://github.com/acme/web/issues/42",
            github_repository="https://github.com/acme/web",
        ),
        thread_ts="1700000000.000100",
    )

    assert message["thread_ts"] == "1700000000.000100"
    text = json.dumps(message, ensure_ascii=False)
    assert "2024/12/23 17:58:05" in text
    assert "ボタンが押せません" in text
    assert "https://github.com/acme/web/issues/42" in text
    assert any(b["type"] == "image" for b in message["blocks"])
    assert message["blocks"][-1]["type"] == "context"


def test_detail_message_skips_non_public_screenshot():
    message = SlackNotifier(make_config()).create_detail_message(make_data(screenshot_url="/uploads/x.png"))
    assert not any(b["type"] == "image" for b in message["blocks"])
    assert "thread_ts" not in message


def test_github_issue_error_message_lists_context():
    message = SlackNotifier(make_config()).create_github_issue_error_message(
        12, "404: Not Found", "Acme Web", "https://github.com/acme/web"
    )
    text = json.dumps(message, ensure_ascii=False)
    assert message["text"] == "GitHub Issue作成に失敗しました"
    assert "404: Not Found" in text
    assert "Acme Web" in text


# ----------------------------
# Transport
# ----------------------------


@pytest.mark.asyncio
async def test_unconfigured_slack_is_configuration_error():
    result = await SlackNotifier(make_config()).send_feedback_notification(make_data())
    assert not result.success
    assert result.error_kind == ErrorKind.CONFIGURATION


@pytest.mark.asyncio
async def test_bot_mode_threads_detail_under_title():
    handler, calls = recorder(
        [
            httpx.Response(200, json={"ok": True, "ts": "111.222"}),
            httpx.Response(200, json={"ok": True, "ts": "111.333"}),
        ]
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_BOT_TOKEN="xoxb-test"), http_client=client)
        result = await notifier.send_feedback_notification(make_data())

    assert result.success
    assert result.ts == "111.222"
    assert len(calls) == 2
    assert str(calls[0].url) == SLACK_POST_MESSAGE_URL
    assert calls[0].headers["Authorization"] == "Bearer xoxb-test"
    assert json.loads(calls[1].content)["thread_ts"] == "111.222"


@pytest.mark.asyncio
async def test_bot_mode_out_of_range_timestamp_still_sends_detail():
    handler, calls = recorder(
        [
            httpx.Response(200, json={"ok": True, "ts": "111.222"}),
            httpx.Response(200, json={"ok": True, "ts": "111.333"}),
        ]
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_BOT_TOKEN="xoxb-test"), http_client=client)
        sent = await notifier.notify_feedback_received(make_data(timestamp=10**17))

    assert sent
    assert len(calls) == 2
    detail = json.loads(calls[1].content)
    assert detail["thread_ts"] == "111.222"
    assert str(10**17) in json.dumps(detail)


@pytest.mark.asyncio
async def test_bot_mode_missing_ts_fails_without_detail():
    handler, calls = recorder([httpx.Response(200, json={"ok": True})])
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_BOT_TOKEN="xoxb-test"), http_client=client)
        result = await notifier.send_feedback_notification(make_data())

    assert not result.success
    assert result.error_kind == ErrorKind.UPSTREAM
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_bot_mode_api_error():
    handler, _ = recorder([httpx.Response(200, json={"ok": False, "error": "channel_not_found"})])
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_BOT_TOKEN="xoxb-test"), http_client=client)
        result = await notifier.send_message({"channel": "#x", "text": "hi"})

    assert not result.success
    assert result.error == "channel_not_found"


@pytest.mark.asyncio
async def test_webhook_mode_strips_channel_and_thread():
    handler, calls = recorder([httpx.Response(200, text="ok"), httpx.Response(200, text="ok")])
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_WEBHOOK_URL=WEBHOOK_URL), http_client=client)
        result = await notifier.send_feedback_notification(make_data())

    assert result.success
    assert [str(c.url) for c in calls] == [WEBHOOK_URL, WEBHOOK_URL]
    for call in calls:
        body = json.loads(call.content)
        assert "channel" not in body
        assert "thread_ts" not in body


@pytest.mark.asyncio
async def test_http_error_is_upstream():
    handler, _ = recorder([httpx.Response(500, text="oops")])
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_WEBHOOK_URL=WEBHOOK_URL), http_client=client)
        assert not await notifier.notify_github_issue_error(1, "boom")


@pytest.mark.asyncio
async def test_transport_error_is_transport_kind():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(make_config(SLACK_BOT_TOKEN="xoxb-test"), http_client=client)
        result = await notifier.send_message({"text": "hi"})

    assert result.error_kind == ErrorKind.TRANSPORT
