# pytest libs/tests/test_task_server_client.py -q

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from common.errors import ErrorKind
from common.records import FeedbackRecord, ScreenshotRecord
from conftest import make_config
from libs.llm_summarizer import LLMSummarizer, fallback_title
from libs.task_server_client import TaskServerClient, build_task_description

pytestmark = pytest.mark.unit


def make_feedback(**overrides) -> FeedbackRecord:
    values = dict(
        id=5,
        comment="一覧画面の読み込みが遅い",
        timestamp=1734944285000,
        user_agent="Mozilla/5.0",
        url="https://acme.example.com/list",
        screenshot_data=ScreenshotRecord(
            id="s1",
            screenshot_url="https://cdn.example.com/s1.png",
            dom_tree="",
            tab_url="https://acme.example.com/list",
            tab_title="一覧",
            timestamp=1734944285000,
        ),
    )
    values.update(overrides)
    return FeedbackRecord(**values)


def fixed_summarizer(title="一覧画面が遅い"):
    summarizer = MagicMock(spec=LLMSummarizer)
    summarizer.summarize = AsyncMock(return_value=title)
    return summarizer


# ----------------------------
# LLM summarizer
# ----------------------------


def test_fallback_title_truncates_with_ellipsis():
    assert fallback_title("短い") == "短い"
    long_comment = "あ" * 45
    assert fallback_title(long_comment) == "あ" * 30 + "…"


@pytest.mark.asyncio
async def test_summarizer_without_key_uses_fallback():
    summarizer = LLMSummarizer(make_config(OPENAI_API_KEY=None))
    assert await summarizer.summarize("  改行\nを含む   コメント ") == "改行 を含む コメント"


@pytest.mark.asyncio
async def test_summarizer_uses_model_reply():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="「一覧の高速化」\n"))]
        )
    )
    summarizer = LLMSummarizer(make_config(OPENAI_MODEL="gpt-test"), client=client)

    assert await summarizer.summarize("一覧画面の読み込みが遅い") == "一覧の高速化"
    assert client.chat.completions.create.call_args.kwargs["model"] == "gpt-test"


@pytest.mark.asyncio
async def test_summarizer_error_falls_back():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=RuntimeError("rate limited"))
    summarizer = LLMSummarizer(make_config(), client=client)

    assert await summarizer.summarize("短いコメント") == "短いコメント"


# ----------------------------
# Task description
# ----------------------------


def test_task_description_sections():
    text = build_task_description(
        make_feedback(),
        error_details={"source": "console", "stack": "Error: x\n  at y", "code": 500},
        github_repository="acme/web",
        user_name="tanaka",
    )

    assert "## フィードバック内容\n一覧画面の読み込みが遅い" in text
    assert "- タイトル: 一覧" in text
    assert "- スクリーンショット: https://cdn.example.com/s1.png" in text
    assert "## 報告者\ntanaka" in text
    assert "- source: console" in text
    assert '"code": 500' in text
    assert "## GitHubリポジトリ\nacme/web" in text
    assert "2024/12/23 17:58:05" in text


def test_task_description_without_screenshot():
    text = build_task_description(make_feedback(screenshot_data=None, url=None))
    assert "- URL: URL不明" in text
    assert "- タイトル: ページタイトル不明" in text
    assert "## 報告者" not in text


def test_task_description_with_out_of_range_timestamp():
    text = build_task_description(make_feedback(timestamp=10**17))
    assert str(10**17) in text


# ----------------------------
# Task creation
# ----------------------------


@pytest.mark.asyncio
async def test_create_task_success():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"success": True, "data": {"id": 99, "title": "一覧画面が遅い"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        task_server = TaskServerClient(make_config(), summarizer=fixed_summarizer(), http_client=client)
        result = await task_server.create_task_from_feedback(make_feedback(), "key-123")

    assert result.success
    assert result.task_id == 99
    assert result.task_url == "https://tasks.test/tasks/99"
    assert str(seen[0].url) == "https://tasks.test/api/external/tasks"
    assert seen[0].headers["X-API-Key"] == "key-123"

    body = json.loads(seen[0].content)
    assert body["title"] == "一覧画面が遅い"
    assert body["status"] == "TODO"
    assert body["estimatedMinutes"] == 60
    assert body["tags"] == ["フィードバック", "自動作成"]


@pytest.mark.asyncio
async def test_create_task_without_key_is_configuration_error():
    task_server = TaskServerClient(make_config(), summarizer=fixed_summarizer())
    result = await task_server.create_task_from_feedback(make_feedback(), "")
    assert result.error_kind == ErrorKind.CONFIGURATION


@pytest.mark.asyncio
async def test_create_task_http_error_message():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        task_server = TaskServerClient(make_config(), summarizer=fixed_summarizer(), http_client=client)
        result = await task_server.create_task_from_feedback(make_feedback(), "key-123")

    assert not result.success
    assert result.error == "HTTPエラー: 502"
    assert result.error_kind == ErrorKind.UPSTREAM


@pytest.mark.asyncio
async def test_create_task_unexpected_body_is_unknown_error_label():
    def handler(request):
        return httpx.Response(200, json={"success": False})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        task_server = TaskServerClient(make_config(), summarizer=fixed_summarizer(), http_client=client)
        result = await task_server.create_task_from_feedback(make_feedback(), "key-123")

    assert result.error == "不明なエラー"


@pytest.mark.asyncio
async def test_create_task_transport_error():
    def handler(request):
        raise httpx.ConnectTimeout("timeout", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        task_server = TaskServerClient(make_config(), summarizer=fixed_summarizer(), http_client=client)
        result = await task_server.create_task_from_feedback(make_feedback(), "key-123")

    assert result.error_kind == ErrorKind.TRANSPORT
