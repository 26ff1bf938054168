"""
Shared test fixtures.

This module provides reusable fixtures for:
- A per-test SQLite file (aiosqlite) with the feedback tables
- A Config with every outbound integration pinned to test values
- Fake notification adapters (AsyncMock) with successful defaults
- A feedback app wired to all of the above, worker disabled
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from libs.auth.power_user import PowerUserVerifier
from libs.config import Config
from libs.db import init_models
from libs.github_client import GitHubClient, IssueResult
from libs.project_catalog import Project, ProjectCatalog, ProjectLookup
from libs.slack_client import SlackNotifier, SlackSendResult
from libs.task_server_client import TaskResult, TaskServerClient
from services.feedback.jobs import NotificationAdapters

TEST_PROJECT = Project(
    name="web",
    display_name="Acme Web",
    github_repository="https://github.com/acme/web",
    domain_local="localhost:3000",
    domain_production="acme.example.com",
    id=1,
)


def make_config(**overrides) -> Config:
    """Config independent of the developer's environment."""
    cfg = Config()
    values = dict(
        SERVICE_NAME="feedback-suite",
        SERVICE_VERSION="test",
        PUBLIC_BASE_URL="http://testserver",
        AUTO_CREATE_TABLES=True,
        HTTP_TIMEOUT_SECONDS=5.0,
        AWS_REGION=None,
        AWS_ACCESS_KEY_ID=None,
        AWS_SECRET_ACCESS_KEY=None,
        AWS_S3_BUCKET_NAME=None,
        SLACK_BOT_TOKEN=None,
        SLACK_WEBHOOK_URL=None,
        SLACK_CHANNEL_ID="#feedback",
        GITHUB_TOKEN="ghp_test",
        GITHUB_API_URL="https://api.github.test",
        TASK_SERVER_API_KEY=None,
        TASK_SERVER_BASE_URL="https://tasks.test",
        OPENAI_API_KEY=None,
        AUTH_SERVER_URL="https://auth.test",
        AUTH_SERVER_TOKEN="catalog-token",
        FEEDBACK_LIST_REQUIRE_POWER_USER=False,
        OUTBOX_WORKER_ENABLED=False,
        OUTBOX_POLL_INTERVAL_SECONDS=0.05,
        OUTBOX_MAX_ATTEMPTS=3,
        OUTBOX_LEASE_SECONDS=300,
        OUTBOX_BATCH_SIZE=20,
        SLACK_GITHUB_WAIT_SECONDS=30,
        DEDUP_WINDOW_SECONDS=3600,
        ERROR_LOG_CAPACITY=1000,
    )
    values.update(overrides)
    for key, value in values.items():
        setattr(cfg, key, value)
    return cfg


def make_sqlite_engine(path):
    # One connection per session: the worker runs sessions concurrently
    return create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


def make_fake_adapters(project: Project = TEST_PROJECT) -> NotificationAdapters:
    """Adapters whose calls all succeed; override return values per test."""
    catalog = MagicMock(spec=ProjectCatalog)
    catalog.lookup_by_url = AsyncMock(return_value=ProjectLookup(project=project))
    catalog.lookup_by_repository = AsyncMock(return_value=ProjectLookup(project=None))

    github = MagicMock(spec=GitHubClient)
    github.create_issue = AsyncMock(
        return_value=IssueResult(
            success=True, issue_number=42, issue_url="https://github.com/acme/web/issues/42"
        )
    )

    task_server = MagicMock(spec=TaskServerClient)
    task_server.create_task_from_feedback = AsyncMock(
        return_value=TaskResult(success=True, task_id=7, task_url="https://tasks.test/tasks/7")
    )

    slack = MagicMock(spec=SlackNotifier)
    slack.send_feedback_notification = AsyncMock(return_value=SlackSendResult(success=True, ts="1700000000.000100"))
    slack.notify_github_issue_error = AsyncMock(return_value=True)

    return NotificationAdapters(catalog=catalog, github=github, task_server=task_server, slack=slack)


@pytest.fixture()
def test_config(tmp_path):
    return make_config(LOCAL_UPLOAD_DIR=str(tmp_path / "uploads"))


@pytest.fixture()
def fake_adapters():
    return make_fake_adapters()


@pytest_asyncio.fixture()
async def engine(tmp_path):
    eng = make_sqlite_engine(tmp_path / "feedback.db")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def power_user_verifier():
    """Verifier whose answer tests flip via `is_power_user.return_value`."""
    verifier = MagicMock(spec=PowerUserVerifier)
    verifier.is_power_user = AsyncMock(return_value=False)
    return verifier


@pytest.fixture()
def feedback_app(tmp_path, test_config, fake_adapters, power_user_verifier):
    """
    Feedback app on a fresh database.

    Tables are created by the lifespan, inside the TestClient event loop.
    """
    from services.feedback.main import create_app

    eng = make_sqlite_engine(tmp_path / "app.db")
    return create_app(
        config=test_config,
        adapters=fake_adapters,
        session_factory=make_session_factory(eng),
        engine=eng,
        power_user_verifier=power_user_verifier,
    )
