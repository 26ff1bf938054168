"""
Outbox worker for feedback notifications.

Polls the notification_job table and runs GitHub issue, task and Slack jobs.
GitHub and task jobs run concurrently; a Slack job waits until the GitHub
job of the same feedback has settled (or SLACK_GITHUB_WAIT_SECONDS passed)
so it can link the issue. Failed jobs are retried with exponential backoff.

Runs inside the API process (started from the app lifespan) or standalone:
    python -m services.feedback.worker
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from common.errors import ErrorKind, error_message
from libs.config import Config, config as default_config
from models.feedback import NotificationJob, utcnow
from services.feedback.feedback_factory import get_feedback_factory
from services.feedback.jobs import JobOutcome, NotificationAdapters, NotificationHandlers
from services.feedback.types import SETTLED_JOB_STATUSES, JobKind, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class ClaimedJob:
    """Detached snapshot of a claimed job row."""

    id: int
    feedback_id: int
    kind: str
    payload: Dict[str, Any]
    attempts: int


def retry_delay_seconds(attempts: int) -> int:
    """Exponential backoff capped at one minute."""
    return min(60, 2**attempts)


class OutboxWorker:
    """Claims and runs notification jobs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        handlers: NotificationHandlers,
        config: Optional[Config] = None,
        job_counter=None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.config = config or default_config
        self.job_counter = job_counter
        self._wake = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    # ----- lifecycle -----

    def wake(self) -> None:
        """Skip the rest of the current poll interval."""
        self._wake.set()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run_forever())
            logger.info("Outbox worker started")

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
        logger.info("Outbox worker stopped")

    async def run_forever(self) -> None:
        while not self._stopping:
            try:
                processed = await self.process_pending_once()
                if processed:
                    logger.debug(f"Processed {processed} notification jobs")
            except Exception as e:
                logger.error(f"Outbox poll failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.OUTBOX_POLL_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    # ----- one pass -----

    async def process_pending_once(self) -> int:
        """
        Run every job that is ready right now.

        Returns:
            Number of jobs run in this pass
        """
        await self.recover_stale_jobs()

        branch_jobs = await self._claim(
            [JobKind.GITHUB_ISSUE.value, JobKind.TASK.value], limit=self.config.OUTBOX_BATCH_SIZE
        )
        await self._run_all(branch_jobs)

        slack_jobs = await self._claim_ready_slack()
        await self._run_all(slack_jobs)

        return len(branch_jobs) + len(slack_jobs)

    async def _run_all(self, jobs: List[ClaimedJob]) -> None:
        if not jobs:
            return
        results = await asyncio.gather(*(self._run_job(job) for job in jobs), return_exceptions=True)
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(f"Job {job.id} ({job.kind}) crashed: {result}")

    async def recover_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """Return running jobs whose lease expired (worker crash) to pending."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.config.OUTBOX_LEASE_SECONDS)
        async with self.session_factory() as db:
            result = await db.execute(
                update(NotificationJob)
                .where(
                    NotificationJob.status == JobStatus.RUNNING.value,
                    NotificationJob.updated_at < cutoff,
                )
                .values(status=JobStatus.PENDING.value, available_at=now, updated_at=now)
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Recovered {result.rowcount} stale notification jobs")
        return result.rowcount

    async def _claim_rows(self, db: AsyncSession, rows: List[NotificationJob], now: datetime) -> List[ClaimedJob]:
        claimed = []
        for row in rows:
            # Conditional flip so two workers never run the same job
            result = await db.execute(
                update(NotificationJob)
                .where(NotificationJob.id == row.id, NotificationJob.status == JobStatus.PENDING.value)
                .values(status=JobStatus.RUNNING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(
                    ClaimedJob(
                        id=row.id,
                        feedback_id=row.feedback_id,
                        kind=row.kind,
                        payload=dict(row.payload or {}),
                        attempts=row.attempts,
                    )
                )
        await db.commit()
        return claimed

    async def _claim(self, kinds: List[str], limit: int) -> List[ClaimedJob]:
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationJob)
                .where(
                    NotificationJob.status == JobStatus.PENDING.value,
                    NotificationJob.kind.in_(kinds),
                    NotificationJob.available_at <= now,
                )
                .order_by(NotificationJob.id)
                .limit(limit)
            )
            return await self._claim_rows(db, list(result.scalars().all()), now)

    async def _claim_ready_slack(self) -> List[ClaimedJob]:
        """Claim Slack jobs whose GitHub sibling settled or whose wait expired."""
        now = utcnow()
        wait = timedelta(seconds=self.config.SLACK_GITHUB_WAIT_SECONDS)
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationJob)
                .where(
                    NotificationJob.status == JobStatus.PENDING.value,
                    NotificationJob.kind == JobKind.SLACK.value,
                    NotificationJob.available_at <= now,
                )
                .order_by(NotificationJob.id)
                .limit(self.config.OUTBOX_BATCH_SIZE)
            )
            candidates = list(result.scalars().all())
            if not candidates:
                return []

            siblings = await db.execute(
                select(NotificationJob.feedback_id, NotificationJob.status).where(
                    NotificationJob.kind == JobKind.GITHUB_ISSUE.value,
                    NotificationJob.feedback_id.in_([c.feedback_id for c in candidates]),
                )
            )
            github_status = {feedback_id: status for feedback_id, status in siblings.all()}

            ready = []
            for job in candidates:
                status = github_status.get(job.feedback_id)
                if status is None or status in SETTLED_JOB_STATUSES:
                    ready.append(job)
                elif now - job.created_at >= wait:
                    logger.warning(
                        f"GitHub job for feedback {job.feedback_id} still {status} after "
                        f"{self.config.SLACK_GITHUB_WAIT_SECONDS}s; sending Slack without issue link"
                    )
                    ready.append(job)

            return await self._claim_rows(db, ready, now)

    async def _github_result(self, feedback_id: int) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationJob.result)
                .where(
                    NotificationJob.feedback_id == feedback_id,
                    NotificationJob.kind == JobKind.GITHUB_ISSUE.value,
                )
                .order_by(NotificationJob.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _run_job(self, job: ClaimedJob) -> JobOutcome:
        try:
            async with self.session_factory() as db:
                feedback = await get_feedback_factory().get_feedback_by_id(db, job.feedback_id)

            if feedback is None:
                outcome = JobOutcome.skipped("feedback deleted")
            elif job.kind == JobKind.GITHUB_ISSUE.value:
                outcome = await self.handlers.run_github_issue(feedback, job.payload)
            elif job.kind == JobKind.TASK.value:
                outcome = await self.handlers.run_task(feedback, job.payload)
            elif job.kind == JobKind.SLACK.value:
                github_result = await self._github_result(job.feedback_id)
                outcome = await self.handlers.run_slack(feedback, job.payload, github_result)
            else:
                logger.warning(f"Unknown job kind: {job.kind}")
                outcome = JobOutcome.failed(f"unknown job kind {job.kind}", ErrorKind.CONFIGURATION)
        except Exception as e:
            logger.error(f"Unexpected error in {job.kind} job {job.id}: {e}", exc_info=True)
            outcome = JobOutcome.failed(error_message(e), ErrorKind.UNKNOWN)

        await self._finish(job, outcome)
        return outcome

    async def _finish(self, job: ClaimedJob, outcome: JobOutcome) -> None:
        now = utcnow()
        attempts = job.attempts + 1
        values: Dict[str, Any] = {
            "attempts": attempts,
            "result": outcome.result or None,
            "last_error": outcome.error,
            "updated_at": now,
        }

        terminal_failure = False
        if outcome.status == JobStatus.FAILED:
            if outcome.retryable and attempts < self.config.OUTBOX_MAX_ATTEMPTS:
                delay = retry_delay_seconds(attempts)
                values["status"] = JobStatus.PENDING.value
                values["available_at"] = now + timedelta(seconds=delay)
                logger.warning(
                    f"{job.kind} job {job.id} for feedback {job.feedback_id} failed "
                    f"(attempt {attempts}/{self.config.OUTBOX_MAX_ATTEMPTS}); retrying in {delay}s: {outcome.error}"
                )
            else:
                values["status"] = JobStatus.FAILED.value
                terminal_failure = True
                logger.error(f"{job.kind} job {job.id} for feedback {job.feedback_id} failed: {outcome.error}")
        else:
            values["status"] = outcome.status.value

        async with self.session_factory() as db:
            await db.execute(
                update(NotificationJob)
                .where(NotificationJob.id == job.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if self.job_counter is not None:
            self.job_counter.labels(kind=job.kind, status=values["status"]).inc()

        if terminal_failure and job.kind == JobKind.GITHUB_ISSUE.value:
            sent = await self.handlers.send_github_failure_alert(job.feedback_id, outcome)
            if not sent:
                logger.warning(f"GitHub failure alert for feedback {job.feedback_id} was not delivered")


def main():
    """Run the outbox worker as its own process."""
    load_dotenv()

    from libs.db import AsyncSessionLocal

    config = Config()
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Starting feedback outbox worker...")

    worker = OutboxWorker(
        AsyncSessionLocal,
        NotificationHandlers(NotificationAdapters.from_config(config), config),
        config,
    )
    try:
        asyncio.run(worker.run_forever())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
