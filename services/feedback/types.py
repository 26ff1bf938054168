"""
Type definitions for feedback service.

This module contains all enum types used in the feedback service.
"""

from enum import Enum


class JobKind(str, Enum):
    """Outbox job kinds, one per external side effect."""

    GITHUB_ISSUE = "github_issue"
    TASK = "task"
    SLACK = "slack"


class JobStatus(str, Enum):
    """Outbox job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


SETTLED_JOB_STATUSES = {JobStatus.DONE.value, JobStatus.FAILED.value, JobStatus.SKIPPED.value}


class LogSource(str, Enum):
    """Known error log sources."""

    CHROME_EXTENSION = "chrome-extension"
    S3_UPLOAD = "s3-upload"
    API = "api"
    UNKNOWN = "unknown"

