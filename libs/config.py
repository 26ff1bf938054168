"""
Configuration module for loading environment variables
"""

import os
from typing import Optional

# Values shipped in .env.example; treated as "not configured"
AWS_PLACEHOLDER_VALUES = {
    "your-access-key-id",
    "your-secret-access-key",
    "your-bucket-name",
}


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Application configuration"""

    def __init__(self):
        # Service
        self.SERVICE_NAME: str = os.getenv("SERVICE_NAME", "feedback-suite")
        self.SERVICE_VERSION: str = os.getenv("SERVICE_VERSION", "1.0.0")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3300").rstrip("/")
        self.AUTO_CREATE_TABLES: bool = _env_bool("AUTO_CREATE_TABLES")
        self.HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

        # AWS S3 Configuration
        self.AWS_REGION: Optional[str] = os.getenv("AWS_REGION")
        self.AWS_ACCESS_KEY_ID: Optional[str] = os.getenv("AWS_ACCESS_KEY_ID")
        self.AWS_SECRET_ACCESS_KEY: Optional[str] = os.getenv("AWS_SECRET_ACCESS_KEY")
        self.AWS_S3_BUCKET_NAME: Optional[str] = os.getenv("AWS_S3_BUCKET_NAME")
        self.LOCAL_UPLOAD_DIR: str = os.getenv("LOCAL_UPLOAD_DIR", os.path.join("public", "uploads"))

        # Slack Configuration (bot token and webhook are mutually exclusive)
        self.SLACK_BOT_TOKEN: Optional[str] = os.getenv("SLACK_BOT_TOKEN")
        self.SLACK_WEBHOOK_URL: Optional[str] = os.getenv("SLACK_WEBHOOK_URL")
        self.SLACK_CHANNEL_ID: str = os.getenv("SLACK_CHANNEL_ID", "#general")

        # GitHub Configuration
        self.GITHUB_TOKEN: Optional[str] = os.getenv("GITHUB_TOKEN")
        self.GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")

        # Task server Configuration
        self.TASK_SERVER_API_KEY: Optional[str] = os.getenv("TASK_SERVER_API_KEY")
        self.TASK_SERVER_BASE_URL: str = os.getenv(
            "TASK_SERVER_BASE_URL", "https://tasks.polyrhythm.tokyo"
        ).rstrip("/")

        # LLM Configuration
        self.OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
        self.OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

        # Auth / project catalog server
        self.AUTH_SERVER_URL: Optional[str] = os.getenv("AUTH_SERVER_URL")
        self.AUTH_SERVER_TOKEN: Optional[str] = os.getenv("AUTH_SERVER_TOKEN")
        self.FEEDBACK_LIST_REQUIRE_POWER_USER: bool = _env_bool("FEEDBACK_LIST_REQUIRE_POWER_USER")

        # Outbox worker
        self.OUTBOX_WORKER_ENABLED: bool = _env_bool("OUTBOX_WORKER_ENABLED", "true")
        self.OUTBOX_POLL_INTERVAL_SECONDS: float = float(
            os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "2")
        )
        self.OUTBOX_MAX_ATTEMPTS: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "3"))
        self.OUTBOX_LEASE_SECONDS: int = int(os.getenv("OUTBOX_LEASE_SECONDS", "300"))
        self.OUTBOX_BATCH_SIZE: int = int(os.getenv("OUTBOX_BATCH_SIZE", "20"))
        self.SLACK_GITHUB_WAIT_SECONDS: int = int(os.getenv("SLACK_GITHUB_WAIT_SECONDS", "30"))
        self.DEDUP_WINDOW_SECONDS: int = int(os.getenv("DEDUP_WINDOW_SECONDS", "3600"))

        # Error log ring buffer
        self.ERROR_LOG_CAPACITY: int = int(os.getenv("ERROR_LOG_CAPACITY", "1000"))

    def slack_mode(self) -> Optional[str]:
        """Return "bot", "webhook" or None. The bot token wins when both are set."""
        if self.SLACK_BOT_TOKEN:
            return "bot"
        if self.SLACK_WEBHOOK_URL:
            return "webhook"
        return None

    def has_valid_aws_config(self) -> bool:
        """Check if S3 configuration is complete and not a placeholder"""
        values = [
            self.AWS_REGION,
            self.AWS_ACCESS_KEY_ID,
            self.AWS_SECRET_ACCESS_KEY,
            self.AWS_S3_BUCKET_NAME,
        ]
        if not all(values):
            return False
        return not any(v in AWS_PLACEHOLDER_VALUES for v in values)

    def task_server_enabled(self) -> bool:
        return bool(self.TASK_SERVER_API_KEY)

    def validate_auth_server_config(self) -> bool:
        """Check if the auth/catalog server configuration is complete"""
        return all([self.AUTH_SERVER_URL, self.AUTH_SERVER_TOKEN])


config = Config()
