"""
Short task titles from feedback comments via OpenAI chat completions.
Falls back to plain truncation when the model is unavailable.
"""

import logging
from typing import Optional

import openai

from libs.config import Config, config as default_config

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 30

SYSTEM_PROMPT = (
    "あなたはフィードバックをタスク名に要約するアシスタントです。"
    f"与えられたコメントを{TITLE_MAX_LENGTH}文字以内の簡潔な日本語のタスク名にしてください。"
    "タスク名のみを出力し、引用符や説明は付けないでください。"
)


def fallback_title(comment: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """First `max_length` characters of the comment, with an ellipsis when cut."""
    text = " ".join((comment or "").split())
    if len(text) <= max_length:
        return text
    return text[:max_length] + "…"


class LLMSummarizer:
    """Summarizes a comment into a short label. `summarize` never raises."""

    def __init__(self, config: Optional[Config] = None, client: Optional[openai.AsyncOpenAI] = None):
        self.config = config or default_config
        self._client = client

    def _get_client(self) -> Optional[openai.AsyncOpenAI]:
        if self._client is None and self.config.OPENAI_API_KEY:
            self._client = openai.AsyncOpenAI(
                api_key=self.config.OPENAI_API_KEY,
                timeout=self.config.HTTP_TIMEOUT_SECONDS,
            )
        return self._client

    async def summarize(self, comment: str) -> str:
        """
        Summarize a feedback comment into a task title.

        Args:
            comment: Raw feedback comment

        Returns:
            Title of at most TITLE_MAX_LENGTH characters (plus "…" on fallback)
        """
        client = self._get_client()
        if client is None:
            return fallback_title(comment)

        try:
            resp = await client.chat.completions.create(
                model=self.config.OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": comment},
                ],
                max_tokens=60,
                temperature=0.2,
            )
            title = (resp.choices[0].message.content or "").strip().strip("\"'「」")
        except Exception as e:
            logger.warning(f"LLM summarization failed, using truncated comment: {e}")
            return fallback_title(comment)

        if not title:
            return fallback_title(comment)
        return title[:TITLE_MAX_LENGTH]
