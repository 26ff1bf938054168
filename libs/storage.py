"""
Asset storage for screenshots.

Uses S3 when the AWS settings are complete and real, otherwise falls back
to a local directory (public/uploads) served under /uploads with the same
key scheme.
"""

import asyncio
import base64
import binascii
import logging
import os
import time
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from libs.config import Config, config as default_config

logger = logging.getLogger(__name__)

PRESIGNED_URL_EXPIRES_SECONDS = 900  # 15 minutes
DEFAULT_EXTENSION = "png"


class StorageError(Exception):
    """Upload or presign failed."""


class InvalidStorageKey(StorageError):
    """Key would escape the upload directory."""


def validate_key(key: str) -> str:
    """Reject keys containing "..", a backslash, or a leading slash."""
    if not key or ".." in key or "\\" in key or key.startswith("/"):
        raise InvalidStorageKey(f"Invalid storage key: {key}")
    return key


def file_extension(file_name: Optional[str]) -> str:
    if file_name and "." in file_name:
        ext = file_name.rsplit(".", 1)[-1]
        if ext:
            return ext
    return DEFAULT_EXTENSION


def build_object_key(
    file_name: Optional[str],
    feedback_id: Optional[int] = None,
    now: Optional[datetime] = None,
    epoch_ms: Optional[int] = None,
) -> str:
    """
    feedbacks/{YYYY}/{MM}/{DD}/{feedbackId}_{ms}.{ext} for a known feedback,
    temp/{ms}.{ext} otherwise.
    """
    now = now or datetime.now(timezone.utc)
    epoch_ms = epoch_ms if epoch_ms is not None else int(time.time() * 1000)
    ext = file_extension(file_name)
    if feedback_id:
        return f"feedbacks/{now.year}/{now.month:02d}/{now.day:02d}/{feedback_id}_{epoch_ms}.{ext}"
    return f"temp/{epoch_ms}.{ext}"


def decode_base64_payload(data: str) -> bytes:
    """Decode raw base64 or a data: URL."""
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise StorageError(f"Invalid base64 payload: {e}") from e


class AssetStorage:
    """S3 or local-disk storage, chosen from configuration at construction."""

    def __init__(self, config: Optional[Config] = None, s3_client=None):
        self.config = config or default_config
        self.use_s3 = self.config.has_valid_aws_config()
        self._s3 = s3_client
        self.local_root = os.path.abspath(self.config.LOCAL_UPLOAD_DIR)

    @property
    def mode(self) -> str:
        return "s3" if self.use_s3 else "local"

    def _get_s3(self):
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                region_name=self.config.AWS_REGION,
                aws_access_key_id=self.config.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=self.config.AWS_SECRET_ACCESS_KEY,
            )
        return self._s3

    def s3_file_url(self, key: str) -> str:
        return f"https://{self.config.AWS_S3_BUCKET_NAME}.s3.{self.config.AWS_REGION}.amazonaws.com/{key}"

    def local_file_url(self, key: str) -> str:
        return f"{self.config.PUBLIC_BASE_URL}/uploads/{key}"

    def file_url(self, key: str) -> str:
        return self.s3_file_url(key) if self.use_s3 else self.local_file_url(key)

    async def generate_presigned_url(
        self, file_name: str, content_type: str, feedback_id: Optional[int] = None
    ) -> Dict[str, str]:
        """
        Produce an upload target for the browser extension.

        Returns:
            Dict with uploadUrl, key and fileUrl

        Raises:
            StorageError: If S3 refuses to sign
        """
        key = build_object_key(file_name, feedback_id)

        if not self.use_s3:
            logger.info("AWS S3 configuration incomplete, using local storage")
            query = urlencode({"fileName": file_name, "fileType": content_type, "key": key})
            return {
                "uploadUrl": f"{self.config.PUBLIC_BASE_URL}/uploads/local?{query}",
                "key": key,
                "fileUrl": self.local_file_url(key),
            }

        params = {"Bucket": self.config.AWS_S3_BUCKET_NAME, "Key": key, "ContentType": content_type}
        loop = asyncio.get_running_loop()
        try:
            upload_url = await loop.run_in_executor(
                None,
                lambda: self._get_s3().generate_presigned_url(
                    "put_object", Params=params, ExpiresIn=PRESIGNED_URL_EXPIRES_SECONDS
                ),
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(f"Presigned URL generation failed: bucket={params['Bucket']}, key={key}, code={code}")
            raise StorageError(f"S3エラー ({code}): {e}") from e
        except BotoCoreError as e:
            logger.error(f"Presigned URL generation failed: {e}")
            raise StorageError("プリサインURLの生成に失敗しました") from e

        logger.info(f"Presigned URL generated: key={key}, bucket={params['Bucket']}")
        return {"uploadUrl": upload_url, "key": key, "fileUrl": self.s3_file_url(key)}

    async def upload_bytes(self, key: str, content: bytes, content_type: str) -> str:
        """Store bytes under `key` and return the public file URL."""
        validate_key(key)
        if not self.use_s3:
            return await self.save_local(key, content)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self._get_s3().put_object(
                    Bucket=self.config.AWS_S3_BUCKET_NAME,
                    Key=key,
                    Body=content,
                    ContentType=content_type,
                ),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StorageError(f"S3 upload failed: {e}") from e
        return self.s3_file_url(key)

    async def upload_base64(self, data: str, file_name: str, content_type: str) -> str:
        """Decode a base64 (or data: URL) payload and store it; returns the file URL."""
        content = decode_base64_payload(data)
        key = build_object_key(file_name)
        return await self.upload_bytes(key, content, content_type)

    async def save_local(self, key: str, content: bytes) -> str:
        """
        Write a file under the local upload directory.

        Raises:
            InvalidStorageKey: Before any write when the key is unsafe
            StorageError: When the write fails
        """
        validate_key(key)
        path = os.path.abspath(os.path.join(self.local_root, key))
        if os.path.commonpath([self.local_root, path]) != self.local_root:
            raise InvalidStorageKey(f"Invalid storage key: {key}")

        def _write():
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(content)

        try:
            await asyncio.get_running_loop().run_in_executor(None, _write)
        except OSError as e:
            logger.error(f"Local file write failed for {key}: {e}")
            raise StorageError(f"ファイルの保存に失敗しました: {e}") from e

        logger.info(f"Saved local upload: {path} ({len(content)} bytes)")
        return self.local_file_url(key)
