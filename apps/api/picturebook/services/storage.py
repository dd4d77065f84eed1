"""
Storage Service: S3/Minio asset upload
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from picturebook.core.config import settings
from picturebook.core.errors import StorageError

logger = structlog.get_logger()


def get_s3_client():
    """Get S3 client configured for Minio or AWS S3"""
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        config=Config(signature_version="s3v4"),
    )


@dataclass
class UploadResult:
    secure_url: str
    key: str


def encode_tags(tags: Optional[list[str]]) -> str:
    """``["book:1", "page:2"]`` -> S3 tagging query string ``book=1&page=2``"""
    pairs = []
    for tag in tags or []:
        name, _, value = tag.partition(":")
        pairs.append(f"{quote(name, safe='')}={quote(value, safe='')}")
    return "&".join(pairs)


class AssetStore:
    """Uploads generated images under a deterministic key so a retry overwrites."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        public_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket or settings.s3_bucket
        self.public_url = (public_url or settings.s3_public_url).rstrip("/")
        self._client = client
        self._bucket_verified = False

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def _ensure_bucket_exists(self):
        """Ensure the bucket exists, create if not. Cached after first check."""
        if self._bucket_verified:
            return

        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError:
            try:
                self.client.create_bucket(Bucket=self.bucket)
                policy = {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Principal": "*",
                            "Action": "s3:GetObject",
                            "Resource": f"arn:aws:s3:::{self.bucket}/*",
                        }
                    ],
                }
                self.client.put_bucket_policy(Bucket=self.bucket, Policy=json.dumps(policy))
                logger.info("Created bucket", bucket=self.bucket)
            except ClientError as e:
                logger.error("Failed to create bucket", bucket=self.bucket, error=str(e))
                raise StorageError(f"Failed to create bucket: {e}") from e
        self._bucket_verified = True

    def _put(self, key: str, data: bytes, content_type: str, tagging: str):
        self._ensure_bucket_exists()
        params = {"Bucket": self.bucket, "Key": key, "Body": data, "ContentType": content_type}
        if tagging:
            params["Tagging"] = tagging
        self.client.put_object(**params)

    async def upload_image(
        self,
        data: bytes,
        folder: str,
        public_id: str,
        tags: Optional[list[str]] = None,
        content_type: str = "image/png",
    ) -> UploadResult:
        """
        Upload image bytes to ``<folder>/<public_id>.png``

        Returns:
            Public URL and key of the stored object

        Raises:
            StorageError: bucket or upload failure
        """
        key = f"{folder.strip('/')}/{public_id}.png"
        try:
            await asyncio.to_thread(self._put, key, data, content_type, encode_tags(tags))
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to upload to S3", key=key, error=str(e))
            raise StorageError(f"Failed to upload: {e}") from e

        return UploadResult(secure_url=f"{self.public_url}/{key}", key=key)
