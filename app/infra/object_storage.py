"""
Object storage adapter (S3 API via boto3; works against MinIO with ``endpoint_url``).
"""

from __future__ import annotations

import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.exceptions import InfraUnavailable
from app.infra.base import run_blocking

logger = logging.getLogger(__name__)

ADAPTER = "object_storage"


class S3ObjectStorage:
    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str | None = None,
    ):
        self.bucket = bucket
        session_kwargs = {}
        if access_key and secret_key:
            session_kwargs["aws_access_key_id"] = access_key
            session_kwargs["aws_secret_access_key"] = secret_key
        self.client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(
                signature_version="s3v4",
                connect_timeout=5,
                read_timeout=int(settings.infra_timeout_seconds),
                retries={"max_attempts": 3, "mode": "standard"},
            ),
            **session_kwargs,
        )

    async def _call(self, operation: str, func, **kwargs):
        try:
            return await run_blocking(ADAPTER, operation, func, **kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 %s failed: %s", operation, e)
            raise InfraUnavailable(ADAPTER, f"Object storage {operation} failed: {e}") from e

    async def put_object(self, key: str, body: bytes, content_type: str = "application/gzip") -> int:
        await self._call(
            "put_object",
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        logger.info("Stored s3://%s/%s (%d bytes)", self.bucket, key, len(body))
        return len(body)

    async def get_object(self, key: str) -> bytes:
        def _get() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        return await self._call("get_object", _get)

    async def delete_object(self, key: str) -> None:
        await self._call("delete_object", self.client.delete_object, Bucket=self.bucket, Key=key)

    async def ping(self) -> bool:
        await self._call("head_bucket", self.client.head_bucket, Bucket=self.bucket)
        return True
