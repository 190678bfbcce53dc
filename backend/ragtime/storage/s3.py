"""
S3 Object Store

Every upload lands at:
    s3://<BUCKET>/documents/<tenant_id>/<asset_id>/<filename>

The tenant and asset ids come from the validated ingest request; the
filename has already been sanitized. Object metadata carries the tenant,
asset and correlation id so an object can be traced back to its ingest.

The aioboto3 Session is created once at startup and injected. Each call
opens a short-lived client from it with explicit connect/read timeouts.

delete_object() reports a missing object (NoSuchKey / 404) as already gone
rather than failing.
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ragtime.core.errors import CollaboratorError, ErrorCategory
from ragtime.storage.base import ObjectStoreBase, UploadedFile, document_key

logger = logging.getLogger(__name__)

SERVICE_NAME = "S3"

_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NotFound"})


class S3ObjectStore(ObjectStoreBase):

    def __init__(
        self,
        session:         aioboto3.Session,
        bucket:          str,
        region:          str = "us-east-1",
        connect_timeout: float = 5.0,
        read_timeout:    float = 30.0,
    ) -> None:
        self._session = session
        self._bucket  = bucket
        self._region  = region
        self._config  = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 2, "mode": "standard"},
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region, config=self._config)

    async def put_document(
        self,
        *,
        tenant_id:      str,
        asset_id:       str,
        filename:       str,
        body:           bytes,
        content_type:   str,
        correlation_id: str,
    ) -> UploadedFile:
        key = document_key(tenant_id, asset_id, filename)

        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                    Metadata={
                        "tenant-id":      tenant_id,
                        "asset-id":       asset_id,
                        "correlation-id": correlation_id,
                    },
                )
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise CollaboratorError(
                ErrorCategory.INFRASTRUCTURE,
                SERVICE_NAME,
                f"put_object failed for s3://{self._bucket}/{key}: {code}",
                status_code=status,
                retryable=status is None or status >= 500,
            ) from exc
        except BotoCoreError as exc:
            raise CollaboratorError(
                ErrorCategory.INFRASTRUCTURE,
                SERVICE_NAME,
                f"put_object failed for s3://{self._bucket}/{key}: {exc}",
                retryable=True,
            ) from exc

        logger.info(
            "S3 upload ok | tenant=%s asset=%s key=%s size=%d",
            tenant_id, asset_id, key, len(body),
            extra={"correlation_id": correlation_id},
        )
        return UploadedFile(bucket=self._bucket, key=key)

    async def delete_object(self, *, bucket: str, key: str, correlation_id: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            if code in _MISSING_OBJECT_CODES or status == 404:
                logger.info(
                    "S3 object already gone | key=%s", key,
                    extra={"correlation_id": correlation_id},
                )
                return False
            raise CollaboratorError(
                ErrorCategory.INFRASTRUCTURE,
                SERVICE_NAME,
                f"delete_object failed for s3://{bucket}/{key}: {code}",
                status_code=status,
                retryable=status is None or status >= 500,
            ) from exc
        except BotoCoreError as exc:
            raise CollaboratorError(
                ErrorCategory.INFRASTRUCTURE,
                SERVICE_NAME,
                f"delete_object failed for s3://{bucket}/{key}: {exc}",
                retryable=True,
            ) from exc

        logger.info(
            "S3 delete ok | key=%s", key,
            extra={"correlation_id": correlation_id},
        )
        return True
