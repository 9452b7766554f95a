"""S3 object storage for answer attachments and generated documents."""
import logging
import uuid
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from examdesk.core.config import Settings
from examdesk.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ObjectStorage:
    def __init__(self, settings: Settings):
        secret = settings.S3_SECRET_ACCESS_KEY.get_secret_value() if settings.S3_SECRET_ACCESS_KEY else None
        self.bucket = settings.S3_BUCKET_NAME
        self.endpoint_url = settings.S3_ENDPOINT_URL
        self.signed_url_expires = settings.SIGNED_URL_EXPIRES_SECONDS
        self.s3_client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=secret,
            region_name=settings.S3_REGION,
        )

    @staticmethod
    def build_key(folder: str, filename: Optional[str]) -> str:
        extension = ""
        if filename and "." in filename:
            extension = "." + filename.rsplit(".", 1)[-1].lower()
        return f"{folder}/{uuid.uuid4()}{extension}"

    def public_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        """Upload bytes and return the public URL."""
        try:
            await run_in_threadpool(
                self.s3_client.put_object, Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise ExternalServiceError("File upload failed")
        logger.info("Uploaded %s (%d bytes)", key, len(data))
        return self.public_url(key)

    async def signed_url(self, key: str, expires: Optional[int] = None) -> str:
        return await run_in_threadpool(
            self.s3_client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires or self.signed_url_expires,
        )

    async def delete(self, key: str) -> None:
        try:
            await run_in_threadpool(self.s3_client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 delete failed: {e}")
            raise ExternalServiceError("File delete failed")

    async def exists(self, key: str) -> bool:
        try:
            await run_in_threadpool(self.s3_client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise ExternalServiceError("File lookup failed")

    async def close(self) -> None:
        self.s3_client.close()
