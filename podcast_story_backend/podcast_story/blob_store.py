import asyncio
import logging

import boto3
from botocore.exceptions import ClientError

from . import settings

logger = logging.getLogger(__name__)

_client = None


class BlobStoreError(RuntimeError):
    pass


def _get_client():
    global _client
    if _client is None:
        if not (settings.BLOB_BUCKET and settings.BLOB_KEY and settings.BLOB_SECRET):
            raise BlobStoreError("BLOB_BUCKET, BLOB_KEY and BLOB_SECRET must be set; please configure your .env")
        _client = boto3.client(
            "s3",
            region_name=settings.BLOB_REGION,
            endpoint_url=settings.BLOB_ENDPOINT or None,
            aws_access_key_id=settings.BLOB_KEY,
            aws_secret_access_key=settings.BLOB_SECRET,
        )
    return _client


def public_url(key: str) -> str:
    if settings.BLOB_CDN_URL:
        return f"{settings.BLOB_CDN_URL}/{key}"
    endpoint = (settings.BLOB_ENDPOINT or f"https://s3.{settings.BLOB_REGION}.amazonaws.com").rstrip("/")
    return f"{endpoint}/{settings.BLOB_BUCKET}/{key}"


def _put(data: bytes, key: str, content_type: str):
    try:
        _get_client().put_object(
            Bucket=settings.BLOB_BUCKET,
            Key=key,
            Body=data,
            ACL="public-read",
            ContentType=content_type,
            CacheControl="max-age=31536000",
        )
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        raise BlobStoreError(f"Upload of {key} failed ({code}): {e}") from e


async def upload(data: bytes, key: str, content_type: str) -> str:
    """Store ``data`` under ``key`` with public read access and return its URL."""
    await asyncio.to_thread(_put, data, key, content_type)
    url = public_url(key)
    logger.info(f"Uploaded {len(data)} bytes to {key}")
    return url
