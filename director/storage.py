"""
R2 storage for uploaded source images.

Objects are stored under:
  director/{user_id}/{upload_id}{ext}
"""

import os
import asyncio
import logging
from uuid import uuid4

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

_s3_client = None


def _get_s3_client():
    """Lazy-init the boto3 client pointed at the R2 endpoint."""
    global _s3_client
    if _s3_client is None:
        import boto3
        from botocore.config import Config as BotoConfig

        if not R2_ACCOUNT_ID or not R2_ACCESS_KEY_ID or not R2_SECRET_ACCESS_KEY:
            raise RuntimeError("R2_ACCOUNT_ID, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY must be set")
        _s3_client = boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
    return _s3_client


def upload_key(user_id: str, content_type: str) -> str:
    return f"director/{user_id}/{uuid4().hex}{EXTENSIONS.get(content_type, '')}"


def _put_object(key: str, data: bytes, content_type: str) -> str:
    _get_s3_client().put_object(
        Bucket=R2_BUCKET_NAME,
        Key=key,
        Body=data,
        ContentType=content_type,
    )
    return f"{R2_PUBLIC_URL.rstrip('/')}/{key}"


async def upload_image(user_id: str, filename: str, data: bytes, content_type: str) -> str:
    """Upload a source image and return its public URL."""
    key = upload_key(user_id, content_type)
    try:
        public_url = await asyncio.to_thread(_put_object, key, data, content_type)
    except Exception as e:
        logger.error(f"R2 upload failed for {filename} (key={key}): {e}")
        raise
    logger.info(f"Uploaded {filename} to R2: {public_url}")
    return public_url
