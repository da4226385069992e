# services/s3_service.py
import logging

import boto3

from config import (
    AWS_ACCESS_KEY_ID,
    AWS_DEFAULT_REGION,
    AWS_SECRET_ACCESS_KEY,
    S3_BUCKET,
    S3_PREFIX,
    S3_PRESIGN_EXPIRES,
    S3_TICKET_EXTRA_ARGS,
    S3_USE_PRESIGNED,
)

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────
# Lazy S3 client (avoid side effects at import time)
# ──────────────────────────────────────────────────────────────
_s3_client = None
def _s3():
    global _s3_client
    if _s3_client is None:
        # Unset keys fall through to boto3's default credential chain
        session = boto3.Session(
            aws_access_key_id=AWS_ACCESS_KEY_ID,
            aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
            region_name=AWS_DEFAULT_REGION,
        )
        _s3_client = session.client("s3")
    return _s3_client


def archive_enabled() -> bool:
    return bool(S3_BUCKET)


def ticket_key(event_id: int, filename: str) -> str:
    return f"{S3_PREFIX}{event_id}/{filename}"


def upload_png(data: bytes, key: str) -> str:
    """Put PNG bytes under key; returns a presigned or public URL per config."""
    _s3().put_object(Bucket=S3_BUCKET, Key=key, Body=data, **S3_TICKET_EXTRA_ARGS)
    logger.info("Archived ticket to s3://%s/%s", S3_BUCKET, key)
    if S3_USE_PRESIGNED:
        return _s3().generate_presigned_url(
            "get_object",
            Params={"Bucket": S3_BUCKET, "Key": key},
            ExpiresIn=S3_PRESIGN_EXPIRES,
        )
    return f"https://{S3_BUCKET}.s3.amazonaws.com/{key}"
