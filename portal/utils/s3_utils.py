import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator
from urllib.parse import quote, unquote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from portal.errors import NotFoundError, PortalError, UpstreamError, ValidationError
from portal.validation import sanitize_filename, validate_file_type

load_dotenv()

logger = logging.getLogger(__name__)

AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY")
AWS_REGION = os.getenv("AWS_REGION")
S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL")
S3_PUBLIC_URL = os.getenv("S3_PUBLIC_URL")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
LIST_LIMIT = 1000

if not S3_BUCKET_NAME:
    raise RuntimeError("S3_BUCKET_NAME environment variable is required")

s3 = boto3.client(
    "s3",
    aws_access_key_id=AWS_ACCESS_KEY_ID,
    aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
    region_name=AWS_REGION,
    endpoint_url=S3_ENDPOINT_URL,
)

MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass
class BlobObject:
    url: str
    pathname: str
    size: int
    uploaded_at: datetime

    @property
    def filename(self) -> str:
        return self.pathname.rsplit("/", 1)[-1]


def _base_url() -> str:
    if S3_PUBLIC_URL:
        return S3_PUBLIC_URL.rstrip("/")
    region = AWS_REGION or "us-east-1"
    return f"https://{S3_BUCKET_NAME}.s3.{region}.amazonaws.com"


def url_for(key: str) -> str:
    return f"{_base_url()}/{quote(key)}"


def key_from_url(url: str) -> str:
    """Map a blob URL handed out by :func:`url_for` back to its object key."""
    base = _base_url() + "/"
    if not url:
        raise ValidationError("Invalid file URL")
    if not url.startswith(base):
        raise NotFoundError("Could not determine file location")
    key = unquote(url[len(base):].split("?", 1)[0])
    if not key or key.endswith("/") or ".." in key.split("/"):
        raise ValidationError("Invalid file URL")
    return key


def list_objects(prefix: str, limit: int | None = LIST_LIMIT) -> list[BlobObject]:
    """
    List every object whose key starts with ``prefix`` (nested ones included)
    """
    blobs = []
    paginator = s3.get_paginator("list_objects_v2")
    try:
        for page in paginator.paginate(Bucket=S3_BUCKET_NAME, Prefix=prefix):
            for item in page.get("Contents", []):
                blobs.append(BlobObject(
                    url=url_for(item["Key"]),
                    pathname=item["Key"],
                    size=item["Size"],
                    uploaded_at=item["LastModified"],
                ))
                if limit is not None and len(blobs) >= limit:
                    return blobs
    except (ClientError, BotoCoreError) as exc:
        logger.error("Listing %s failed: %s", prefix, exc)
        raise UpstreamError("Failed to list files") from exc
    return blobs


def list_direct(prefix: str) -> list[BlobObject]:
    """
    Files sitting directly in the folder at ``prefix``; anything inside a
    subfolder's prefix is left out
    """
    direct = []
    for blob in list_objects(prefix):
        relative = blob.pathname[len(prefix):]
        if relative and "/" not in relative:
            direct.append(blob)
    return direct


def put(prefix: str, filename: str, content: bytes, content_type: str | None) -> BlobObject:
    """
    Validate and store an upload under ``prefix``; an existing object with the
    same name is overwritten
    """
    safe_name = sanitize_filename(filename)
    if not safe_name:
        raise ValidationError("Invalid filename")
    validate_file_type(content_type, safe_name)
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"File exceeds the maximum upload size of {MAX_UPLOAD_BYTES // (1024 * 1024)} MB")

    key = f"{prefix}{safe_name}"
    try:
        s3.put_object(
            Bucket=S3_BUCKET_NAME,
            Key=key,
            Body=content,
            ContentType=content_type or "application/octet-stream",
            ContentDisposition=f'attachment; filename="{safe_name}"',
        )
    except (ClientError, BotoCoreError) as exc:
        logger.error("Upload of %s failed: %s", key, exc)
        raise UpstreamError("Upload failed") from exc
    logger.info("Uploaded %s to S3", key)
    return BlobObject(url=url_for(key), pathname=key, size=len(content), uploaded_at=datetime.utcnow())


def delete(url: str) -> None:
    """
    Delete the object behind ``url``; a missing object is not an error
    """
    key = key_from_url(url)
    try:
        s3.delete_object(Bucket=S3_BUCKET_NAME, Key=key)
    except ClientError as exc:
        code = exc.response["Error"].get("Code")
        if code in MISSING_KEY_CODES:
            return
        logger.error("S3 delete of %s failed: %s", key, code)
        raise UpstreamError("Failed to delete file") from exc
    except BotoCoreError as exc:
        logger.error("S3 delete of %s failed: %s", key, exc)
        raise UpstreamError("Failed to delete file") from exc
    logger.info("Deleted %s from S3", key)


def delete_all(prefix: str) -> tuple[int, int]:
    """
    Best-effort removal of everything under ``prefix``.

    Keeps going when single deletions fail and returns ``(deleted, failed)``.
    """
    deleted = failed = 0
    for blob in list_objects(prefix, limit=None):
        try:
            delete(blob.url)
            deleted += 1
        except PortalError as exc:
            failed += 1
            logger.warning("Could not delete %s during cleanup: %s", blob.pathname, exc)
    return deleted, failed


def open_stream(key: str, chunk_size: int = 64 * 1024) -> tuple[Iterator[bytes], str, str | None]:
    """
    Return ``(chunks, content_type, content_disposition)`` for ``key`` without
    buffering the body
    """
    try:
        response = s3.get_object(Bucket=S3_BUCKET_NAME, Key=key)
    except ClientError as exc:
        code = exc.response["Error"].get("Code")
        if code in MISSING_KEY_CODES:
            raise NotFoundError("File not found") from exc
        logger.error("S3 download of %s failed: %s", key, code)
        raise UpstreamError("Download failed") from exc
    except BotoCoreError as exc:
        logger.error("S3 download of %s failed: %s", key, exc)
        raise UpstreamError("Download failed") from exc

    body = response["Body"]
    return (
        body.iter_chunks(chunk_size),
        response.get("ContentType") or "application/octet-stream",
        response.get("ContentDisposition"),
    )


def ping() -> None:
    s3.head_bucket(Bucket=S3_BUCKET_NAME)
