from __future__ import annotations

import re
import uuid
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client
else:
    S3Client = Any  # type: ignore[assignment]

from . import config
from .errors import UploadFailure, ValidationFailure
from .models import Booking, ReceiptUpload
from .timeutils import utcnow

logger = Logger()

_s3: S3Client = boto3.client("s3")

ALLOWED_CONTENT_TYPE_PREFIXES = ("image/",)
ALLOWED_CONTENT_TYPES = frozenset({"application/pdf"})

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9.]+")


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("-", (name or "").lower()).strip("-")
    return cleaned or "receipt"


def build_receipt_key(booking: Booking, filename: str) -> str:
    stamp = int(utcnow().timestamp() * 1000)
    return f"{booking.user_id}/{booking.slot_id}/{stamp}-{uuid.uuid4()}-{sanitize_filename(filename)}"


def public_url(key: str) -> str:
    return f"{config.RECEIPTS_PUBLIC_BASE_URL}/{quote(key)}"


def validate_receipt(receipt: ReceiptUpload) -> None:
    if not receipt.content:
        raise ValidationFailure("Receipt file is empty.")
    if len(receipt.content) > config.RECEIPT_MAX_BYTES:
        raise ValidationFailure("Receipt file is too large.")
    content_type = receipt.content_type.lower()
    if content_type not in ALLOWED_CONTENT_TYPES and not content_type.startswith(
        ALLOWED_CONTENT_TYPE_PREFIXES
    ):
        raise ValidationFailure("Receipt must be an image or a PDF.")


def upload_receipt(booking: Booking, receipt: ReceiptUpload) -> str:
    validate_receipt(receipt)
    key = build_receipt_key(booking, receipt.filename)
    try:
        _s3.put_object(
            Bucket=config.RECEIPTS_BUCKET,
            Key=key,
            Body=receipt.content,
            ContentType=receipt.content_type,
            CacheControl="max-age=3600",
        )
    except (ClientError, BotoCoreError) as exc:
        logger.exception(
            "Receipt upload failed",
            extra={"booking_id": booking.booking_id, "bucket": config.RECEIPTS_BUCKET},
        )
        raise UploadFailure(booking_id=booking.booking_id) from exc

    logger.info("Uploaded receipt", extra={"booking_id": booking.booking_id, "key": key})
    return public_url(key)
