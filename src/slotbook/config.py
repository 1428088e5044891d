from __future__ import annotations

import os


def _optional_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else None


RESOURCES_TABLE = os.environ.get("RESOURCES_TABLE", "resources")
SCHEDULES_TABLE = os.environ.get("SCHEDULES_TABLE", "weekly_schedules")
PRICING_RULES_TABLE = os.environ.get("PRICING_RULES_TABLE", "pricing_rules")
SLOTS_TABLE = os.environ.get("SLOTS_TABLE", "slots")
BOOKINGS_TABLE = os.environ.get("BOOKINGS_TABLE", "bookings")
PAYMENT_METHODS_TABLE = os.environ.get("PAYMENT_METHODS_TABLE", "payment_methods")

RECEIPTS_BUCKET = os.environ.get("RECEIPTS_BUCKET", "receipts")
RECEIPTS_PUBLIC_BASE_URL = os.environ.get(
    "RECEIPTS_PUBLIC_BASE_URL", f"https://{RECEIPTS_BUCKET}.s3.amazonaws.com"
).rstrip("/")
RECEIPT_MAX_BYTES = int(os.environ.get("RECEIPT_MAX_BYTES", str(10 * 1024 * 1024)))

# Schedules and pricing windows are wall-clock times in this zone
BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "Asia/Yangon")

DEFAULT_SLOT_DURATION_MINUTES = int(os.environ.get("DEFAULT_SLOT_DURATION_MINUTES", "60"))
MAX_GENERATION_DAYS = int(os.environ.get("MAX_GENERATION_DAYS", "366"))
COVERAGE_HORIZON_DAYS = int(os.environ.get("COVERAGE_HORIZON_DAYS", "30"))
SLOT_RETENTION_DAYS = int(os.environ.get("SLOT_RETENTION_DAYS", "7"))
# Unset means abandoned PENDING_PAYMENT bookings are never expired automatically
PENDING_PAYMENT_TIMEOUT_MINUTES = _optional_int("PENDING_PAYMENT_TIMEOUT_MINUTES")

EVENT_BUS_NAME = os.environ.get("EVENT_BUS_NAME", "default")
