from __future__ import annotations

import json
from typing import Any

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext

from slotbook import config

logger = Logger()
tracer = Tracer()

_events = boto3.client("events")

EVENT_SOURCE = "booking.workflow"
DETAIL_TYPE = "BookingStatusChanged"


def _s(image: dict[str, Any], name: str) -> str | None:
    value = image.get(name, {}).get("S")
    return value if isinstance(value, str) else None


def _status_change(record: dict[str, Any]) -> dict[str, Any] | None:
    event_name = record.get("eventName")
    if event_name not in ("INSERT", "MODIFY"):
        return None

    images = record.get("dynamodb", {})
    new_image = images.get("NewImage", {})
    old_image = images.get("OldImage", {})

    booking_id = _s(new_image, "booking_id")
    new_status = _s(new_image, "status")
    old_status = _s(old_image, "status") if event_name == "MODIFY" else None
    if not booking_id or not new_status or new_status == old_status:
        # Not a booking write, or an update that left the status alone
        return None

    return {
        "version": "1.0",
        "type": DETAIL_TYPE,
        "booking_id": booking_id,
        "user_id": _s(new_image, "user_id"),
        "slot_id": _s(new_image, "slot_id"),
        "business_id": _s(new_image, "business_id"),
        "old_status": old_status,
        "new_status": new_status,
    }


@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> None:
    # Triggered by the bookings table stream (NEW_AND_OLD_IMAGES)
    entries = []
    for record in event.get("Records", []):
        detail = _status_change(record)
        if detail is None:
            continue
        logger.info("Emitting booking status event", extra=detail)
        entries.append(
            {
                "Source": EVENT_SOURCE,
                "DetailType": DETAIL_TYPE,
                "Detail": json.dumps(detail),
                "EventBusName": config.EVENT_BUS_NAME,
            }
        )

    # PutEvents accepts at most 10 entries per call
    for start in range(0, len(entries), 10):
        _events.put_events(Entries=entries[start : start + 10])
