"""Payment receipt workflow.

PENDING_PAYMENT -> SUBMITTED -> CONFIRMED | REJECTED, plus
PENDING_PAYMENT -> CANCELLED. Every transition re-reads the booking and is
applied with a conditional write on the source status, so a stale caller
gets InvalidStateTransition and nothing changes.
"""

from __future__ import annotations

from datetime import datetime

from aws_lambda_powertools import Logger

from . import dal, storage
from .errors import InvalidStateTransition
from .models import (
    CANCELLED,
    CONFIRMED,
    PENDING_PAYMENT,
    REJECTED,
    SUBMITTED,
    TRANSITIONS,
    Booking,
    BookingStatus,
    ReceiptUpload,
)
from .timeutils import utcnow

logger = Logger()


def ensure_transition(booking: Booking, target: BookingStatus) -> None:
    if target not in TRANSITIONS.get(booking.status, frozenset()):
        logger.warning(
            "Rejected booking transition",
            extra={"booking_id": booking.booking_id, "from": booking.status, "to": target},
        )
        raise InvalidStateTransition(
            f"Booking cannot move from {booking.status} to {target}.",
            booking_id=booking.booking_id,
        )


def submit_receipt(
    booking_id: str, receipt: ReceiptUpload, now: datetime | None = None
) -> Booking:
    booking = dal.get_booking(booking_id)
    ensure_transition(booking, SUBMITTED)

    # upload failures leave the booking in PENDING_PAYMENT so the user can retry
    receipt_url = storage.upload_receipt(booking, receipt)
    updated = dal.transition_booking(
        booking_id,
        PENDING_PAYMENT,
        SUBMITTED,
        {"receipt_url": receipt_url, "payment_method": "receipt", "submitted_at": now or utcnow()},
    )
    logger.info("Receipt submitted", extra={"booking_id": booking_id, "amount": str(updated.amount)})
    return updated


def submit_cash_on_arrival(booking_id: str, now: datetime | None = None) -> Booking:
    booking = dal.get_booking(booking_id)
    ensure_transition(booking, SUBMITTED)
    updated = dal.transition_booking(
        booking_id,
        PENDING_PAYMENT,
        SUBMITTED,
        {"payment_method": "cash_on_arrival", "submitted_at": now or utcnow()},
    )
    logger.info("Cash on arrival selected", extra={"booking_id": booking_id})
    return updated


def confirm_booking(
    booking_id: str, reviewed_by: str | None = None, now: datetime | None = None
) -> Booking:
    booking = dal.get_booking(booking_id)
    ensure_transition(booking, CONFIRMED)
    updated = dal.transition_booking(
        booking_id,
        SUBMITTED,
        CONFIRMED,
        {"reviewed_by": reviewed_by, "reviewed_at": now or utcnow()},
    )
    logger.info("Booking confirmed", extra={"booking_id": booking_id, "reviewed_by": reviewed_by})
    return updated


def reject_booking(
    booking_id: str, reviewed_by: str | None = None, now: datetime | None = None
) -> Booking:
    booking = dal.get_booking(booking_id)
    ensure_transition(booking, REJECTED)
    updated = dal.release_slot(
        booking,
        SUBMITTED,
        REJECTED,
        {"reviewed_by": reviewed_by, "reviewed_at": now or utcnow()},
    )
    logger.info(
        "Booking rejected, slot released",
        extra={"booking_id": booking_id, "slot_id": booking.slot_id, "reviewed_by": reviewed_by},
    )
    return updated


def cancel_pending(booking_id: str, reason: str = "cancelled") -> Booking:
    booking = dal.get_booking(booking_id)
    ensure_transition(booking, CANCELLED)
    updated = dal.release_slot(booking, PENDING_PAYMENT, CANCELLED, {"cancel_reason": reason})
    logger.info(
        "Pending booking cancelled, slot released",
        extra={"booking_id": booking_id, "slot_id": booking.slot_id, "reason": reason},
    )
    return updated


def list_bookings_by_status(status: BookingStatus) -> list[Booking]:
    return dal.list_bookings_by_status(status)
