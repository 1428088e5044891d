from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation

from aws_lambda_powertools import Logger

from . import dal, payments, storage
from .errors import BookingError, ConflictError, InvalidStateTransition, ValidationFailure
from .models import PENDING_PAYMENT, Booking, ReceiptUpload, SubmitBookingResult
from .timeutils import ensure_utc, utcnow

logger = Logger()


def _check_amount(amount: Decimal | str | int | None, price: Decimal, slot_id: str) -> None:
    if amount is None:
        return
    try:
        quoted = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationFailure("Submitted amount is not a number.") from exc
    if quoted != price:
        logger.warning(
            "Payment amount mismatch for slot",
            extra={"slot_id": slot_id, "amount": str(quoted), "slot_price": str(price)},
        )
        raise ValidationFailure("Submitted amount does not match the slot price.", slot_id=slot_id)


def reserve(
    slot_id: str,
    user_id: str,
    amount: Decimal | str | int | None = None,
    now: datetime | None = None,
) -> Booking:
    if not user_id:
        raise ValidationFailure("user_id is required.")
    now = ensure_utc(now or utcnow())

    slot = dal.get_slot(slot_id)
    if slot.is_booked:
        raise ConflictError(slot_id=slot_id)
    if ensure_utc(slot.start_time) <= now:
        raise ValidationFailure("This slot has already started.", slot_id=slot_id)
    _check_amount(amount, slot.price, slot_id)

    booking = Booking(
        booking_id=str(uuid.uuid4()),
        slot_id=slot.slot_id,
        resource_id=slot.resource_id,
        business_id=slot.business_id,
        user_id=user_id,
        # always the frozen slot price, never the client's figure
        amount=slot.price,
        status=PENDING_PAYMENT,
        created_at=now,
    )
    return dal.reserve_slot(booking)


def submit_booking(
    slot_id: str,
    user_id: str,
    amount: Decimal | str | int | None,
    receipt: ReceiptUpload | None,
    now: datetime | None = None,
) -> SubmitBookingResult:
    """Reserve a slot and attach the payment evidence in one call.

    Without a receipt the booking is submitted as cash on arrival. Errors
    come back as a failed result; an upload failure after a successful
    reservation keeps the booking id so the upload can be retried.
    """
    try:
        # a receipt that can never be accepted must not hold the slot
        if receipt is not None:
            storage.validate_receipt(receipt)
        booking = reserve(slot_id, user_id, amount, now)
    except BookingError as exc:
        return SubmitBookingResult(
            success=False, error=exc.message, code=exc.code, retryable=exc.retryable
        )

    try:
        if receipt is None:
            booking = payments.submit_cash_on_arrival(booking.booking_id, now)
        else:
            booking = payments.submit_receipt(booking.booking_id, receipt, now)
    except BookingError as exc:
        return SubmitBookingResult(
            success=False,
            booking_id=booking.booking_id,
            status=booking.status,
            error=exc.message,
            code=exc.code,
            retryable=exc.retryable,
        )

    return SubmitBookingResult(success=True, booking_id=booking.booking_id, status=booking.status)


def cancel_booking(booking_id: str, reason: str = "cancelled") -> Booking:
    return payments.cancel_pending(booking_id, reason)


def expire_pending_bookings(older_than: datetime) -> int:
    expired = 0
    for booking in dal.list_bookings_by_status(PENDING_PAYMENT, created_before=older_than):
        try:
            payments.cancel_pending(booking.booking_id, reason="expired")
        except InvalidStateTransition:
            # moved on (receipt submitted) between the query and the write
            continue
        expired += 1
    logger.info(
        "Expired pending bookings",
        extra={"older_than": ensure_utc(older_than).isoformat(), "expired": expired},
    )
    return expired


def get_booking(booking_id: str) -> Booking:
    return dal.get_booking(booking_id)


def list_bookings_for_user(user_id: str) -> list[Booking]:
    return dal.list_bookings_for_user(user_id)
