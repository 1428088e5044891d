from __future__ import annotations

from http import HTTPStatus
from typing import Any


class BookingError(Exception):
    code = "booking_error"
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    retryable = False
    default_message = "Unable to process the request."

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class ConflictError(BookingError):
    code = "conflict"
    status_code = HTTPStatus.CONFLICT
    default_message = "This slot has already been booked. Please choose another available slot."


class InvalidStateTransition(BookingError):
    code = "invalid_state_transition"
    status_code = HTTPStatus.CONFLICT
    default_message = "This booking has already been processed."


class UploadFailure(BookingError):
    code = "upload_failure"
    status_code = HTTPStatus.BAD_GATEWAY
    retryable = True
    default_message = "Unable to upload receipt. Please try again."


class ScheduleLookupFailure(BookingError):
    code = "schedule_lookup_failure"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    retryable = True
    default_message = "Unable to load the schedule for this resource."


class ValidationFailure(BookingError):
    code = "validation_failure"
    status_code = HTTPStatus.UNPROCESSABLE_ENTITY
    default_message = "The request is invalid."


class NotFoundError(BookingError):
    code = "not_found"
    status_code = HTTPStatus.NOT_FOUND
    default_message = "Not found"


ERRORS_BY_CODE: dict[str, type[BookingError]] = {
    cls.code: cls
    for cls in (
        ConflictError,
        InvalidStateTransition,
        UploadFailure,
        ScheduleLookupFailure,
        ValidationFailure,
        NotFoundError,
    )
}
