from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .timeutils import parse_time_of_day

DayOfWeek = Annotated[int, Field(ge=1, le=7)]

BookingStatus = Literal["PENDING_PAYMENT", "SUBMITTED", "CONFIRMED", "REJECTED", "CANCELLED"]
PaymentMethodKind = Literal["receipt", "cash_on_arrival"]

PENDING_PAYMENT: BookingStatus = "PENDING_PAYMENT"
SUBMITTED: BookingStatus = "SUBMITTED"
CONFIRMED: BookingStatus = "CONFIRMED"
REJECTED: BookingStatus = "REJECTED"
CANCELLED: BookingStatus = "CANCELLED"

# source state -> states it may move to
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING_PAYMENT: frozenset({SUBMITTED, CANCELLED}),
    SUBMITTED: frozenset({CONFIRMED, REJECTED}),
    CONFIRMED: frozenset(),
    REJECTED: frozenset(),
    CANCELLED: frozenset(),
}
# statuses that hold the slot
ACTIVE_STATUSES = frozenset({PENDING_PAYMENT, SUBMITTED, CONFIRMED})


class ResourceCreate(BaseModel):
    business_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    field_type: str | None = None
    base_price: Decimal = Field(..., ge=0)


class Resource(BaseModel):
    resource_id: str
    business_id: str
    name: str
    field_type: str | None = None
    base_price: Decimal | None = None
    is_active: bool = True
    # last local date covered by a completed generation pass
    generated_through: date | None = None


class ResourceSummary(BaseModel):
    resource_id: str
    name: str
    field_type: str | None = None


class ScheduleDay(BaseModel):
    day_of_week: DayOfWeek
    is_open: bool = False
    open_time: time | None = None
    close_time: time | None = None

    @field_validator("open_time", "close_time", mode="before")
    @classmethod
    def _parse_times(cls, value: object) -> time | None:
        if value is None or value == "":
            return None
        return parse_time_of_day(value)

    @model_validator(mode="after")
    def _open_days_need_hours(self) -> ScheduleDay:
        if self.is_open and (self.open_time is None or self.close_time is None):
            raise ValueError("open days require open_time and close_time")
        return self


class WeeklyScheduleRule(ScheduleDay):
    resource_id: str


class PricingRuleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    price_override: Decimal = Field(..., ge=0)
    # None or empty applies to every open day
    days_of_week: list[DayOfWeek] | None = None
    start_time: time
    end_time: time
    priority: int = 0

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_times(cls, value: object) -> time:
        return parse_time_of_day(value)

    @field_validator("days_of_week")
    @classmethod
    def _normalize_days(cls, value: list[int] | None) -> list[int] | None:
        if not value:
            return None
        return sorted(set(value))


class PricingRule(PricingRuleCreate):
    rule_id: str
    resource_id: str
    created_at: datetime

    def applies_on(self, day_of_week: int) -> bool:
        return not self.days_of_week or day_of_week in self.days_of_week


class Slot(BaseModel):
    slot_id: str
    resource_id: str
    business_id: str
    slot_date: date
    start_time: datetime
    end_time: datetime
    price: Decimal
    is_booked: bool = False
    booking_id: str | None = None
    # set when a booking releases the slot; such slots are never cleaned up
    last_booking_id: str | None = None


class SlotWithResource(Slot):
    resource_name: str


class MatrixRow(BaseModel):
    start_time: datetime
    end_time: datetime
    price: Decimal
    cells: dict[str, SlotWithResource | None]


class AvailabilityMatrix(BaseModel):
    business_id: str
    day: date
    resources: list[ResourceSummary]
    rows: list[MatrixRow]


class GenerateSlotsRequest(BaseModel):
    start_date: date
    end_date: date
    slot_duration_minutes: int = Field(default=60, ge=5, le=1440)


class GenerationResult(BaseModel):
    resource_id: str
    start_date: date
    end_date: date
    slots_created: int = 0
    slots_existing: int = 0
    slots_removed: int = 0


class CoverageReport(BaseModel):
    resource_id: str
    generated_from: date | None = None
    generated_through: date | None = None
    slots_created: int = 0
    error: str | None = None


class Booking(BaseModel):
    booking_id: str
    slot_id: str
    resource_id: str
    business_id: str
    user_id: str
    amount: Decimal
    status: BookingStatus = PENDING_PAYMENT
    payment_method: PaymentMethodKind | None = None
    receipt_url: str | None = None
    created_at: datetime
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    cancel_reason: str | None = None


class ReservationCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    # optional client quote; must equal the slot price when supplied
    amount: Decimal | None = None


class ReviewAction(BaseModel):
    reviewed_by: str | None = None


class CancelAction(BaseModel):
    reason: str = Field(default="cancelled", min_length=1)


class ReceiptUpload(BaseModel):
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class SubmitBookingResult(BaseModel):
    success: bool
    booking_id: str | None = None
    status: BookingStatus | None = None
    error: str | None = None
    code: str | None = None
    retryable: bool = False


class PaymentMethodCreate(BaseModel):
    method_type: str = Field(..., min_length=1)
    account_name: str | None = None
    account_number: str | None = None


class PaymentMethod(PaymentMethodCreate):
    business_id: str
    method_id: str
