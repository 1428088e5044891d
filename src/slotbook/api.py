from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Annotated

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from starlette.responses import Response

from slotbook import availability, catalog, payments, reservations, slot_generator
from slotbook.errors import ERRORS_BY_CODE, BookingError, InvalidStateTransition
from slotbook.models import (
    AvailabilityMatrix,
    Booking,
    BookingStatus,
    CancelAction,
    CoverageReport,
    GenerateSlotsRequest,
    GenerationResult,
    PaymentMethod,
    PaymentMethodCreate,
    PricingRule,
    PricingRuleCreate,
    ReceiptUpload,
    ReservationCreate,
    Resource,
    ResourceCreate,
    ReviewAction,
    ScheduleDay,
    SlotWithResource,
    SubmitBookingResult,
    WeeklyScheduleRule,
)

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="SlotBookingAPI")

app = FastAPI(title="Slot Booking API", version="0.2.0")

DateQuery = Annotated[date, Query(alias="date")]


@app.exception_handler(BookingError)
def handle_booking_error(request: Request, exc: BookingError) -> JSONResponse:
    log = logger.warning if isinstance(exc, InvalidStateTransition) else logger.info
    log(
        "Request failed",
        extra={"path": request.url.path, "code": exc.code, "error": exc.message, **exc.context},
    )
    return JSONResponse(status_code=int(exc.status_code), content=exc.to_dict())


def _read_receipt(upload: UploadFile) -> ReceiptUpload:
    return ReceiptUpload(
        filename=upload.filename or "receipt",
        content=upload.file.read(),
        content_type=upload.content_type or "application/octet-stream",
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# Resources, schedules, pricing


@tracer.capture_method
@app.post("/resources", response_model=Resource, status_code=201)
def create_resource(payload: ResourceCreate) -> Resource:
    return catalog.create_resource(payload)


@tracer.capture_method
@app.get("/resources/{resource_id}", response_model=Resource)
def get_resource(resource_id: str) -> Resource:
    return catalog.get_resource(resource_id)


@tracer.capture_method
@app.get("/businesses/{business_id}/resources", response_model=list[Resource])
def list_resources(business_id: str) -> list[Resource]:
    return catalog.list_resources(business_id)


@tracer.capture_method
@app.get("/resources/{resource_id}/schedule", response_model=list[WeeklyScheduleRule])
def get_schedule(resource_id: str) -> list[WeeklyScheduleRule]:
    return catalog.get_weekly_schedule(resource_id)


@tracer.capture_method
@app.put("/resources/{resource_id}/schedule", response_model=list[WeeklyScheduleRule])
def put_schedule(resource_id: str, days: list[ScheduleDay]) -> list[WeeklyScheduleRule]:
    return catalog.set_weekly_schedule(resource_id, days)


@tracer.capture_method
@app.get("/resources/{resource_id}/closed-days")
def get_closed_days(resource_id: str) -> dict[str, object]:
    return {"resource_id": resource_id, "closed_days": catalog.closed_weekdays(resource_id)}


@tracer.capture_method
@app.get("/resources/{resource_id}/pricing-rules", response_model=list[PricingRule])
def list_pricing_rules(resource_id: str) -> list[PricingRule]:
    return catalog.list_pricing_rules(resource_id)


@tracer.capture_method
@app.post("/resources/{resource_id}/pricing-rules", response_model=PricingRule, status_code=201)
def add_pricing_rule(resource_id: str, payload: PricingRuleCreate) -> PricingRule:
    return catalog.add_pricing_rule(resource_id, payload)


@tracer.capture_method
@app.delete("/resources/{resource_id}/pricing-rules/{rule_id}")
def delete_pricing_rule(resource_id: str, rule_id: str) -> Response:
    catalog.delete_pricing_rule(resource_id, rule_id)
    return Response(status_code=204)


# Slots and availability


@tracer.capture_method
@app.post("/resources/{resource_id}/slots/generate", response_model=GenerationResult)
def generate_slots(resource_id: str, payload: GenerateSlotsRequest) -> GenerationResult:
    result = slot_generator.generate_slots(
        resource_id, payload.start_date, payload.end_date, payload.slot_duration_minutes
    )
    metrics.add_metric(name="SlotsGenerated", value=result.slots_created, unit=MetricUnit.Count)
    return result


@tracer.capture_method
@app.post("/resources/{resource_id}/slots/regenerate", response_model=GenerationResult)
def regenerate_slots(resource_id: str, payload: GenerateSlotsRequest) -> GenerationResult:
    return slot_generator.regenerate_slots(
        resource_id, payload.start_date, payload.end_date, payload.slot_duration_minutes
    )


@tracer.capture_method
@app.post("/businesses/{business_id}/slots/ensure-coverage", response_model=list[CoverageReport])
def ensure_coverage(business_id: str) -> list[CoverageReport]:
    return slot_generator.ensure_business_coverage(business_id)


@tracer.capture_method
@app.get("/businesses/{business_id}/slots", response_model=list[SlotWithResource])
def list_slots(business_id: str, day: DateQuery) -> list[SlotWithResource]:
    return availability.list_business_slots(business_id, day)


@tracer.capture_method
@app.get("/businesses/{business_id}/availability", response_model=AvailabilityMatrix)
def get_availability(business_id: str, day: DateQuery) -> AvailabilityMatrix:
    return availability.get_availability_matrix(business_id, day)


@tracer.capture_method
@app.get("/businesses/{business_id}/payment-methods", response_model=list[PaymentMethod])
def list_payment_methods(business_id: str) -> list[PaymentMethod]:
    return catalog.get_payment_methods(business_id)


@tracer.capture_method
@app.post(
    "/businesses/{business_id}/payment-methods", response_model=PaymentMethod, status_code=201
)
def add_payment_method(business_id: str, payload: PaymentMethodCreate) -> PaymentMethod:
    return catalog.add_payment_method(business_id, payload)


# Reservations and the payment workflow


@tracer.capture_method
@app.post("/slots/{slot_id}/reservations", response_model=Booking, status_code=201)
def reserve_slot(slot_id: str, payload: ReservationCreate) -> Booking:
    try:
        booking = reservations.reserve(slot_id, payload.user_id, payload.amount)
    except BookingError as exc:
        metrics.add_metric(name=f"Reserve_{exc.code}", value=1, unit=MetricUnit.Count)
        raise
    metrics.add_metric(name="Reservations", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.post("/bookings", response_model=SubmitBookingResult, status_code=201)
def submit_booking(
    slot_id: Annotated[str, Form()],
    user_id: Annotated[str, Form()],
    amount: Annotated[Decimal | None, Form()] = None,
    receipt: Annotated[UploadFile | None, File()] = None,
) -> SubmitBookingResult | JSONResponse:
    upload = _read_receipt(receipt) if receipt is not None else None
    result = reservations.submit_booking(slot_id, user_id, amount, upload)
    if result.success:
        metrics.add_metric(name="BookingsSubmitted", value=1, unit=MetricUnit.Count)
        return result

    error_cls = ERRORS_BY_CODE.get(result.code or "", BookingError)
    return JSONResponse(status_code=int(error_cls.status_code), content=result.model_dump(mode="json"))


@tracer.capture_method
@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str) -> Booking:
    return reservations.get_booking(booking_id)


@tracer.capture_method
@app.get("/users/{user_id}/bookings", response_model=list[Booking])
def list_bookings(user_id: str) -> list[Booking]:
    return reservations.list_bookings_for_user(user_id)


@tracer.capture_method
@app.post("/bookings/{booking_id}/receipt", response_model=Booking)
def upload_receipt(booking_id: str, receipt: Annotated[UploadFile, File()]) -> Booking:
    return payments.submit_receipt(booking_id, _read_receipt(receipt))


@tracer.capture_method
@app.post("/bookings/{booking_id}/cash-on-arrival", response_model=Booking)
def cash_on_arrival(booking_id: str) -> Booking:
    return payments.submit_cash_on_arrival(booking_id)


@tracer.capture_method
@app.post("/bookings/{booking_id}/confirm", response_model=Booking)
def confirm_booking(booking_id: str, payload: ReviewAction | None = None) -> Booking:
    booking = payments.confirm_booking(booking_id, payload.reviewed_by if payload else None)
    metrics.add_metric(name="BookingsConfirmed", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.post("/bookings/{booking_id}/reject", response_model=Booking)
def reject_booking(booking_id: str, payload: ReviewAction | None = None) -> Booking:
    booking = payments.reject_booking(booking_id, payload.reviewed_by if payload else None)
    metrics.add_metric(name="BookingsRejected", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(booking_id: str, payload: CancelAction | None = None) -> Booking:
    return reservations.cancel_booking(booking_id, payload.reason if payload else "cancelled")


@tracer.capture_method
@app.get("/admin/bookings", response_model=list[Booking])
def list_bookings_for_review(status: BookingStatus = "SUBMITTED") -> list[Booking]:
    return payments.list_bookings_by_status(status)
