"""Weekly-schedule-driven slot generation.

Slots are planned in the business timezone and written with a conditional
put keyed on a deterministic slot id, so running the same generation twice,
or concurrently, never produces duplicate rows and never re-prices a slot
that already exists.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from . import config, dal
from .errors import BookingError, ScheduleLookupFailure, ValidationFailure
from .models import CoverageReport, GenerationResult, PricingRule, Resource, Slot, WeeklyScheduleRule
from .timeutils import business_tz, daterange, ensure_utc, local_date, local_window, utcnow

logger = Logger()

SLOT_NAMESPACE = uuid.UUID("6f1c5a0e-4c1b-4d8e-9a57-2f1e0b7d3c11")
MIN_SLOT_MINUTES = 5
MAX_SLOT_MINUTES = 24 * 60


def slot_id_for(resource_id: str, start_time: datetime, end_time: datetime) -> str:
    key = f"{resource_id}|{ensure_utc(start_time).isoformat()}|{ensure_utc(end_time).isoformat()}"
    return str(uuid.uuid5(SLOT_NAMESPACE, key))


def _rule_sort_key(rule: PricingRule) -> tuple[int, datetime, str]:
    return (rule.priority, ensure_utc(rule.created_at), rule.rule_id)


def resolve_price(
    base_price: Decimal,
    rules: Sequence[PricingRule],
    day: date,
    start: datetime,
    end: datetime,
    tz: ZoneInfo | None = None,
) -> Decimal:
    """Price for the interval [start, end) generated on ``day``.

    A rule matches when its day set includes the weekday and its window
    overlaps the interval. Highest priority wins, then the newest rule.
    """
    weekday = day.isoweekday()
    matching = []
    for rule in rules:
        if not rule.applies_on(weekday):
            continue
        window_start, window_end = local_window(day, rule.start_time, rule.end_time, tz)
        if window_start < end and window_end > start:
            matching.append(rule)

    if not matching:
        return base_price
    return max(matching, key=_rule_sort_key).price_override


def plan_slots(
    resource: Resource,
    schedule: Iterable[WeeklyScheduleRule],
    pricing_rules: Sequence[PricingRule],
    start_date: date,
    end_date: date,
    slot_duration_minutes: int = 60,
    tz: ZoneInfo | None = None,
) -> list[Slot]:
    if resource.base_price is None:
        raise ValidationFailure("Resource has no base price.", resource_id=resource.resource_id)

    tz = tz or business_tz()
    by_day = {rule.day_of_week: rule for rule in schedule}
    step = timedelta(minutes=slot_duration_minutes)
    slots: list[Slot] = []

    for day in daterange(start_date, end_date):
        rule = by_day.get(day.isoweekday())
        if rule is None or not rule.is_open or rule.open_time is None or rule.close_time is None:
            continue

        current, closes = local_window(day, rule.open_time, rule.close_time, tz)
        # trailing partial intervals are dropped
        while current + step <= closes:
            slot_end = current + step
            slots.append(
                Slot(
                    slot_id=slot_id_for(resource.resource_id, current, slot_end),
                    resource_id=resource.resource_id,
                    business_id=resource.business_id,
                    slot_date=local_date(current, tz),
                    start_time=current,
                    end_time=slot_end,
                    price=resolve_price(resource.base_price, pricing_rules, day, current, slot_end, tz),
                )
            )
            current = slot_end

    return slots


def validate_range(start_date: date, end_date: date, slot_duration_minutes: int) -> None:
    if start_date > end_date:
        raise ValidationFailure("start_date must not be after end_date.")
    if (end_date - start_date).days + 1 > config.MAX_GENERATION_DAYS:
        raise ValidationFailure(
            f"Date range may cover at most {config.MAX_GENERATION_DAYS} days."
        )
    if not MIN_SLOT_MINUTES <= slot_duration_minutes <= MAX_SLOT_MINUTES:
        raise ValidationFailure(
            f"Slot duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes."
        )


def _load_resource(resource_id: str) -> Resource:
    resource = dal.get_resource(resource_id)
    if not resource.is_active:
        raise ValidationFailure("Resource is not active.", resource_id=resource_id)
    if resource.base_price is None:
        raise ValidationFailure("Resource has no base price.", resource_id=resource_id)
    return resource


def _load_rules(resource_id: str) -> tuple[list[WeeklyScheduleRule], list[PricingRule]]:
    try:
        return dal.list_schedule_rules(resource_id), dal.list_pricing_rules(resource_id)
    except (ClientError, BotoCoreError) as exc:
        logger.exception("Schedule lookup failed", extra={"resource_id": resource_id})
        raise ScheduleLookupFailure(resource_id=resource_id) from exc


def _prepare(
    resource_id: str, start_date: date, end_date: date, slot_duration_minutes: int
) -> tuple[Resource, list[Slot]]:
    # every read and the whole plan happen before the first write
    validate_range(start_date, end_date, slot_duration_minutes)
    resource = _load_resource(resource_id)
    schedule, pricing_rules = _load_rules(resource_id)
    planned = plan_slots(
        resource, schedule, pricing_rules, start_date, end_date, slot_duration_minutes
    )
    return resource, planned


def _extends_coverage(resource: Resource, start_date: date, today: date) -> bool:
    if resource.generated_through is None:
        return start_date <= today
    return start_date <= max(today, resource.generated_through + timedelta(days=1))


def _insert_planned(
    resource: Resource,
    planned: Sequence[Slot],
    start_date: date,
    end_date: date,
    today: date | None,
) -> GenerationResult:
    result = GenerationResult(
        resource_id=resource.resource_id, start_date=start_date, end_date=end_date
    )
    for slot in planned:
        if dal.insert_slot_if_absent(slot):
            result.slots_created += 1
        else:
            result.slots_existing += 1

    # a detached future range must not hide the gap before it from coverage
    if _extends_coverage(resource, start_date, today or local_date(utcnow())):
        dal.advance_generated_through(resource.resource_id, end_date)
    logger.info(
        "Generated slots",
        extra={
            "resource_id": resource.resource_id,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "slots_created": result.slots_created,
            "slots_existing": result.slots_existing,
        },
    )
    return result


def generate_slots(
    resource_id: str,
    start_date: date,
    end_date: date,
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES,
    today: date | None = None,
) -> GenerationResult:
    resource, planned = _prepare(resource_id, start_date, end_date, slot_duration_minutes)
    return _insert_planned(resource, planned, start_date, end_date, today)


def regenerate_slots(
    resource_id: str,
    start_date: date,
    end_date: date,
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES,
    now: datetime | None = None,
) -> GenerationResult:
    """Drop unbooked future slots in the range, then generate again.

    Booked slots, slots that already started and slots that once held a
    booking are kept as they are.
    """
    resource, planned = _prepare(resource_id, start_date, end_date, slot_duration_minutes)
    now = ensure_utc(now or utcnow())

    removed = 0
    for slot in dal.list_slots_for_resource(resource_id, start_date, end_date):
        if slot.is_booked or slot.last_booking_id or ensure_utc(slot.start_time) <= now:
            continue
        if dal.delete_unbooked_slot(slot.slot_id):
            removed += 1

    logger.info("Cleared unbooked future slots", extra={"resource_id": resource_id, "removed": removed})
    result = _insert_planned(resource, planned, start_date, end_date, local_date(now))
    result.slots_removed = removed
    return result


def ensure_coverage_for(
    resource: Resource,
    today: date,
    horizon_days: int = config.COVERAGE_HORIZON_DAYS,
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES,
) -> CoverageReport:
    target = today + timedelta(days=horizon_days)
    report = CoverageReport(resource_id=resource.resource_id)

    if resource.generated_through is not None and resource.generated_through >= target:
        report.generated_through = resource.generated_through
        return report

    start = today
    if resource.generated_through is not None:
        start = max(today, resource.generated_through + timedelta(days=1))

    try:
        result = generate_slots(resource.resource_id, start, target, slot_duration_minutes, today)
    except BookingError as exc:
        logger.warning(
            "Coverage generation failed",
            extra={"resource_id": resource.resource_id, "code": exc.code, "error": exc.message},
        )
        report.error = exc.message
        return report
    except (ClientError, BotoCoreError) as exc:
        logger.exception("Coverage generation failed", extra={"resource_id": resource.resource_id})
        report.error = str(exc)
        return report

    report.generated_from = start
    report.generated_through = target
    report.slots_created = result.slots_created
    return report


def ensure_slot_coverage(
    resources: Iterable[Resource],
    today: date | None = None,
    horizon_days: int = config.COVERAGE_HORIZON_DAYS,
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES,
) -> list[CoverageReport]:
    today = today or local_date(utcnow())
    return [
        ensure_coverage_for(resource, today, horizon_days, slot_duration_minutes)
        for resource in resources
        if resource.is_active
    ]


def ensure_business_coverage(
    business_id: str,
    today: date | None = None,
    horizon_days: int = config.COVERAGE_HORIZON_DAYS,
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES,
) -> list[CoverageReport]:
    resources = dal.list_resources_for_business(business_id)
    return ensure_slot_coverage(resources, today, horizon_days, slot_duration_minutes)


def cleanup_old_slots(
    now: datetime | None = None, retention_days: int = config.SLOT_RETENTION_DAYS
) -> int:
    cutoff = ensure_utc(now or utcnow()) - timedelta(days=retention_days)
    deleted = 0
    for slot in dal.list_unbooked_slots_ending_before(cutoff):
        if dal.delete_unbooked_slot(slot.slot_id):
            deleted += 1
    logger.info("Deleted old unbooked slots", extra={"cutoff": cutoff.isoformat(), "deleted": deleted})
    return deleted
