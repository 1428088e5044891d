from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from zoneinfo import ZoneInfo

from aws_lambda_powertools import Logger

from . import dal
from .models import AvailabilityMatrix, MatrixRow, Resource, ResourceSummary, Slot, SlotWithResource
from .timeutils import ensure_utc, local_date, utcnow

logger = Logger()


def _with_resource_names(
    resources: Sequence[Resource], slots: Sequence[Slot]
) -> list[SlotWithResource]:
    names = {resource.resource_id: resource.name for resource in resources}
    embedded = [
        SlotWithResource(**slot.model_dump(), resource_name=names[slot.resource_id])
        for slot in slots
        if slot.resource_id in names
    ]
    return sorted(embedded, key=lambda s: (s.start_time, s.end_time, s.resource_name))


def list_business_slots(business_id: str, day: date) -> list[SlotWithResource]:
    resources = dal.list_resources_for_business(business_id)
    if not resources:
        return []
    slots = dal.list_slots_for_business_date(business_id, day)
    return _with_resource_names(resources, slots)


def build_matrix(
    business_id: str,
    day: date,
    resources: Sequence[Resource],
    slots: Sequence[SlotWithResource],
    now: datetime,
    tz: ZoneInfo | None = None,
) -> AvailabilityMatrix:
    """Group a day's slots into rows keyed by (start_time, end_time).

    When ``day`` is today in the business timezone, slots that already
    started are left out entirely.
    """
    now = ensure_utc(now)
    is_today = local_date(now, tz) == day
    resource_ids = [resource.resource_id for resource in resources]

    rows: dict[tuple[datetime, datetime], MatrixRow] = {}
    for slot in slots:
        start = ensure_utc(slot.start_time)
        end = ensure_utc(slot.end_time)
        if is_today and start < now:
            continue

        row = rows.get((start, end))
        if row is None:
            # first slot seen sets the row price
            row = MatrixRow(
                start_time=start,
                end_time=end,
                price=slot.price,
                cells={resource_id: None for resource_id in resource_ids},
            )
            rows[(start, end)] = row
        row.cells[slot.resource_id] = slot

    return AvailabilityMatrix(
        business_id=business_id,
        day=day,
        resources=[
            ResourceSummary(
                resource_id=resource.resource_id, name=resource.name, field_type=resource.field_type
            )
            for resource in resources
        ],
        rows=[rows[key] for key in sorted(rows)],
    )


def get_availability_matrix(
    business_id: str, day: date, now: datetime | None = None
) -> AvailabilityMatrix:
    resources = dal.list_resources_for_business(business_id)
    slots: list[SlotWithResource] = []
    if resources:
        slots = _with_resource_names(resources, dal.list_slots_for_business_date(business_id, day))
    matrix = build_matrix(business_id, day, resources, slots, now or utcnow())
    logger.info(
        "Built availability matrix",
        extra={
            "business_id": business_id,
            "day": day.isoformat(),
            "resources": len(resources),
            "rows": len(matrix.rows),
        },
    )
    return matrix
