from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from decimal import Decimal

from conftest import BEFORE_MONDAY, MONDAY, weekday_hours
from slotbook import availability, catalog, dal, payments, reservations, slot_generator
from slotbook.models import PricingRuleCreate, Resource, SlotWithResource


def _slot(resource: Resource, hour_utc: int, price: str) -> SlotWithResource:
    start = datetime(2030, 1, 7, hour_utc, 30, tzinfo=UTC)
    return SlotWithResource(
        slot_id=f"{resource.resource_id}-{hour_utc}",
        resource_id=resource.resource_id,
        business_id=resource.business_id,
        slot_date=MONDAY,
        start_time=start,
        end_time=start + timedelta(hours=1),
        price=Decimal(price),
        resource_name=resource.name,
    )


def test_build_matrix_groups_by_interval():
    court_a = Resource(resource_id="a", business_id="biz", name="Court A")
    court_b = Resource(resource_id="b", business_id="biz", name="Court B")
    slots = [_slot(court_a, 3, "100"), _slot(court_a, 2, "100"), _slot(court_b, 2, "80")]

    matrix = availability.build_matrix("biz", MONDAY, [court_a, court_b], slots, now=BEFORE_MONDAY)

    assert [r.resource_id for r in matrix.resources] == ["a", "b"]
    assert [row.start_time.hour for row in matrix.rows] == [2, 3]
    first, second = matrix.rows
    assert first.cells["a"].slot_id == "a-2"
    assert first.cells["b"].slot_id == "b-2"
    assert second.cells["a"].slot_id == "a-3"
    assert second.cells["b"] is None


def test_row_price_comes_from_first_slot():
    court_a = Resource(resource_id="a", business_id="biz", name="Court A")
    court_b = Resource(resource_id="b", business_id="biz", name="Court B")
    slots = [_slot(court_a, 2, "100"), _slot(court_b, 2, "80")]

    matrix = availability.build_matrix("biz", MONDAY, [court_a, court_b], slots, now=BEFORE_MONDAY)

    assert matrix.rows[0].price == Decimal("100")
    assert matrix.rows[0].cells["b"].price == Decimal("80")


def test_matrix_for_business_without_resources_is_empty():
    matrix = availability.get_availability_matrix("nobody", MONDAY, now=BEFORE_MONDAY)
    assert matrix.resources == []
    assert matrix.rows == []
    assert availability.list_business_slots("nobody", MONDAY) == []


def test_today_hides_slots_that_already_started(db, make_resource):
    res = make_resource(schedule=weekday_hours(time(9, 0), time(12, 0)))
    slot_generator.generate_slots(res.resource_id, MONDAY, MONDAY)
    # 10:15 in Asia/Yangon
    now = datetime(2030, 1, 7, 3, 45, tzinfo=UTC)

    matrix = availability.get_availability_matrix("biz-1", MONDAY, now=now)

    assert len(matrix.rows) == 1
    assert matrix.rows[0].start_time == datetime(2030, 1, 7, 4, 30, tzinfo=UTC)


def test_other_days_show_every_slot(db, make_resource):
    res = make_resource(schedule=weekday_hours(time(9, 0), time(12, 0)))
    slot_generator.generate_slots(res.resource_id, MONDAY, MONDAY + timedelta(days=1))
    now = datetime(2030, 1, 7, 3, 45, tzinfo=UTC)

    matrix = availability.get_availability_matrix("biz-1", MONDAY + timedelta(days=1), now=now)

    assert len(matrix.rows) == 3  # noqa: PLR2004


def test_matrix_uses_stored_prices_and_names(db, make_resource):
    court_a = make_resource(name="Court A")
    court_b = make_resource(name="Court B")
    catalog.add_pricing_rule(
        court_b.resource_id,
        PricingRuleCreate(name="Promo", price_override=Decimal("60"), start_time="09:00", end_time="11:00"),
    )
    slot_generator.ensure_business_coverage("biz-1", MONDAY, horizon_days=0)

    matrix = availability.get_availability_matrix("biz-1", MONDAY, now=BEFORE_MONDAY)

    assert [r.name for r in matrix.resources] == ["Court A", "Court B"]
    assert len(matrix.rows) == 2  # noqa: PLR2004
    for row in matrix.rows:
        assert row.cells[court_a.resource_id].price == Decimal("100")
        assert row.cells[court_b.resource_id].price == Decimal("60")
        assert row.cells[court_b.resource_id].resource_name == "Court B"


def test_rejected_booking_slot_is_available_again(db, resource):
    slot_generator.generate_slots(resource.resource_id, MONDAY, MONDAY)
    slot = sorted(dal.list_slots_for_resource(resource.resource_id, MONDAY, MONDAY), key=lambda s: s.start_time)[0]
    result = reservations.submit_booking(slot.slot_id, "user-1", None, None, now=BEFORE_MONDAY)

    booked = availability.get_availability_matrix("biz-1", MONDAY, now=BEFORE_MONDAY)
    assert booked.rows[0].cells[resource.resource_id].is_booked is True

    payments.reject_booking(result.booking_id, reviewed_by="owner-1")

    freed = availability.get_availability_matrix("biz-1", MONDAY, now=BEFORE_MONDAY)
    assert freed.rows[0].cells[resource.resource_id].is_booked is False


def test_list_business_slots_embeds_resource_name(db, resource):
    slot_generator.generate_slots(resource.resource_id, MONDAY, MONDAY)

    slots = availability.list_business_slots("biz-1", MONDAY)

    assert [s.resource_name for s in slots] == ["Court A", "Court A"]
    assert slots[0].start_time < slots[1].start_time
