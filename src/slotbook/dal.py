from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.client import DynamoDBClient
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBClient = Any  # type: ignore[assignment]
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from . import config
from .errors import ConflictError, InvalidStateTransition, NotFoundError
from .models import (
    Booking,
    PaymentMethod,
    PricingRule,
    Resource,
    Slot,
    WeeklyScheduleRule,
)
from .timeutils import format_time_of_day

logger = Logger()

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
# The resource's client accepts plain Python values, including inside transactions
_client: DynamoDBClient = _dynamodb.meta.client

_resources_table: DynamoDBTable = _dynamodb.Table(config.RESOURCES_TABLE)
_schedules_table: DynamoDBTable = _dynamodb.Table(config.SCHEDULES_TABLE)
_pricing_table: DynamoDBTable = _dynamodb.Table(config.PRICING_RULES_TABLE)
_slots_table: DynamoDBTable = _dynamodb.Table(config.SLOTS_TABLE)
_bookings_table: DynamoDBTable = _dynamodb.Table(config.BOOKINGS_TABLE)
_payment_methods_table: DynamoDBTable = _dynamodb.Table(config.PAYMENT_METHODS_TABLE)

RESOURCE_NOT_FOUND = "Resource not found"
SLOT_NOT_FOUND = "Slot not found"
BOOKING_NOT_FOUND = "Booking not found"

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"


class SlotItem(TypedDict, total=False):
    slot_id: str
    resource_id: str
    business_id: str
    slot_date: str
    start_time: str
    end_time: str
    price: Decimal
    is_booked: bool
    booking_id: str
    last_booking_id: str


class BookingItem(TypedDict, total=False):
    booking_id: str
    slot_id: str
    resource_id: str
    business_id: str
    user_id: str
    amount: Decimal
    status: str
    payment_method: str
    receipt_url: str
    created_at: str
    submitted_at: str
    reviewed_at: str
    reviewed_by: str
    cancel_reason: str


def _dt_to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def _iso_to_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _cancellation_codes(exc: ClientError) -> list[str]:
    reasons = cast(list[dict[str, Any]], exc.response.get("CancellationReasons") or [])
    return [str(reason.get("Code", "None")) for reason in reasons]


def _drop_none(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if v is not None}


def _query_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], table.query(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _scan_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], table.scan(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


# Resources


def put_resource(resource: Resource) -> Resource:
    item = _drop_none(
        {
            "resource_id": resource.resource_id,
            "business_id": resource.business_id,
            "name": resource.name,
            "field_type": resource.field_type,
            "base_price": resource.base_price,
            "is_active": resource.is_active,
            "generated_through": (
                resource.generated_through.isoformat() if resource.generated_through else None
            ),
        }
    )
    logger.info("Saving resource", extra={"resource_id": resource.resource_id})
    _resources_table.put_item(Item=item)  # type: ignore
    return resource


def get_resource(resource_id: str) -> Resource:
    resp = cast(dict[str, Any], _resources_table.get_item(Key={"resource_id": resource_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise NotFoundError(RESOURCE_NOT_FOUND, resource_id=resource_id)
    return _resource_from_item(item)


def list_resources_for_business(business_id: str) -> list[Resource]:
    items = _query_all(
        _resources_table,
        IndexName="business_id_index",
        KeyConditionExpression="business_id = :bid",
        ExpressionAttributeValues={":bid": business_id},
    )
    resources = [_resource_from_item(it) for it in items]
    return sorted(resources, key=lambda r: (r.name, r.resource_id))


def list_active_resources() -> list[Resource]:
    items = _scan_all(
        _resources_table,
        FilterExpression="is_active = :true",
        ExpressionAttributeValues={":true": True},
    )
    return [_resource_from_item(it) for it in items]


def set_resource_active(resource_id: str, is_active: bool) -> Resource:
    try:
        resp = cast(
            dict[str, Any],
            _resources_table.update_item(
                Key={"resource_id": resource_id},
                UpdateExpression="SET is_active = :active",
                ConditionExpression="attribute_exists(resource_id)",
                ExpressionAttributeValues={":active": is_active},
                ReturnValues="ALL_NEW",
            ),
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            raise NotFoundError(RESOURCE_NOT_FOUND, resource_id=resource_id) from exc
        raise
    return _resource_from_item(cast(dict[str, Any], resp.get("Attributes") or {}))


def advance_generated_through(resource_id: str, through: date) -> bool:
    """Move the coverage marker forward; never moves it backwards."""
    try:
        _resources_table.update_item(
            Key={"resource_id": resource_id},
            UpdateExpression="SET generated_through = :through",
            ConditionExpression=(
                "attribute_exists(resource_id) AND attribute_not_exists(generated_through)"
                " OR generated_through < :through"
            ),
            ExpressionAttributeValues={":through": through.isoformat()},
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            return False
        raise
    return True


def _resource_from_item(item: dict[str, Any]) -> Resource:
    generated_through = item.get("generated_through")
    return Resource(
        resource_id=item["resource_id"],
        business_id=item["business_id"],
        name=item["name"],
        field_type=item.get("field_type"),
        base_price=item.get("base_price"),
        is_active=bool(item.get("is_active", True)),
        generated_through=date.fromisoformat(generated_through) if generated_through else None,
    )


# Weekly schedules


def put_schedule_rule(rule: WeeklyScheduleRule) -> WeeklyScheduleRule:
    item = _drop_none(
        {
            "resource_id": rule.resource_id,
            "day_of_week": rule.day_of_week,
            "is_open": rule.is_open,
            "open_time": format_time_of_day(rule.open_time) if rule.open_time else None,
            "close_time": format_time_of_day(rule.close_time) if rule.close_time else None,
        }
    )
    _schedules_table.put_item(Item=item)  # type: ignore
    return rule


def list_schedule_rules(resource_id: str) -> list[WeeklyScheduleRule]:
    items = _query_all(
        _schedules_table,
        KeyConditionExpression="resource_id = :rid",
        ExpressionAttributeValues={":rid": resource_id},
        ConsistentRead=True,
    )
    return [
        WeeklyScheduleRule(
            resource_id=it["resource_id"],
            day_of_week=int(it["day_of_week"]),
            is_open=bool(it.get("is_open", False)),
            open_time=it.get("open_time"),
            close_time=it.get("close_time"),
        )
        for it in items
    ]


# Pricing rules


def put_pricing_rule(rule: PricingRule) -> PricingRule:
    item = _drop_none(
        {
            "resource_id": rule.resource_id,
            "rule_id": rule.rule_id,
            "name": rule.name,
            "price_override": rule.price_override,
            "days_of_week": rule.days_of_week,
            "start_time": format_time_of_day(rule.start_time),
            "end_time": format_time_of_day(rule.end_time),
            "priority": rule.priority,
            "created_at": _dt_to_iso(rule.created_at),
        }
    )
    _pricing_table.put_item(Item=item)  # type: ignore
    return rule


def list_pricing_rules(resource_id: str) -> list[PricingRule]:
    items = _query_all(
        _pricing_table,
        KeyConditionExpression="resource_id = :rid",
        ExpressionAttributeValues={":rid": resource_id},
        ConsistentRead=True,
    )
    return [
        PricingRule(
            rule_id=it["rule_id"],
            resource_id=it["resource_id"],
            name=it["name"],
            price_override=it["price_override"],
            days_of_week=[int(d) for d in it.get("days_of_week") or []] or None,
            start_time=it["start_time"],
            end_time=it["end_time"],
            priority=int(it.get("priority", 0)),
            created_at=_iso_to_dt(it["created_at"]),
        )
        for it in items
    ]


def delete_pricing_rule(resource_id: str, rule_id: str) -> None:
    _pricing_table.delete_item(Key={"resource_id": resource_id, "rule_id": rule_id})


# Slots


def insert_slot_if_absent(slot: Slot) -> bool:
    item: SlotItem = {
        "slot_id": slot.slot_id,
        "resource_id": slot.resource_id,
        "business_id": slot.business_id,
        "slot_date": slot.slot_date.isoformat(),
        "start_time": _dt_to_iso(slot.start_time),
        "end_time": _dt_to_iso(slot.end_time),
        "price": slot.price,
        "is_booked": False,
    }
    try:
        _slots_table.put_item(  # type: ignore
            Item=item,
            ConditionExpression="attribute_not_exists(slot_id)",
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            return False
        raise
    return True


def get_slot(slot_id: str) -> Slot:
    resp = cast(
        dict[str, Any], _slots_table.get_item(Key={"slot_id": slot_id}, ConsistentRead=True)
    )
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise NotFoundError(SLOT_NOT_FOUND, slot_id=slot_id)
    return _slot_from_item(cast(SlotItem, item))


def list_slots_for_business_date(business_id: str, slot_date: date) -> list[Slot]:
    items = _query_all(
        _slots_table,
        IndexName="business_date_index",
        KeyConditionExpression="business_id = :bid AND slot_date = :d",
        ExpressionAttributeValues={":bid": business_id, ":d": slot_date.isoformat()},
    )
    return [_slot_from_item(cast(SlotItem, it)) for it in items]


def list_slots_for_resource(resource_id: str, start_date: date, end_date: date) -> list[Slot]:
    items = _query_all(
        _slots_table,
        IndexName="resource_date_index",
        KeyConditionExpression="resource_id = :rid AND slot_date BETWEEN :start AND :end",
        ExpressionAttributeValues={
            ":rid": resource_id,
            ":start": start_date.isoformat(),
            ":end": end_date.isoformat(),
        },
    )
    return [_slot_from_item(cast(SlotItem, it)) for it in items]


def list_unbooked_slots_ending_before(cutoff: datetime) -> list[Slot]:
    items = _scan_all(
        _slots_table,
        FilterExpression="end_time < :cutoff AND is_booked = :false AND attribute_not_exists(last_booking_id)",
        ExpressionAttributeValues={":cutoff": _dt_to_iso(cutoff), ":false": False},
    )
    return [_slot_from_item(cast(SlotItem, it)) for it in items]


def delete_unbooked_slot(slot_id: str) -> bool:
    try:
        _slots_table.delete_item(
            Key={"slot_id": slot_id},
            ConditionExpression="is_booked = :false AND attribute_not_exists(last_booking_id)",
            ExpressionAttributeValues={":false": False},
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            return False
        raise
    return True


def _slot_from_item(item: SlotItem) -> Slot:
    return Slot(
        slot_id=item["slot_id"],
        resource_id=item["resource_id"],
        business_id=item["business_id"],
        slot_date=date.fromisoformat(item["slot_date"]),
        start_time=_iso_to_dt(item["start_time"]),
        end_time=_iso_to_dt(item["end_time"]),
        price=item["price"],
        is_booked=bool(item.get("is_booked", False)),
        booking_id=item.get("booking_id"),
        last_booking_id=item.get("last_booking_id"),
    )


# Bookings


def reserve_slot(booking: Booking) -> Booking:
    """Bind the slot to a new booking in one transaction.

    The slot update only succeeds while ``is_booked`` is still false, so of
    any number of concurrent callers exactly one transaction commits.
    """
    try:
        _client.transact_write_items(
            TransactItems=[
                {
                    "Update": {
                        "TableName": _slots_table.name,
                        "Key": {"slot_id": booking.slot_id},
                        "UpdateExpression": "SET is_booked = :true, booking_id = :bid",
                        "ConditionExpression": "attribute_exists(slot_id) AND is_booked = :false",
                        "ExpressionAttributeValues": {
                            ":true": True,
                            ":false": False,
                            ":bid": booking.booking_id,
                        },
                    }
                },
                {
                    "Put": {
                        "TableName": _bookings_table.name,
                        "Item": dict(_booking_to_item(booking)),
                        "ConditionExpression": "attribute_not_exists(booking_id)",
                    }
                },
            ]
        )
    except ClientError as exc:
        if _error_code(exc) == TRANSACTION_CANCELED:
            logger.info(
                "Reservation lost the race for slot",
                extra={"slot_id": booking.slot_id, "reasons": _cancellation_codes(exc)},
            )
            raise ConflictError(slot_id=booking.slot_id) from exc
        raise

    logger.info(
        "Reserved slot",
        extra={"slot_id": booking.slot_id, "booking_id": booking.booking_id},
    )
    return booking


def get_booking(booking_id: str) -> Booking:
    resp = cast(
        dict[str, Any],
        _bookings_table.get_item(Key={"booking_id": booking_id}, ConsistentRead=True),
    )
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise NotFoundError(BOOKING_NOT_FOUND, booking_id=booking_id)
    return _to_model(cast(BookingItem, item))


def list_bookings_for_user(user_id: str) -> list[Booking]:
    items = _query_all(
        _bookings_table,
        IndexName="user_id_index",
        KeyConditionExpression="user_id = :uid",
        ExpressionAttributeValues={":uid": user_id},
    )
    bookings = [_to_model(cast(BookingItem, it)) for it in items]
    return sorted(bookings, key=lambda b: b.created_at, reverse=True)


def list_bookings_by_status(status: str, created_before: datetime | None = None) -> list[Booking]:
    key_condition = "#s = :s"
    values: dict[str, Any] = {":s": status}
    if created_before is not None:
        key_condition += " AND created_at < :before"
        values[":before"] = _dt_to_iso(created_before)

    items = _query_all(
        _bookings_table,
        IndexName="status_index",
        KeyConditionExpression=key_condition,
        ExpressionAttributeNames={"#s": "status"},
        ExpressionAttributeValues=values,
    )
    bookings = [_to_model(cast(BookingItem, it)) for it in items]
    return sorted(bookings, key=lambda b: b.created_at)


def transition_booking(
    booking_id: str,
    from_status: str,
    to_status: str,
    fields: dict[str, Any] | None = None,
) -> Booking:
    names, values, set_parts = _transition_expression(from_status, to_status, fields)
    try:
        resp = cast(
            dict[str, Any],
            _bookings_table.update_item(
                Key={"booking_id": booking_id},
                UpdateExpression="SET " + ", ".join(set_parts),
                ConditionExpression="attribute_exists(booking_id) AND #s = :from",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            ),
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            raise InvalidStateTransition(
                booking_id=booking_id, from_status=from_status, to_status=to_status
            ) from exc
        raise

    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    return _to_model(cast(BookingItem, attrs))


def release_slot(
    booking: Booking,
    from_status: str,
    to_status: str,
    fields: dict[str, Any] | None = None,
) -> Booking:
    """Move the booking out of an active state and free its slot atomically."""
    names, values, set_parts = _transition_expression(from_status, to_status, fields)
    try:
        _client.transact_write_items(
            TransactItems=[
                {
                    "Update": {
                        "TableName": _bookings_table.name,
                        "Key": {"booking_id": booking.booking_id},
                        "UpdateExpression": "SET " + ", ".join(set_parts),
                        "ConditionExpression": "attribute_exists(booking_id) AND #s = :from",
                        "ExpressionAttributeNames": names,
                        "ExpressionAttributeValues": values,
                    }
                },
                {
                    "Update": {
                        "TableName": _slots_table.name,
                        "Key": {"slot_id": booking.slot_id},
                        "UpdateExpression": "SET is_booked = :false, last_booking_id = :bid REMOVE booking_id",
                        "ConditionExpression": "booking_id = :bid",
                        "ExpressionAttributeValues": {
                            ":false": False,
                            ":bid": booking.booking_id,
                        },
                    }
                },
            ]
        )
    except ClientError as exc:
        if _error_code(exc) != TRANSACTION_CANCELED:
            raise
        codes = _cancellation_codes(exc)
        logger.warning(
            "Slot release transaction cancelled",
            extra={"booking_id": booking.booking_id, "slot_id": booking.slot_id, "reasons": codes},
        )
        raise InvalidStateTransition(
            booking_id=booking.booking_id, from_status=from_status, to_status=to_status
        ) from exc

    return get_booking(booking.booking_id)


def _transition_expression(
    from_status: str, to_status: str, fields: dict[str, Any] | None
) -> tuple[dict[str, str], dict[str, Any], list[str]]:
    names: dict[str, str] = {"#s": "status"}
    values: dict[str, Any] = {":from": from_status, ":to": to_status}
    set_parts = ["#s = :to"]
    for name, value in (fields or {}).items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = _dt_to_iso(value)
        names[f"#_{name}"] = name
        values[f":{name}"] = value
        set_parts.append(f"#_{name} = :{name}")
    return names, values, set_parts


def _booking_to_item(booking: Booking) -> BookingItem:
    item = _drop_none(
        {
            "booking_id": booking.booking_id,
            "slot_id": booking.slot_id,
            "resource_id": booking.resource_id,
            "business_id": booking.business_id,
            "user_id": booking.user_id,
            "amount": booking.amount,
            "status": booking.status,
            "payment_method": booking.payment_method,
            "receipt_url": booking.receipt_url,
            "created_at": _dt_to_iso(booking.created_at),
            "submitted_at": _dt_to_iso(booking.submitted_at) if booking.submitted_at else None,
            "reviewed_at": _dt_to_iso(booking.reviewed_at) if booking.reviewed_at else None,
            "reviewed_by": booking.reviewed_by,
            "cancel_reason": booking.cancel_reason,
        }
    )
    return cast(BookingItem, item)


def _to_model(item: BookingItem) -> Booking:
    submitted_at = item.get("submitted_at")
    reviewed_at = item.get("reviewed_at")
    return Booking(
        booking_id=item["booking_id"],
        slot_id=item["slot_id"],
        resource_id=item["resource_id"],
        business_id=item["business_id"],
        user_id=item["user_id"],
        amount=item["amount"],
        status=item.get("status", "PENDING_PAYMENT"),  # type: ignore[arg-type]
        payment_method=item.get("payment_method"),  # type: ignore[arg-type]
        receipt_url=item.get("receipt_url"),
        created_at=_iso_to_dt(item["created_at"]),
        submitted_at=_iso_to_dt(submitted_at) if submitted_at else None,
        reviewed_at=_iso_to_dt(reviewed_at) if reviewed_at else None,
        reviewed_by=item.get("reviewed_by"),
        cancel_reason=item.get("cancel_reason"),
    )


# Payment methods


def put_payment_method(method: PaymentMethod) -> PaymentMethod:
    item = _drop_none(
        {
            "business_id": method.business_id,
            "method_id": method.method_id,
            "method_type": method.method_type,
            "account_name": method.account_name,
            "account_number": method.account_number,
        }
    )
    _payment_methods_table.put_item(Item=item)  # type: ignore
    return method


def list_payment_methods(business_id: str) -> list[PaymentMethod]:
    items = _query_all(
        _payment_methods_table,
        KeyConditionExpression="business_id = :bid",
        ExpressionAttributeValues={":bid": business_id},
    )
    return [
        PaymentMethod(
            business_id=it["business_id"],
            method_id=it["method_id"],
            method_type=it["method_type"],
            account_name=it.get("account_name"),
            account_number=it.get("account_number"),
        )
        for it in items
    ]
