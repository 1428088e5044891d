from __future__ import annotations

import os

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Yangon")

import copy  # noqa: E402
import operator  # noqa: E402
import re  # noqa: E402
import threading  # noqa: E402
from collections.abc import Callable  # noqa: E402
from datetime import UTC, date, datetime, time  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402

from slotbook import catalog, dal, storage  # noqa: E402
from slotbook.models import Resource, ResourceCreate, ScheduleDay  # noqa: E402

# 2030-01-07 is a Monday; Asia/Yangon is UTC+06:30
MONDAY = date(2030, 1, 7)
BEFORE_MONDAY = datetime(2030, 1, 1, 0, 0, tzinfo=UTC)

_BETWEEN = re.compile(r"(\S+) BETWEEN (:\w+) AND (:\w+)")
_FUNCTION = re.compile(r"^(attribute_exists|attribute_not_exists)\((\S+)\)$")
_COMPARISON = re.compile(r"^(\S+)\s*(<>|<=|>=|=|<|>)\s*(:\w+)$")
_CLAUSE = re.compile(r"\b(SET|REMOVE)\b")
_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def client_error(code: str, operation: str, **extra: Any) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, **extra}, operation)  # type: ignore[arg-type]


def _attr(token: str, names: dict[str, str] | None) -> str:
    return (names or {}).get(token, token)


def evaluate(
    expression: str | None,
    item: dict[str, Any],
    names: dict[str, str] | None = None,
    values: dict[str, Any] | None = None,
) -> bool:
    # AND binds tighter than OR, as in DynamoDB; parentheses are not supported
    if not expression:
        return True
    expression = _BETWEEN.sub(r"\1 >= \2 AND \1 <= \3", expression)
    return any(
        all(_atom(atom.strip(), item, names, values or {}) for atom in clause.split(" AND "))
        for clause in expression.split(" OR ")
    )


def _atom(atom: str, item: dict[str, Any], names: dict[str, str] | None, values: dict[str, Any]) -> bool:
    match = _FUNCTION.match(atom)
    if match:
        present = _attr(match.group(2), names) in item
        return present if match.group(1) == "attribute_exists" else not present
    match = _COMPARISON.match(atom)
    if not match:
        raise AssertionError(f"Unsupported expression: {atom!r}")
    name = _attr(match.group(1), names)
    if name not in item:
        return match.group(2) == "<>"
    return _OPERATORS[match.group(2)](item[name], values[match.group(3)])


def apply_update(
    item: dict[str, Any],
    expression: str,
    names: dict[str, str] | None,
    values: dict[str, Any] | None,
) -> None:
    parts = _CLAUSE.split(expression)
    for keyword, body in zip(parts[1::2], parts[2::2]):
        for assignment in (p.strip() for p in body.split(",") if p.strip()):
            if keyword == "SET":
                name, value = (s.strip() for s in assignment.split("=", 1))
                item[_attr(name, names)] = copy.deepcopy((values or {})[value])
            else:
                item.pop(_attr(assignment, names), None)


class FakeTable:
    def __init__(self, name: str, key_names: tuple[str, ...], lock: threading.RLock) -> None:
        self.name = name
        self.key_names = key_names
        self.items: dict[tuple[Any, ...], dict[str, Any]] = {}
        self.fail_on: set[str] = set()
        self._lock = lock

    def key_of(self, item: dict[str, Any]) -> tuple[Any, ...]:
        return tuple(item[k] for k in self.key_names)

    def current(self, key: dict[str, Any]) -> dict[str, Any]:
        return self.items.get(self.key_of(key), {})

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise client_error("ProvisionedThroughputExceededException", operation)

    def put_item(self, Item, ConditionExpression=None, ExpressionAttributeNames=None, ExpressionAttributeValues=None):  # noqa: N803
        self._maybe_fail("PutItem")
        with self._lock:
            if not evaluate(ConditionExpression, self.current(Item), ExpressionAttributeNames, ExpressionAttributeValues):
                raise client_error(dal.CONDITIONAL_CHECK_FAILED, "PutItem")
            self.items[self.key_of(Item)] = copy.deepcopy(Item)
        return {}

    def get_item(self, Key, ConsistentRead=False):  # noqa: N803
        self._maybe_fail("GetItem")
        item = self.items.get(self.key_of(Key))
        return {"Item": copy.deepcopy(item)} if item else {}

    def update_item(self, Key, UpdateExpression, ConditionExpression=None, ExpressionAttributeNames=None,  # noqa: N803
                    ExpressionAttributeValues=None, ReturnValues=None):  # noqa: N803
        self._maybe_fail("UpdateItem")
        with self._lock:
            current = self.current(Key)
            if not evaluate(ConditionExpression, current, ExpressionAttributeNames, ExpressionAttributeValues):
                raise client_error(dal.CONDITIONAL_CHECK_FAILED, "UpdateItem")
            updated = copy.deepcopy(current) if current else dict(Key)
            apply_update(updated, UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues)
            self.items[self.key_of(Key)] = updated
        return {"Attributes": copy.deepcopy(updated)} if ReturnValues == "ALL_NEW" else {}

    def delete_item(self, Key, ConditionExpression=None, ExpressionAttributeNames=None, ExpressionAttributeValues=None):  # noqa: N803
        self._maybe_fail("DeleteItem")
        with self._lock:
            if ConditionExpression and not evaluate(
                ConditionExpression, self.current(Key), ExpressionAttributeNames, ExpressionAttributeValues
            ):
                raise client_error(dal.CONDITIONAL_CHECK_FAILED, "DeleteItem")
            self.items.pop(self.key_of(Key), None)
        return {}

    def query(self, KeyConditionExpression, ExpressionAttributeValues=None, ExpressionAttributeNames=None,  # noqa: N803
              IndexName=None, FilterExpression=None, Limit=None, ConsistentRead=False,  # noqa: N803
              ExclusiveStartKey=None):  # noqa: N803
        self._maybe_fail("Query")
        matches = [
            copy.deepcopy(it)
            for it in list(self.items.values())
            if evaluate(KeyConditionExpression, it, ExpressionAttributeNames, ExpressionAttributeValues)
            and evaluate(FilterExpression, it, ExpressionAttributeNames, ExpressionAttributeValues)
        ]
        return {"Items": matches[:Limit] if Limit else matches}

    def scan(self, FilterExpression=None, ExpressionAttributeValues=None, ExpressionAttributeNames=None,  # noqa: N803
             ExclusiveStartKey=None):  # noqa: N803
        self._maybe_fail("Scan")
        matches = [
            copy.deepcopy(it)
            for it in list(self.items.values())
            if evaluate(FilterExpression, it, ExpressionAttributeNames, ExpressionAttributeValues)
        ]
        return {"Items": matches}


class FakeClient:
    def __init__(self, tables: list[FakeTable], lock: threading.RLock) -> None:
        self.tables = {table.name: table for table in tables}
        self._lock = lock
        self.transactions = 0

    def transact_write_items(self, TransactItems):  # noqa: N803
        with self._lock:
            reasons = []
            for entry in TransactItems:
                ((action, params),) = entry.items()
                table = self.tables[params["TableName"]]
                current = table.current(params["Item"] if action == "Put" else params["Key"])
                ok = evaluate(
                    params.get("ConditionExpression"),
                    current,
                    params.get("ExpressionAttributeNames"),
                    params.get("ExpressionAttributeValues"),
                )
                reasons.append({"Code": "None" if ok else "ConditionalCheckFailed"})

            if any(reason["Code"] != "None" for reason in reasons):
                raise client_error(
                    dal.TRANSACTION_CANCELED, "TransactWriteItems", CancellationReasons=reasons
                )

            for entry in TransactItems:
                ((action, params),) = entry.items()
                table = self.tables[params["TableName"]]
                if action == "Put":
                    table.items[table.key_of(params["Item"])] = copy.deepcopy(params["Item"])
                elif action == "Update":
                    current = table.current(params["Key"])
                    updated = copy.deepcopy(current) if current else dict(params["Key"])
                    apply_update(
                        updated,
                        params["UpdateExpression"],
                        params.get("ExpressionAttributeNames"),
                        params.get("ExpressionAttributeValues"),
                    )
                    table.items[table.key_of(params["Key"])] = updated
            self.transactions += 1
        return {}


class FakeDynamoDB:
    def __init__(self) -> None:
        lock = threading.RLock()
        self.resources = FakeTable("resources", ("resource_id",), lock)
        self.schedules = FakeTable("weekly_schedules", ("resource_id", "day_of_week"), lock)
        self.pricing = FakeTable("pricing_rules", ("resource_id", "rule_id"), lock)
        self.slots = FakeTable("slots", ("slot_id",), lock)
        self.bookings = FakeTable("bookings", ("booking_id",), lock)
        self.payment_methods = FakeTable("payment_methods", ("business_id", "method_id"), lock)
        self.client = FakeClient(
            [self.resources, self.schedules, self.pricing, self.slots, self.bookings, self.payment_methods],
            lock,
        )


@pytest.fixture(autouse=True)
def db(monkeypatch: pytest.MonkeyPatch) -> FakeDynamoDB:
    fake = FakeDynamoDB()
    monkeypatch.setattr(dal, "_resources_table", fake.resources)
    monkeypatch.setattr(dal, "_schedules_table", fake.schedules)
    monkeypatch.setattr(dal, "_pricing_table", fake.pricing)
    monkeypatch.setattr(dal, "_slots_table", fake.slots)
    monkeypatch.setattr(dal, "_bookings_table", fake.bookings)
    monkeypatch.setattr(dal, "_payment_methods_table", fake.payment_methods)
    monkeypatch.setattr(dal, "_client", fake.client)
    return fake


@pytest.fixture(autouse=True)
def s3(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    fake = MagicMock()
    monkeypatch.setattr(storage, "_s3", fake)
    return fake


def weekday_hours(open_at: time, close_at: time, days: range = range(1, 6)) -> list[ScheduleDay]:
    return [
        ScheduleDay(day_of_week=day, is_open=day in days, open_time=open_at, close_time=close_at)
        for day in range(1, 8)
    ]


@pytest.fixture()
def make_resource(db: FakeDynamoDB) -> Callable[..., Resource]:
    def factory(
        name: str = "Court A",
        business_id: str = "biz-1",
        base_price: Decimal = Decimal("100"),
        schedule: list[ScheduleDay] | None = None,
    ) -> Resource:
        resource = catalog.create_resource(
            ResourceCreate(business_id=business_id, name=name, base_price=base_price)
        )
        catalog.set_weekly_schedule(
            resource.resource_id, schedule or weekday_hours(time(9, 0), time(11, 0))
        )
        return resource

    return factory


@pytest.fixture()
def resource(make_resource: Callable[..., Resource]) -> Resource:
    # Open Monday to Friday 09:00-11:00
    return make_resource()
