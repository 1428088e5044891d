from __future__ import annotations

import uuid
from collections.abc import Iterable

from aws_lambda_powertools import Logger

from . import dal
from .errors import ValidationFailure
from .models import (
    PaymentMethod,
    PaymentMethodCreate,
    PricingRule,
    PricingRuleCreate,
    Resource,
    ResourceCreate,
    ScheduleDay,
    WeeklyScheduleRule,
)
from .timeutils import utcnow

logger = Logger()

WEEKDAYS = range(1, 8)


def create_resource(payload: ResourceCreate) -> Resource:
    resource = Resource(
        resource_id=str(uuid.uuid4()),
        business_id=payload.business_id,
        name=payload.name,
        field_type=payload.field_type,
        base_price=payload.base_price,
    )
    logger.info(
        "Creating resource",
        extra={"resource_id": resource.resource_id, "business_id": resource.business_id},
    )
    return dal.put_resource(resource)


def get_resource(resource_id: str) -> Resource:
    return dal.get_resource(resource_id)


def list_resources(business_id: str) -> list[Resource]:
    return dal.list_resources_for_business(business_id)


def deactivate_resource(resource_id: str) -> Resource:
    logger.info("Deactivating resource", extra={"resource_id": resource_id})
    return dal.set_resource_active(resource_id, False)


def get_weekly_schedule(resource_id: str) -> list[WeeklyScheduleRule]:
    stored = {rule.day_of_week: rule for rule in dal.list_schedule_rules(resource_id)}
    return [
        stored.get(day) or WeeklyScheduleRule(resource_id=resource_id, day_of_week=day, is_open=False)
        for day in WEEKDAYS
    ]


def closed_weekdays(resource_id: str) -> list[int]:
    return [rule.day_of_week for rule in get_weekly_schedule(resource_id) if not rule.is_open]


def set_weekly_schedule(resource_id: str, days: Iterable[ScheduleDay]) -> list[WeeklyScheduleRule]:
    days = list(days)
    seen = [day.day_of_week for day in days]
    if len(seen) != len(set(seen)):
        raise ValidationFailure("Each weekday may appear only once in a schedule.")

    dal.get_resource(resource_id)
    for day in days:
        dal.put_schedule_rule(WeeklyScheduleRule(resource_id=resource_id, **day.model_dump()))

    logger.info("Updated weekly schedule", extra={"resource_id": resource_id, "days": seen})
    return get_weekly_schedule(resource_id)


def add_pricing_rule(resource_id: str, payload: PricingRuleCreate) -> PricingRule:
    dal.get_resource(resource_id)
    rule = PricingRule(
        rule_id=str(uuid.uuid4()),
        resource_id=resource_id,
        created_at=utcnow(),
        **payload.model_dump(),
    )
    logger.info(
        "Adding pricing rule",
        extra={"resource_id": resource_id, "rule_id": rule.rule_id, "priority": rule.priority},
    )
    return dal.put_pricing_rule(rule)


def list_pricing_rules(resource_id: str) -> list[PricingRule]:
    return dal.list_pricing_rules(resource_id)


def delete_pricing_rule(resource_id: str, rule_id: str) -> None:
    logger.info("Deleting pricing rule", extra={"resource_id": resource_id, "rule_id": rule_id})
    dal.delete_pricing_rule(resource_id, rule_id)


def add_payment_method(business_id: str, payload: PaymentMethodCreate) -> PaymentMethod:
    method = PaymentMethod(
        business_id=business_id, method_id=str(uuid.uuid4()), **payload.model_dump()
    )
    return dal.put_payment_method(method)


def get_payment_methods(business_id: str) -> list[PaymentMethod]:
    # display-only; duplicates by (method_type, account_number) collapse to the first
    unique: dict[tuple[str, str | None], PaymentMethod] = {}
    for method in dal.list_payment_methods(business_id):
        unique.setdefault((method.method_type, method.account_number), method)
    return list(unique.values())
