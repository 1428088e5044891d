from __future__ import annotations

from datetime import timedelta
from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext

from slotbook import config, dal, reservations, slot_generator
from slotbook.timeutils import local_date, utcnow

logger = Logger()
tracer = Tracer()


@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    # Scheduled by EventBridge; every step is idempotent so overlapping runs are harmless
    now = utcnow()
    horizon = int(event.get("horizon_days", config.COVERAGE_HORIZON_DAYS))

    reports = slot_generator.ensure_slot_coverage(
        dal.list_active_resources(), today=local_date(now), horizon_days=horizon
    )
    failed = [report.resource_id for report in reports if report.error]
    deleted = slot_generator.cleanup_old_slots(now, config.SLOT_RETENTION_DAYS)

    expired = 0
    if config.PENDING_PAYMENT_TIMEOUT_MINUTES is not None:
        cutoff = now - timedelta(minutes=config.PENDING_PAYMENT_TIMEOUT_MINUTES)
        expired = reservations.expire_pending_bookings(cutoff)

    summary = {
        "resources": len(reports),
        "slots_created": sum(report.slots_created for report in reports),
        "failed_resources": failed,
        "old_slots_deleted": deleted,
        "pending_bookings_expired": expired,
    }
    logger.info("Maintenance run finished", extra=summary)
    return summary
