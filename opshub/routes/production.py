import calendar
from datetime import datetime, timedelta

from flask import Blueprint

from opshub.api import (
    filter_arg,
    get_json_payload,
    parse_datetime_field,
    parse_int_arg,
    parse_int_field,
    require_fields,
    success_response,
)
from opshub.errors import NotFoundError, ValidationError
from opshub.extensions import db
from opshub.models import Order, OrderItem, ProductionStatus
from opshub.permissions import require_permissions
from opshub.services.production_progress import (
    PRODUCTION_STAGES,
    record_stage_progress,
    summarize_item,
    summarize_order,
)

bp = Blueprint("production", __name__, url_prefix="/api/production")

DEFAULT_LIMIT = 50
DATE_RANGES = ("today", "week", "month")


def _one_month_before(value: datetime) -> datetime:
    year, month = (value.year, value.month - 1) if value.month > 1 else (value.year - 1, 12)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def range_start(date_range: str, now: datetime | None = None) -> datetime | None:
    """Return the earliest ``started_at`` included by a ``dateRange`` filter."""

    now = now or datetime.utcnow()
    if date_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if date_range == "week":
        return now - timedelta(days=7)
    if date_range == "month":
        return _one_month_before(now)
    return None


@bp.get("")
@require_permissions("production.read")
def list_production():
    order_id = filter_arg("orderId")
    if order_id is not None:
        try:
            order_id = int(order_id)
        except ValueError:
            raise ValidationError(errors={"orderId": "Must be an integer"}) from None
        rows = (
            ProductionStatus.query.filter_by(order_id=order_id)
            .order_by(ProductionStatus.id)
            .all()
        )
        return success_response([row.to_dict() for row in rows], total=len(rows))

    limit = parse_int_arg("limit", DEFAULT_LIMIT, minimum=1, maximum=500)
    status = filter_arg("status")
    priority = filter_arg("priority")
    date_range = filter_arg("dateRange")
    if date_range is not None and date_range not in DATE_RANGES:
        raise ValidationError(errors={"dateRange": f"Must be one of all, {', '.join(DATE_RANGES)}"})

    query = ProductionStatus.query
    if status:
        query = query.filter(ProductionStatus.status == status)
    if priority:
        query = query.filter(ProductionStatus.priority == priority)
    if date_range:
        query = query.filter(ProductionStatus.started_at >= range_start(date_range))

    rows = (
        query.order_by(ProductionStatus.started_at.desc(), ProductionStatus.id.desc())
        .limit(limit)
        .all()
    )
    return success_response([row.to_dict() for row in rows], total=len(rows))


@bp.patch("")
@require_permissions("production.write")
def update_production_status():
    data = get_json_payload()
    require_fields(data, "id")

    row = db.session.get(ProductionStatus, parse_int_field(data, "id"))
    if row is None:
        raise NotFoundError("Production status not found")

    if data.get("status") is not None:
        row.status = str(data["status"])
    if data.get("production_status") is not None:
        row.status = str(data["production_status"])
    if data.get("priority") is not None:
        row.priority = str(data["priority"])
    if "completed_quantity" in data:
        row.completed_quantity = parse_int_field(data, "completed_quantity", minimum=0)
    if "notes" in data:
        row.notes = data["notes"]
    if "actual_start_date" in data:
        row.actual_start_date = parse_datetime_field(data, "actual_start_date")
    if "actual_completion_date" in data:
        row.actual_completion_date = parse_datetime_field(data, "actual_completion_date")
    row.updated_at = datetime.utcnow()

    db.session.commit()
    return success_response(row.to_dict())


@bp.post("/stages")
@require_permissions("production.write")
def update_stage_progress():
    data = get_json_payload()
    require_fields(data, "orderItemId", "stage", "progress")

    stage = data["stage"]
    if stage not in PRODUCTION_STAGES:
        raise ValidationError(errors={"stage": f"Must be one of {', '.join(PRODUCTION_STAGES)}"})
    progress = parse_int_field(data, "progress", minimum=0, maximum=100)

    order_item = db.session.get(OrderItem, parse_int_field(data, "orderItemId"))
    if order_item is None:
        raise NotFoundError("Order item not found")

    notes = data.get("notes")
    record = record_stage_progress(
        order_item, stage, progress, notes=str(notes) if notes is not None else None
    )
    db.session.add(record)
    db.session.commit()

    return success_response({"stage": record.to_dict(), "item": summarize_item(order_item)})


@bp.get("/orders/<int:order_id>/progress")
@require_permissions("production.read")
def order_progress(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return success_response(summarize_order(order))
