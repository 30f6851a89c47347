import time

from flask import Blueprint, current_app

from opshub.api import (
    filter_arg,
    get_json_payload,
    parse_decimal_field,
    parse_int_arg,
    parse_int_field,
    require_fields,
    success_response,
)
from opshub.errors import NotFoundError, ValidationError
from opshub.extensions import db
from opshub.models import Customer, Order, OrderItem, OrderStatus
from opshub.permissions import require_permissions

bp = Blueprint("orders", __name__, url_prefix="/api/orders")

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def _validated_status(value) -> str:
    if value not in OrderStatus.ALL:
        raise ValidationError(
            errors={"status": f"Must be one of {', '.join(OrderStatus.ALL)}"}
        )
    return value


def _next_order_number() -> str:
    base = f"ORD-{int(time.time() * 1000)}"
    candidate = base
    suffix = 1
    while Order.query.filter_by(order_number=candidate).first() is not None:
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate


def _build_items(raw_items) -> list[OrderItem]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError(errors={"items": "Expected a list of items"})

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict) or not str(raw.get("item_name") or "").strip():
            raise ValidationError(errors={f"items.{index}.item_name": "This field is required"})
        quantity = 1
        if raw.get("quantity") is not None:
            quantity = parse_int_field(raw, "quantity", minimum=1)
        items.append(OrderItem(item_name=str(raw["item_name"]).strip(), quantity=quantity))
    return items


def _get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


@bp.get("")
@require_permissions("orders.read")
def list_orders():
    limit = parse_int_arg("limit", DEFAULT_LIMIT, minimum=1, maximum=MAX_LIMIT)
    status = filter_arg("status")

    query = Order.query
    if status:
        query = query.filter(Order.status == status)
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()

    return success_response([order.to_dict() for order in orders], total=len(orders))


@bp.post("")
@require_permissions("orders.write")
def create_order():
    data = get_json_payload()
    require_fields(data, "customer_id", "total_amount")

    customer_id = parse_int_field(data, "customer_id", minimum=1)
    total_amount = parse_decimal_field(data, "total_amount", positive=True)
    status = _validated_status(data.get("status") or OrderStatus.DRAFT)

    if db.session.get(Customer, customer_id) is None:
        raise ValidationError(errors={"customer_id": "Customer does not exist"})

    order = Order(
        order_number=_next_order_number(),
        customer_id=customer_id,
        total_amount=total_amount,
        status=status,
        items=_build_items(data.get("items")),
    )
    db.session.add(order)
    db.session.commit()
    current_app.logger.info("Order %s created", order.order_number)

    return success_response(order.to_dict(include_items=True), status=201)


@bp.get("/<int:order_id>")
@require_permissions("orders.read")
def get_order(order_id: int):
    return success_response(_get_order(order_id).to_dict(include_items=True))


@bp.patch("/<int:order_id>")
@require_permissions("orders.update")
def update_order(order_id: int):
    order = _get_order(order_id)
    data = get_json_payload()

    if "status" in data:
        order.status = _validated_status(data["status"])
    if "total_amount" in data:
        order.total_amount = parse_decimal_field(data, "total_amount", positive=True)

    db.session.commit()
    return success_response(order.to_dict(include_items=True))
