from flask import Blueprint, current_app
from sqlalchemy import func

from opshub.api import success_response
from opshub.audit import record_access_event, resolve_client_ip
from opshub.errors import AuthorizationError, NotFoundError
from opshub.models import AccessLog, Customer, Order
from opshub.permissions import current_user_context, require_permissions
from opshub.services.production_progress import summarize_order

bp = Blueprint("portal", __name__, url_prefix="/api/portal")


def _portal_order(order_id: int) -> tuple[Customer, Order]:
    """Return the logged in customer's order or raise."""

    email = (current_user_context().email or "").strip().lower()
    customer = None
    if email:
        customer = Customer.query.filter(func.lower(Customer.email) == email).first()
    if customer is None:
        raise NotFoundError("Customer not found")

    order = Order.query.filter_by(id=order_id, customer_id=customer.id).first()
    if order is None:
        raise NotFoundError("Order not found")
    return customer, order


@bp.get("/orders/<int:order_id>/production")
@require_permissions()
def order_production(order_id: int):
    customer, order = _portal_order(order_id)

    settings = customer.portal_settings
    if settings is not None and not settings.show_production_tracking:
        raise AuthorizationError("Production tracking not enabled for your account")

    return success_response(summarize_order(order))


@bp.post("/orders/<int:order_id>/production/views")
@require_permissions()
def record_production_view(order_id: int):
    customer, order = _portal_order(order_id)
    user = current_user_context()

    record_access_event(
        event_type=AccessLog.EVENT_PORTAL_VIEW,
        user_id=user.id,
        username=user.username,
        ip_address=resolve_client_ip(),
        method="POST",
        path=f"/portal/orders/{order.id}/production",
        endpoint="portal.order_production",
        status_code=200,
        details={
            "event": "production_viewed",
            "customer_id": customer.id,
            "order_id": order.id,
        },
    )
    current_app.logger.info("Customer %s viewed production of order %s", customer.id, order.id)
    return success_response({"orderId": order.id}, status=201)
