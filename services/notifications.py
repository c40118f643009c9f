import os
from typing import Any, Dict

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.logging import get_logger
from models.order import Order
from models.payout import Payout
from models.product import Product
from models.return_request import ReturnRequest
from tasks.notification_tasks import send_notification_task

logger = get_logger(__name__)

# Jinja2 environment for notification templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def format_amount(amount: int, currency: str = "XOF") -> str:
    return f"{amount / 100:,.0f} {currency}"


_templates_env.filters["money"] = format_amount


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def dispatch(to_email: str, subject: str, body: str) -> None:
    """Queue a notification on the worker. Returns immediately and never raises."""
    try:
        send_notification_task.delay(to_email, subject, body)
        logger.debug("Notification queued for %s: %s", to_email, subject)
    except Exception:
        logger.exception("Could not queue notification for %s: %s", to_email, subject)


def send_templated(to_email: str | None, subject: str, template_path: str, context: Dict[str, Any]) -> None:
    if not to_email:
        logger.warning("No recipient for notification %r, skipping", subject)
        return
    try:
        body = render_template(template_path, context)
    except Exception:
        logger.exception("Could not render notification template %s", template_path)
        return
    dispatch(to_email, subject, body)


def order_created(order: Order) -> None:
    send_templated(
        order.store.owner.email,
        f"New order {order.order_number}",
        "notifications/order_created.txt",
        {"order": order, "store": order.store},
    )


def order_status_changed(order: Order, reason: str | None = None) -> None:
    send_templated(
        order.customer.email,
        f"Your order {order.order_number} is {order.status.value}",
        "notifications/order_status.txt",
        {"order": order, "reason": reason},
    )


def payment_confirmed(order: Order) -> None:
    context = {"order": order, "store": order.store, "net": order.total_amount - order.commission_amount}
    send_templated(
        order.customer.email,
        f"Payment received for order {order.order_number}",
        "notifications/payment_confirmed_customer.txt",
        context,
    )
    send_templated(
        order.store.owner.email,
        f"Order {order.order_number} has been paid",
        "notifications/payment_confirmed_vendor.txt",
        context,
    )


def payout_updated(payout: Payout) -> None:
    send_templated(
        payout.store.owner.email,
        f"Payout #{payout.id} {payout.status.value}",
        "notifications/payout_update.txt",
        {"payout": payout, "store": payout.store},
    )


def low_stock(product: Product) -> None:
    send_templated(
        product.store.owner.email,
        f"Low stock: {product.title}",
        "notifications/low_stock.txt",
        {"product": product, "store": product.store},
    )


def return_requested(return_request: ReturnRequest) -> None:
    order = return_request.order
    send_templated(
        order.store.owner.email,
        f"Return requested for order {order.order_number}",
        "notifications/return_requested.txt",
        {"return_request": return_request, "order": order},
    )


def return_updated(return_request: ReturnRequest) -> None:
    order = return_request.order
    send_templated(
        order.customer.email,
        f"Your return for order {order.order_number} is {return_request.status.value}",
        "notifications/return_update.txt",
        {"return_request": return_request, "order": order},
    )
