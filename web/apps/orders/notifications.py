"""Best-effort side channels fired after an order operation has succeeded.

``order_event`` is the real-time hook: websocket bridges, analytics or
cache invalidators connect receivers to it. ``Notifier`` sends the order
confirmation email through Django's mail framework and dispatches events
with ``send_robust`` so a broken receiver cannot break the sender.
"""

import logging

from django.conf import settings
from django.core.mail import send_mail
from django.dispatch import Signal
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)

# Sent with keyword arguments ``event`` (str) and ``payload`` (dict).
order_event = Signal()


def format_cents(amount_cents: int, currency: str = "KES") -> str:
    return f"{currency} {amount_cents / 100:,.2f}"


class Notifier:
    """Default ``NotifierPort`` implementation."""

    def order_confirmation(self, user, order) -> None:
        if not user.email:
            logger.info("no email on file, confirmation skipped", extra={"order_number": order.order_number})
            return

        context = {
            "user": user,
            "order": order,
            "items": list(order.items.all()),
            "subtotal": format_cents(order.subtotal_cents, order.currency),
            "shipping": format_cents(order.shipping_cents, order.currency),
            "total": format_cents(order.total_cents, order.currency),
        }
        send_mail(
            subject=f"Order Confirmation - {order.order_number}",
            message=render_to_string("orders/email/order_confirmation.txt", context),
            from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
            recipient_list=[user.email],
            html_message=render_to_string("orders/email/order_confirmation.html", context),
        )
        logger.info("order confirmation sent", extra={"order_number": order.order_number})

    def emit(self, event: str, payload: dict) -> None:
        for receiver, result in order_event.send_robust(sender=self.__class__, event=event, payload=payload):
            if isinstance(result, Exception):
                logger.error(
                    "order event receiver failed",
                    extra={"event": event, "receiver": getattr(receiver, "__qualname__", repr(receiver))},
                    exc_info=result,
                )
