"""
Outgoing email. Messages are written to the "emailoutbox" collection and a
separate delivery worker picks them up.
"""

import logging
from typing import Any, Dict, Optional

import settings
from database import create_document
from schemas import EmailMessage

logger = logging.getLogger(__name__)


def queue_email(to: str, subject: str, template: str, context: Optional[Dict[str, Any]] = None) -> str:
    message_id = create_document("emailoutbox", EmailMessage(
        to=to,
        sender=settings.EMAIL_FROM,
        subject=subject,
        template=template,
        context=context or {},
    ))
    logger.info("Queued %s email to %s (%s)", template, to, message_id)
    return message_id


def send_order_confirmation(order: dict, email: str) -> str:
    return queue_email(
        email,
        f"Order confirmation {order['order_number']}",
        "order-confirmation",
        {
            "order_number": order["order_number"],
            "total": order["total"],
            "items": [{"name": i["name"], "quantity": i["quantity"], "price": i["price"]} for i in order["items"]],
        },
    )


def send_newsletter_verification(email: str, name: str, token: str, language: str) -> str:
    return queue_email(
        email,
        f"Confirm your subscription to {settings.SITE_NAME}",
        "newsletter-verification",
        {
            "name": name,
            "language": language,
            "verify_url": f"{settings.APP_URL}/api/newsletters/verify?token={token}",
        },
    )


def send_newsletter_welcome(email: str, name: str, unsubscribe_token: str, language: str) -> str:
    return queue_email(
        email,
        f"Welcome to the {settings.SITE_NAME} newsletter",
        "newsletter-welcome",
        {
            "name": name,
            "language": language,
            "unsubscribe_url": f"{settings.APP_URL}/api/newsletters/unsubscribe?token={unsubscribe_token}",
        },
    )


def send_unsubscribe_confirmation(email: str, name: str, language: str) -> str:
    return queue_email(
        email,
        "You have been unsubscribed",
        "newsletter-unsubscribed",
        {"name": name, "language": language},
    )


def send_order_cancellation(email: str, name: str, order_number: str, reason: str) -> str:
    return queue_email(
        email,
        f"Order {order_number} cancelled",
        "order-cancelled",
        {"name": name or "Valued Customer", "order_number": order_number, "reason": reason},
    )
