"""
Optional email notifications. Uses SMTP when configured; every send returns True/False and never raises.
"""
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional

from printlink.config import settings

logger = logging.getLogger(__name__)


def _send(to_email: str, subject: str, body: str) -> bool:
    if not (getattr(settings, "SMTP_HOST", None) or "").strip():
        logger.debug("SMTP not configured; skipping email '%s' to %s", subject, to_email)
        return False
    if not to_email:
        return False
    host = settings.SMTP_HOST.strip()
    port = settings.SMTP_PORT or 587
    user = (settings.SMTP_USER or "").strip()
    password = (settings.SMTP_PASSWORD or "").strip()
    from_addr = (settings.EMAIL_FROM or "noreply@printlink.app").strip()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(host, port) as server:
            if settings.SMTP_USE_TLS:
                server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(from_addr, [to_email], msg.as_string())
        logger.info("Email '%s' sent to %s", subject, to_email)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Failed to send email '%s' to %s: %s", subject, to_email, e)
        return False


def send_fulfillment_email(
    to_email: str,
    order_name: str,
    tracking_company: Optional[str],
    tracking_number: Optional[str],
    tracking_url: Optional[str],
) -> bool:
    """Shipment notification for an order."""
    lines = [f"Good news: items from order {order_name} are on their way.", ""]
    if tracking_company:
        lines.append(f"Carrier: {tracking_company}")
    if tracking_number:
        lines.append(f"Tracking number: {tracking_number}")
    if tracking_url:
        lines.append(f"Track your parcel: {tracking_url}")
    lines += ["", "PrintLink"]
    return _send(to_email, f"Order {order_name} has shipped", "\n".join(lines))


def send_order_imported_email(to_email: str, order_name: str, order_url: str) -> bool:
    body = f"""Hi,

Order {order_name} was imported as a draft and is waiting for you to review and send it to production:

{order_url}

PrintLink
"""
    return _send(to_email, f"New draft order {order_name}", body)


def send_reauthentication_email(to_email: str, store_name: str, reconnect_url: str) -> bool:
    body = f"""Hi,

We could not reach your store {store_name} because its access was revoked or has expired.
New orders will not be imported until you reconnect it:

{reconnect_url}

PrintLink
"""
    return _send(to_email, f"Reconnect {store_name}", body)


def send_gdpr_request_email(topic: str, shop_domain: str, summary: str) -> bool:
    """Admin notice for customers/data_request, customers/redact and shop/redact."""
    admin = (settings.ADMIN_EMAIL or "").strip()
    if not admin:
        logger.info("ADMIN_EMAIL not set; GDPR request %s for %s only logged", topic, shop_domain)
        return False
    body = f"GDPR webhook received.\n\nTopic: {topic}\nShop: {shop_domain}\n\n{summary}\n"
    return _send(admin, f"GDPR request: {topic} ({shop_domain})", body)
