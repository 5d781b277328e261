"""
Outbound email over SMTP.
"""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional

from services.config import config

log = logging.getLogger(__name__)

SIGNATURE = """
---
MobiTickets
{base_url}
""".strip()

# Templates are keyed by send-queue scope
EMAIL_TEMPLATES = {
    "purchase_confirmation": {
        "subject": "Your tickets for {event_title}",
        "body": """
Hi {name},

Thanks for your order! You bought {quantity} x {category_name} for {event_title}.

Order: {order_id}
Total: KES {total_amount:,.2f}
When: {event_time}
Where: {location}

Each ticket has its own QR code, available under "My Tickets". Every code
admits one person once.
""".strip()
    },
    "ticket_transfer": {
        "subject": "{sender_name} sent you a ticket for {event_title}",
        "body": """
Hi {name},

{sender_name} transferred a {category_name} ticket for {event_title} to you.

When: {event_time}

You will find it under "My Tickets" together with its QR code.
""".strip()
    },
    "refund_processed": {
        "subject": "Refund {status} for order {order_id}",
        "body": """
Hi {name},

Your refund request for order {order_id} ({event_title}) was {status}.
Amount: KES {amount:,.2f}
{notes}
""".strip()
    },
    "flash_sale": {
        "subject": "Flash sale: {sale_name}",
        "body": """
Hi {name},

Save {discount_percent:g}% on tickets for "{event_title}"! Offer ends {ends_at}.
{promo_line}
""".strip()
    },
    "event_postponed": {
        "subject": "Postponed: {event_title}",
        "body": """
Hi {name},

"{event_title}" has been postponed.

Original date: {old_time}
New date: {new_time}
Reason: {reason}

Your tickets remain valid for the new date.
""".strip()
    },
    "event_cancelled": {
        "subject": "Cancelled: {event_title}",
        "body": """
Hi {name},

We regret to let you know that "{event_title}" has been cancelled.
Reason: {reason}

Refund processing will begin shortly. You will receive an email with the details.
""".strip()
    },
    "welcome": {
        "subject": "Welcome to MobiTickets",
        "body": """
Hi {name},

Your MobiTickets account is ready. Browse events and buy tickets at {base_url}.
""".strip()
    },
}


def render_template(template_name: str, /, **fields) -> tuple:
    template = EMAIL_TEMPLATES[template_name]
    fields.setdefault("base_url", config.WEB_BASE_URL)
    subject = template["subject"].format(**fields)
    body = template["body"].format(**fields) + "\n\n" + SIGNATURE.format(base_url=config.WEB_BASE_URL)
    return subject, body


def _send_sync(to_email: str, subject: str, body: str, html_body: Optional[str]) -> None:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = formataddr((config.SMTP_FROM_NAME, config.SMTP_FROM_EMAIL))
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain", "utf-8"))
    if html_body:
        msg.attach(MIMEText(html_body, "html", "utf-8"))

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=30) as server:
        server.starttls()
        server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
        server.sendmail(config.SMTP_FROM_EMAIL, to_email, msg.as_string())


async def send_email(
    to_email: str,
    subject: str,
    body: str,
    html_body: Optional[str] = None
) -> bool:
    """
    Send one email. smtplib blocks, so it runs in a worker thread.

    Returns:
        bool: whether the message was handed to the SMTP server
    """
    if not config.SMTP_USERNAME or not config.SMTP_PASSWORD:
        log.error("❌ SMTP not configured: MOBI_SMTP_USERNAME / MOBI_SMTP_PASSWORD missing")
        return False

    if to_email.endswith("@wallet"):
        log.info(f"Skipping email to wallet-only account {to_email}")
        return True

    try:
        await asyncio.to_thread(_send_sync, to_email, subject, body, html_body)
        log.info(f"✉️ [email] sent: {to_email} '{subject}'")
        return True
    except smtplib.SMTPAuthenticationError as e:
        log.error(f"❌ SMTP authentication failed: {e}")
        return False
    except (smtplib.SMTPException, OSError) as e:
        log.error(f"❌ SMTP send failed for {to_email}: {e}")
        return False


async def send_template(to_email: str, template: str, **fields) -> bool:
    subject, body = render_template(template, **fields)
    return await send_email(to_email, subject, body)

