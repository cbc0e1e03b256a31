from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

from . import store
from .config import get_billing_settings, get_resend_api_key
from .logger import get_logger, log_step

logger = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
FROM_ADDRESS = "ProductionPortal <notifications@resend.dev>"
NOTIFICATION_TYPES = ("trial_expiring", "trial_expired", "payment_failed", "subscription_canceled")
_TAG = "SEND-BILLING-NOTIFICATION"

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


def _expires_when(days_remaining) -> str:
    return "tomorrow" if days_remaining == 1 else f"in {days_remaining} days"


def build_subject(kind: str, days_remaining: Optional[int] = None) -> str:
    if kind == "trial_expiring":
        return f"Your ProductionPortal trial expires {_expires_when(days_remaining)}"
    if kind == "trial_expired":
        return "Your ProductionPortal trial has expired"
    if kind == "payment_failed":
        return "Action required: Payment failed for ProductionPortal"
    if kind == "subscription_canceled":
        return "Your ProductionPortal subscription has been canceled"
    raise ValueError(f"Unknown notification type: {kind}")


def render_notification(kind: str, *, factory_name: Optional[str], days_remaining: Optional[int], portal_url: str) -> tuple:
    """Return (subject, html) for a billing notice."""
    subject = build_subject(kind, days_remaining)
    html = _env.get_template(f"billing/{kind}.html").render(
        factory_name=factory_name or "your factory",
        when=_expires_when(days_remaining),
        portal_url=portal_url,
    )
    return subject, html


def in_app_message(kind: str, days_remaining: Optional[int]) -> str:
    if kind == "payment_failed":
        return "Please update your payment method to avoid service interruption."
    if kind == "trial_expiring":
        return f"Your trial expires {_expires_when(days_remaining)}. Subscribe to continue."
    return "Check your billing settings for more details."


def send_email(api_key: str, to: List[str], subject: str, html: str, *, timeout: float = 20) -> Dict:
    resp = requests.post(
        RESEND_API_URL,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json={"from": FROM_ADDRESS, "to": to, "subject": subject, "html": html},
        timeout=timeout,
    )
    if resp.status_code >= 400:
        raise RuntimeError(f"Resend API error: {resp.status_code} - {resp.text[:500]}")
    return resp.json()


def send_billing_notification(datarepo_path: Path, request: Dict, *, sender=send_email) -> Dict:
    """Email a billing notice and fan it out as in-app notifications to factory admins.

    Without PP_RESEND_API_KEY nothing is sent and the call reports skipped.
    """
    log_step(logger, _TAG, "Function started")
    api_key = get_resend_api_key()
    if not api_key:
        log_step(logger, _TAG, "PP_RESEND_API_KEY not set, skipping email")
        return {"success": True, "skipped": True}

    kind = request.get("type")
    factory_id = request.get("factoryId")
    email = request.get("email")
    days_remaining = request.get("daysRemaining")
    log_step(logger, _TAG, "Request body", {
        "type": kind, "factoryId": factory_id, "email": email,
        "factoryName": request.get("factoryName"), "daysRemaining": days_remaining,
    })
    if not email:
        raise ValueError("Email is required")
    if kind not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {kind}")

    subject, html = render_notification(
        kind,
        factory_name=request.get("factoryName"),
        days_remaining=days_remaining,
        portal_url=get_billing_settings(datarepo_path)["portal_url"],
    )
    email_response = sender(api_key, [email], subject, html)
    log_step(logger, _TAG, "Email sent", {"emailResponse": email_response})

    if factory_id:
        admins = store.select(datarepo_path, "user_roles", {"factory_id": factory_id, "role": ["admin", "owner"]})
        for role in admins:
            store.insert(datarepo_path, "notifications", {
                "factory_id": factory_id,
                "user_id": role.get("user_id"),
                "type": "billing",
                "title": subject,
                "message": in_app_message(kind, days_remaining),
                "data": {"notificationType": kind, "factoryId": factory_id},
                "is_read": False,
            })
        if admins:
            log_step(logger, _TAG, "In-app notifications created", {"count": len(admins)})
    return {"success": True}
