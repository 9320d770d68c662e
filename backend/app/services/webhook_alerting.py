"""Webhook alerts for security events.

Posts to a Discord, Slack or generic JSON webhook. Delivery is best effort
with a short timeout; a failed alert is logged and otherwise ignored.
"""

import json
import logging
from datetime import UTC, datetime

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

_WEBHOOK_TIMEOUT = 5.0
_DETAILS_LIMIT = 1500

SEVERITY_MARKERS = {"info": "[info]", "warning": "[warning]", "critical": "[CRITICAL]"}


async def send_alert(
    title: str,
    message: str,
    severity: str = "warning",
    details: dict | None = None,
    webhook_url: str | None = None,
) -> bool:
    """Send an alert to ``webhook_url`` or the configured ALERT_WEBHOOK_URL.

    Returns True if the webhook accepted the alert.
    """
    url = webhook_url if webhook_url is not None else settings.alert_webhook_url
    if not url:
        return False

    payload = build_payload(title, message, severity, details, url)

    try:
        async with httpx.AsyncClient(timeout=_WEBHOOK_TIMEOUT) as client:
            response = await client.post(url, json=payload)
    except httpx.HTTPError as e:
        logger.warning("Webhook alert failed: %s", e)
        return False

    if response.status_code >= 400:
        logger.warning("Webhook alert failed: HTTP %d", response.status_code)
        return False
    return True


def build_payload(
    title: str,
    message: str,
    severity: str,
    details: dict | None,
    webhook_url: str,
) -> dict:
    """Shape the payload for the webhook's service."""
    marker = SEVERITY_MARKERS.get(severity, f"[{severity}]")
    details_json = json.dumps(details, indent=2, default=str)[:_DETAILS_LIMIT] if details else ""

    if "discord.com/api/webhooks" in webhook_url:
        content = f"{marker} **{title}**\n{message}"
        if details_json:
            content += f"\n```json\n{details_json}\n```"
        return {"content": content}

    if "hooks.slack.com" in webhook_url:
        text = f"{marker} *{title}*\n{message}"
        if details_json:
            text += f"\n```{details_json}```"
        return {"text": text}

    return {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(UTC).isoformat(),
        "details": details or {},
        "source": "silence-notes",
    }
