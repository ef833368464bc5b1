import logging
from typing import Optional

import requests

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)


def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 20] + "\n… (truncated)"


def send_discord_alert(message: str, webhook_url: Optional[str],
                       username: Optional[str] = "Database Sync Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Post `message` to a Discord webhook. Returns True when Discord accepted it.
    Discord answers 204 No Content, or 200 when the webhook URL carries '?wait=true'.
    Alerting never raises: a failed alert is logged and reported through the return value.
    """
    if not webhook_url:
        log.warning("No Discord webhook URL configured, skipping alert.")
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False
