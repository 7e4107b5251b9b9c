import logging
from typing import Optional

import requests
from airflow.models import Variable

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit

def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 20] + "\n… (truncated)"

def purge_alert_message(table: str, action: str, total: int, outcome: str, detail: str = "") -> str:
    """One alert body for a finished, stopped or failed purge run."""
    header = {
        "stopped": f"⏸️ **Purge stopped at budget**: `{table}`",
        "failed": f"❗️ **Purge failed**: `{table}`",
    }.get(outcome, f"✅ **Purge completed**: `{table}`")
    message = f"{header}\n- Rows {action}: {total}"
    if detail:
        message += f"\n- Detail: {detail}"
    return message

def send_discord_alert(message: str, username: Optional[str] = "Database Purge Alert",
                       avatar_url: Optional[str] = None) -> None:
    """
    Sends a simple Discord webhook message. Expects Airflow Variable 'DISCORD_WEBHOOK'.
    Delivery problems are logged and never raised: an alert must not fail the purge task.
    """
    webhook_url: str = Variable.get("DISCORD_WEBHOOK", default_var="")
    if not webhook_url:
        log.warning("No Discord webhook URL configured (Variable 'DISCORD_WEBHOOK'), skipping alert.")
        return

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
        return

    # Discord returns 204 No Content for non-waiting calls; 200 OK if '?wait=true'
    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
    else:
        log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
