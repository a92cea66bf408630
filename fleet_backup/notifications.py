"""Best-effort Discord/Slack notifications for backup and restore events."""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ._utils import logger
from .config import NotificationConfig


class Severity(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


class NotificationEvent(BaseModel):
    severity: Severity
    title: str
    message: str = ""
    fields: Dict[str, Any] = Field(default_factory=dict)


class Notifier:
    """Receives structured events. Implementations must never raise."""

    async def notify(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    async def notify(self, event: NotificationEvent) -> None:
        logger.debug(f"Notification ({event.severity.value}): {event.title}")


DISCORD_COLORS = {
    Severity.SUCCESS: 3066993,
    Severity.WARNING: 16776960,
    Severity.ERROR: 15158332,
    Severity.INFO: 3447003,
}

SLACK_STYLES = {
    Severity.SUCCESS: ("good", ":white_check_mark:"),
    Severity.WARNING: ("warning", ":warning:"),
    Severity.ERROR: ("danger", ":x:"),
    Severity.INFO: ("good", ":information_source:"),
}


class WebhookNotifier(Notifier):
    """Post events to Discord and Slack incoming webhooks concurrently."""

    def __init__(self, config: NotificationConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.transport = transport

    async def notify(self, event: NotificationEvent) -> None:
        if not self.config.enabled:
            return

        deliveries = []
        async with httpx.AsyncClient(timeout=self.config.timeout, transport=self.transport) as client:
            if self.config.discord_webhook_url:
                deliveries.append(self._deliver(
                    client, "discord", self.config.discord_webhook_url, self.discord_payload(event)
                ))
            if self.config.slack_webhook_url:
                deliveries.append(self._deliver(
                    client, "slack", self.config.slack_webhook_url, self.slack_payload(event)
                ))
            await asyncio.gather(*deliveries)

    async def _deliver(self, client: httpx.AsyncClient, target: str, url: str, payload: dict) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_retries + 1),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(url, json=payload)
                    response.raise_for_status()
            logger.debug(f"Notification delivered to {target}")
        except Exception as e:
            logger.warning(f"Failed to deliver {target} notification: {e}")

    def discord_payload(self, event: NotificationEvent) -> dict:
        return {
            "embeds": [{
                "title": event.title,
                "description": event.message,
                "color": DISCORD_COLORS[event.severity],
                "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                "footer": {"text": f"WPFleet on {self.config.hostname}"},
                "fields": [
                    {"name": name, "value": str(value), "inline": True}
                    for name, value in event.fields.items()
                ],
            }]
        }

    def slack_payload(self, event: NotificationEvent) -> dict:
        color, icon = SLACK_STYLES[event.severity]
        return {
            "attachments": [{
                "color": color,
                "title": f"{icon} {event.title}",
                "text": event.message,
                "footer": f"WPFleet on {self.config.hostname}",
                "ts": int(datetime.now(timezone.utc).timestamp()),
                "fields": [
                    {"title": name, "value": str(value), "short": True}
                    for name, value in event.fields.items()
                ],
            }]
        }


def backup_event(
    succeeded: int,
    failed: int,
    total_size: str,
    failed_domains: List[str],
    run_id: str,
) -> NotificationEvent:
    """Aggregate event for one backup run."""
    fields = {
        "Sites Backed Up": succeeded,
        "Total Size": total_size,
        "Failed": failed,
        "Run": run_id,
    }
    if failed == 0:
        return NotificationEvent(
            severity=Severity.SUCCESS,
            title="Backup Completed",
            message=f"Successfully backed up {succeeded} site(s)",
            fields=fields,
        )
    fields["Failed Sites"] = ", ".join(failed_domains)
    return NotificationEvent(
        severity=Severity.ERROR,
        title="Backup Failed",
        message=f"Backup completed with {failed} failure(s)",
        fields=fields,
    )


def restore_event(domain: str, run_id: str, success: bool, outcome: str) -> NotificationEvent:
    fields = {"Site": domain, "Run": run_id, "Result": outcome}
    if success:
        return NotificationEvent(
            severity=Severity.SUCCESS,
            title="Restore Completed",
            message=f"Restored {domain} from backup {run_id}",
            fields=fields,
        )
    return NotificationEvent(
        severity=Severity.ERROR,
        title="Restore Failed",
        message=f"Restore of {domain} from backup {run_id} stopped: {outcome}",
        fields=fields,
    )
