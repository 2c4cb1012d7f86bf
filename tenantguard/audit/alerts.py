"""Alert delivery for high and critical security events."""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from tenantguard.config.logging import SECURITY_LOGGER
from tenantguard.models.domain import SecurityEventRecord

logger = structlog.get_logger(SECURITY_LOGGER)


class Alerter(Protocol):
    async def send(self, record: SecurityEventRecord) -> None: ...


class LogAlerter:
    """Writes a warning line; the default when no webhook is configured."""

    async def send(self, record: SecurityEventRecord) -> None:
        logger.warning(
            "security_alert",
            event_id=record.event_id,
            event_type=record.event_type.value,
            risk_level=record.risk_level.value,
            org_id=record.org_id,
            user_id=record.user_id,
            ip_address=record.ip_address,
        )


class WebhookAlerter:
    """POSTs the event as JSON to a configured URL (chat or paging webhooks)."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def send(self, record: SecurityEventRecord) -> None:
        body = {
            "text": f"{record.risk_level.value} security event: {record.event_type.value}",
            "event": record.model_dump(mode="json"),
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(self._url, json=body)
            resp.raise_for_status()
        logger.debug("security_alert_delivered", event_id=record.event_id)
