"""Notification fan-out adapters.

The webhook notifier posts every created or updated record to a configured
URL so a UI or chat bot can refresh; the log notifier is the zero-config
fallback used when no webhook is set.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

import httpx

from adapters.notification_formatting import format_notification

LOGGER = logging.getLogger(__name__)


def _jsonable(entity: Mapping[str, Any]) -> dict[str, Any]:
    return json.loads(
        json.dumps(dict(entity), default=lambda value: value.isoformat() if isinstance(value, datetime) else str(value))
    )


class WebhookNotifier:
    """Notifier adapter that POSTs JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        mode: str = "markdown",
        snippet_chars: int = 400,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._mode = mode
        self._snippet_chars = snippet_chars
        self._timeout = timeout
        self._transport = transport

    async def publish(self, entity_type: str, entity: Mapping[str, Any]) -> None:
        """Send the record and its formatted text to the webhook."""

        payload = {
            "entity_type": entity_type,
            "entity": _jsonable(entity),
            "text": format_notification(entity_type, entity, self._mode, self._snippet_chars),
        }
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=payload, headers=headers)
        if response.status_code >= 400:
            raise RuntimeError(f"Webhook error {response.status_code}: {response.text[:200]}")


class LogNotifier:
    """Notifier adapter that writes a one-line summary to the log."""

    async def publish(self, entity_type: str, entity: Mapping[str, Any]) -> None:
        LOGGER.info("%s", format_notification(entity_type, entity, "plain"))
