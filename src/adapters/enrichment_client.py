"""HTTP text enrichment adapter.

Posts message text with a domain hint to an external extraction service and
maps the JSON answer onto an EnrichmentResult. Timeouts and retries are the
core's business; this adapter only reports failure.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from core.enrichment import enrichment_from_payload
from core.errors import EnrichmentUnavailable
from core.models import EnrichmentResult

LOGGER = logging.getLogger(__name__)


class HttpEnrichmentClient:
    """Enrichment service adapter backed by a JSON-over-HTTP endpoint."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def enrich(self, text: str, domain_hint: str) -> Optional[EnrichmentResult]:
        """Return the parsed extraction, or None when the service found nothing."""

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._endpoint,
                    json={"text": text, "domain": domain_hint},
                    headers=self._headers(),
                )
        except httpx.TimeoutException as exc:
            raise EnrichmentUnavailable(f"enrichment service timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise EnrichmentUnavailable(f"enrichment service unreachable: {exc}") from exc

        if response.status_code == 204:
            return None
        if response.status_code != 200:
            raise EnrichmentUnavailable(
                f"enrichment service returned {response.status_code}: {response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EnrichmentUnavailable("enrichment service returned invalid JSON") from exc
        # Some deployments wrap the fields as {"result": {...}}.
        if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
            payload = payload["result"]
        if not isinstance(payload, dict) or not payload:
            return None

        result = enrichment_from_payload(payload)
        LOGGER.debug("Enrichment (%s) returned confidence %.2f", domain_hint, result.confidence)
        return result
