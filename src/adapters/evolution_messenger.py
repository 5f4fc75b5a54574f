"""Evolution API messaging adapter.

Used by the send_message and add_label actions. Each instance authenticates
with the global API key unless a per-instance key is configured.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx

LOGGER = logging.getLogger(__name__)


class EvolutionMessenger:
    """Sends text and applies chat labels through an Evolution API server."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance_keys: Optional[dict[str, str]] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._instance_keys = instance_keys or {}
        self._timeout = timeout
        self._transport = transport

    def _client(self, instance_id: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"apikey": self._instance_keys.get(instance_id) or self._api_key},
            timeout=self._timeout,
            transport=self._transport,
        )

    @staticmethod
    def _number(chat_id: str) -> str:
        # Direct chats are addressed by number; groups keep their full JID.
        if chat_id.endswith("@s.whatsapp.net"):
            return chat_id.split("@", 1)[0]
        return chat_id

    async def send_text(self, instance_id: str, chat_id: str, text: str) -> str:
        """Send ``text`` to ``chat_id`` and return the provider message id."""

        async with self._client(instance_id) as client:
            response = await client.post(
                f"/message/sendText/{instance_id}",
                json={"number": self._number(chat_id), "textMessage": {"text": text}},
            )
        if response.status_code not in (200, 201):
            raise RuntimeError(f"Evolution sendText failed ({response.status_code}): {response.text}")

        data = response.json()
        message_id = str((data.get("key") or {}).get("id") or "")
        LOGGER.info("Sent message %s to %s via %s", message_id or "<unknown>", chat_id, instance_id)
        return message_id

    async def add_labels(self, instance_id: str, chat_id: str, labels: Sequence[str]) -> None:
        """Attach each label id to the chat."""

        async with self._client(instance_id) as client:
            for label in labels:
                response = await client.post(
                    f"/label/handleLabel/{instance_id}",
                    json={"number": self._number(chat_id), "labelId": label, "action": "add"},
                )
                if response.status_code not in (200, 201):
                    raise RuntimeError(
                        f"Evolution handleLabel failed for {label} ({response.status_code}): {response.text}"
                    )
        LOGGER.info("Labelled %s with %s via %s", chat_id, ", ".join(labels), instance_id)
