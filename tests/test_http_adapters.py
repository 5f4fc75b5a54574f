from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from adapters.enrichment_client import HttpEnrichmentClient
from adapters.evolution_messenger import EvolutionMessenger
from adapters.webhook_notifier import WebhookNotifier
from core.errors import EnrichmentUnavailable


def _recording_transport(handler):
    requests: list[httpx.Request] = []

    def wrapped(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(wrapped), requests


def test_enrichment_client_posts_text_and_parses_result() -> None:
    transport, requests = _recording_transport(
        lambda request: httpx.Response(
            200, json={"result": {"vendor": "CFE", "amount": 450, "currency": "mxn", "confidence": 0.82}}
        )
    )
    client = HttpEnrichmentClient("https://nlp.local/extract", api_key="secret", transport=transport)

    result = asyncio.run(client.enrich("Recibo CFE 450", "bill"))

    assert (result.vendor, result.amount, result.currency, result.confidence) == ("CFE", 450.0, "mxn", 0.82)
    assert json.loads(requests[0].content) == {"text": "Recibo CFE 450", "domain": "bill"}
    assert requests[0].headers["Authorization"] == "Bearer secret"


def test_enrichment_client_returns_none_for_empty_answers() -> None:
    transport, _ = _recording_transport(lambda request: httpx.Response(204))

    assert asyncio.run(HttpEnrichmentClient("https://nlp.local", transport=transport).enrich("x", "task")) is None


def test_enrichment_client_raises_on_server_errors() -> None:
    transport, _ = _recording_transport(lambda request: httpx.Response(503, text="overloaded"))
    client = HttpEnrichmentClient("https://nlp.local", transport=transport)

    with pytest.raises(EnrichmentUnavailable, match="503"):
        asyncio.run(client.enrich("x", "task"))


def test_enrichment_client_wraps_connection_errors() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = HttpEnrichmentClient("https://nlp.local", transport=httpx.MockTransport(refuse))

    with pytest.raises(EnrichmentUnavailable, match="unreachable"):
        asyncio.run(client.enrich("x", "task"))


def test_messenger_sends_text_with_instance_key() -> None:
    transport, requests = _recording_transport(lambda request: httpx.Response(201, json={"key": {"id": "wamid-9"}}))
    messenger = EvolutionMessenger(
        "https://evo.local/", "global-key", instance_keys={"main": "main-key"}, transport=transport
    )

    message_id = asyncio.run(messenger.send_text("main", "5215550001111@s.whatsapp.net", "hola"))

    assert message_id == "wamid-9"
    assert requests[0].url == "https://evo.local/message/sendText/main"
    assert requests[0].headers["apikey"] == "main-key"
    assert json.loads(requests[0].content) == {"number": "5215550001111", "textMessage": {"text": "hola"}}


def test_messenger_labels_each_label_and_raises_on_error() -> None:
    transport, requests = _recording_transport(
        lambda request: httpx.Response(200 if b'"vip"' in request.content else 400, text="bad label")
    )
    messenger = EvolutionMessenger("https://evo.local", "global-key", transport=transport)

    asyncio.run(messenger.add_labels("main", "120363@g.us", ["vip"]))
    with pytest.raises(RuntimeError, match="missing"):
        asyncio.run(messenger.add_labels("main", "120363@g.us", ["missing"]))

    assert json.loads(requests[0].content) == {"number": "120363@g.us", "labelId": "vip", "action": "add"}
    assert requests[0].headers["apikey"] == "global-key"


def test_webhook_notifier_posts_entity_and_text() -> None:
    transport, requests = _recording_transport(lambda request: httpx.Response(202))
    notifier = WebhookNotifier("https://hooks.local/cortex", token="t0k", transport=transport)
    due = datetime(2024, 6, 1, tzinfo=timezone.utc)

    asyncio.run(notifier.publish("task", {"id": "t1", "title": "Pay rent", "priority": "high", "due_date": due}))

    body = json.loads(requests[0].content)
    assert body["entity_type"] == "task"
    assert body["entity"]["due_date"] == "2024-06-01T00:00:00+00:00"
    assert body["text"].startswith("**Task: Pay rent**")
    assert requests[0].headers["Authorization"] == "Bearer t0k"


def test_webhook_notifier_raises_on_rejection() -> None:
    transport, _ = _recording_transport(lambda request: httpx.Response(500, text="nope"))
    notifier = WebhookNotifier("https://hooks.local/cortex", transport=transport)

    with pytest.raises(RuntimeError, match="500"):
        asyncio.run(notifier.publish("note", {"id": "n1", "title": "x"}))
