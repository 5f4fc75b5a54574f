"""Enrichment adapter and template interpolation (core domain).

The enrichment service is best-effort: errors, timeouts, empty answers and
low-confidence answers all collapse into an empty EnrichmentResult, and the
dispatcher falls back to actionConfig templates and hard defaults.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.config import EnrichmentConfig
from core.models import EMPTY_ENRICHMENT, ActionType, EnrichmentResult, TriggerEvent
from core.ports import EnrichmentServicePort

LOGGER = logging.getLogger(__name__)

DOMAIN_HINTS = {
    ActionType.CREATE_TASK.value: "task",
    ActionType.CREATE_CALENDAR_EVENT.value: "calendar",
    ActionType.CREATE_BILL.value: "bill",
}

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_FALLBACKS = {
    "content": "No content",
    "sender": "Unknown",
    "senderJid": "Unknown",
    "chatId": "Unknown chat",
    "messageId": "Unknown message",
    "emoji": "No emoji",
    "instanceId": "Unknown instance",
    "triggerType": "Unknown trigger",
}


def template_values(event: TriggerEvent) -> dict[str, str]:
    """Return the placeholder values for ``event`` with fallbacks applied."""

    sender_jid = event.actor_id or ""
    values = {
        "content": event.content.strip(),
        # JIDs look like "5215550000000@s.whatsapp.net"; the sender is the user part.
        "sender": sender_jid.split("@", 1)[0],
        "senderJid": sender_jid,
        "chatId": event.chat_id,
        "messageId": event.message_id,
        "emoji": event.emoji or "",
        "instanceId": event.instance_id,
        "triggerType": event.trigger_type.value,
    }
    resolved = {key: value or _FALLBACKS[key] for key, value in values.items()}
    resolved["reaction"] = resolved["emoji"]
    return resolved


def interpolate(template: Optional[str], event: TriggerEvent) -> str:
    """Substitute ``{{placeholder}}`` tokens; unknown tokens are left as-is."""

    if not template:
        return ""
    values = template_values(event)
    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def render_config(action_config: Mapping[str, Any], event: TriggerEvent) -> dict[str, Any]:
    """Interpolate every string value of an actionConfig mapping."""

    return {
        key: interpolate(value, event) if isinstance(value, str) else value
        for key, value in action_config.items()
    }


def parse_when(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_amount(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(str(value).replace(",", "").lstrip("$"))
    except ValueError:
        return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def enrichment_from_payload(payload: Mapping[str, Any]) -> EnrichmentResult:
    """Build an EnrichmentResult from a loosely-typed service payload."""

    def pick(*keys: str) -> Any:
        for key in keys:
            if payload.get(key) is not None:
                return payload[key]
        return None

    duration = pick("duration_minutes", "durationMinutes", "duration")
    needs_link = pick("needs_meeting_link", "needsMeetingLink", "shouldCreateMeetInvite")
    try:
        confidence = float(pick("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    return EnrichmentResult(
        title=_text(pick("title")),
        description=_text(pick("description")),
        priority=_text(pick("priority")),
        due_date=parse_when(pick("due_date", "dueDate")),
        tags=tuple(str(tag) for tag in pick("tags") or ()),
        start_time=parse_when(pick("start_time", "startTime")),
        end_time=parse_when(pick("end_time", "endTime")),
        duration_minutes=int(duration) if duration else None,
        location=_text(pick("location")),
        attendees=tuple(str(item) for item in pick("attendees") or ()),
        needs_meeting_link=bool(needs_link) if needs_link is not None else None,
        vendor=_text(pick("vendor", "vendor_name")),
        amount=parse_amount(pick("amount")),
        currency=_text(pick("currency")),
        category=_text(pick("category")),
        confidence=min(max(confidence, 0.0), 1.0),
    )


class EnrichmentAdapter:
    """Calls the text enrichment service with a domain hint and a timeout."""

    def __init__(self, service: Optional[EnrichmentServicePort], config: EnrichmentConfig) -> None:
        self._service = service
        self._config = config

    async def enrich(self, action_type: str, event: TriggerEvent) -> EnrichmentResult:
        hint = DOMAIN_HINTS.get(action_type)
        if hint is None or self._service is None or not event.content.strip():
            return EMPTY_ENRICHMENT

        try:
            result = await asyncio.wait_for(
                self._service.enrich(event.content, hint),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Enrichment timed out after %ss for message %s", self._config.timeout_seconds, event.message_id
            )
            return EMPTY_ENRICHMENT
        except Exception as exc:
            LOGGER.warning("Enrichment failed for message %s: %s", event.message_id, exc)
            return EMPTY_ENRICHMENT

        if result is None:
            return EMPTY_ENRICHMENT
        if isinstance(result, Mapping):
            result = enrichment_from_payload(result)
        if result.confidence < self._config.min_confidence:
            LOGGER.info(
                "Discarding %s enrichment for message %s (confidence %.2f)",
                hint,
                event.message_id,
                result.confidence,
            )
            return EMPTY_ENRICHMENT
        return result
