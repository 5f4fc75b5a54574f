"""Evolution API (WhatsApp) webhook to core event mapping adapter.

This keeps the provider payload shape out of the core pipeline. A single text
message fans out to a ``message`` event, a ``keyword`` event and, when the
text carries tags, a ``hashtag`` event; a reaction becomes a ``reaction``
event that points at the reacted-to message. ``ingest_webhook`` adds the
message log on top: it stores message text and copies it onto reactions.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.models import TriggerEvent, TriggerType
from core.ports import MessageLogPort

LOGGER = logging.getLogger(__name__)

HASHTAG_PATTERN = re.compile(r"#(\w+)")

# Message kinds whose text lives in a caption rather than the body.
_CAPTIONED = ("imageMessage", "videoMessage", "documentMessage")


def extract_hashtags(text: str) -> frozenset[str]:
    """Return the lowercased tags (without ``#``) found in ``text``."""

    return frozenset(tag.lower() for tag in HASHTAG_PATTERN.findall(text or ""))


def extract_content(message: Optional[Mapping[str, Any]]) -> str:
    if not message:
        return ""
    if message.get("conversation"):
        return str(message["conversation"])
    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return str(extended["text"])
    for kind in _CAPTIONED:
        caption = (message.get(kind) or {}).get("caption")
        if caption:
            return str(caption)
    return ""


def _quoted_message_id(message: Mapping[str, Any]) -> Optional[str]:
    for kind in ("extendedTextMessage", *_CAPTIONED):
        context_info = (message.get(kind) or {}).get("contextInfo") or {}
        if context_info.get("stanzaId"):
            return str(context_info["stanzaId"])
    return None


def _timestamp(seconds: Any = None, millis: Any = None) -> datetime:
    try:
        if millis:
            return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
        if seconds:
            return datetime.fromtimestamp(int(seconds), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        LOGGER.debug("Unparseable webhook timestamp %r/%r", seconds, millis)
    return datetime.now(timezone.utc)


def _actor(key: Mapping[str, Any], instance_id: str, sender: Optional[str]) -> str:
    # Messages we sent ourselves are attributed to the instance's own JID.
    if key.get("fromMe"):
        return sender or instance_id
    return str(key.get("participant") or key.get("remoteJid") or "")


def message_events(instance_id: str, data: Mapping[str, Any], sender: Optional[str] = None) -> list[TriggerEvent]:
    """Map one ``messages.upsert`` text payload to its trigger events."""

    key = data.get("key") or {}
    message = data.get("message") or {}
    if not key.get("id"):
        LOGGER.warning("Ignoring message payload without key.id for instance %s", instance_id)
        return []

    content = extract_content(message)
    actor_id = _actor(key, instance_id, sender)
    base = dict(
        instance_id=instance_id,
        chat_id=str(key.get("remoteJid") or ""),
        message_id=str(key["id"]),
        actor_id=actor_id,
        timestamp=_timestamp(data.get("messageTimestamp")),
        content=content,
        from_me=bool(key.get("fromMe", False)),
        quoted_message_id=_quoted_message_id(message),
        original_actor_id=actor_id,
    )

    events = [TriggerEvent(trigger_type=TriggerType.MESSAGE, **base)]
    if not content:
        return events
    events.append(TriggerEvent(trigger_type=TriggerType.KEYWORD, **base))
    hashtags = extract_hashtags(content)
    if hashtags:
        events.append(TriggerEvent(trigger_type=TriggerType.HASHTAG, hashtags=hashtags, **base))
    return events


def reaction_event(
    instance_id: str, data: Mapping[str, Any], sender: Optional[str] = None
) -> Optional[TriggerEvent]:
    """Map a reaction payload; removed reactions (empty text) yield None."""

    key = data.get("key") or {}
    reaction = (data.get("message") or {}).get("reactionMessage") or {}
    target = reaction.get("key") or {}
    emoji = reaction.get("text")
    if not emoji or not target.get("id"):
        return None

    if key.get("fromMe"):
        actor_id = sender or instance_id
    else:
        actor_id = str(key.get("participant") or sender or key.get("remoteJid") or "")
    original_actor = None if target.get("fromMe") else target.get("participant") or target.get("remoteJid")
    return TriggerEvent(
        trigger_type=TriggerType.REACTION,
        instance_id=instance_id,
        chat_id=str(target.get("remoteJid") or key.get("remoteJid") or ""),
        message_id=str(target["id"]),
        actor_id=actor_id,
        timestamp=_timestamp(data.get("messageTimestamp"), reaction.get("senderTimestampMs")),
        from_me=bool(key.get("fromMe", False)),
        emoji=str(emoji),
        original_actor_id=str(original_actor) if original_actor else None,
    )


def map_webhook(payload: Mapping[str, Any], instance_id: Optional[str] = None) -> list[TriggerEvent]:
    """Map a full webhook payload to zero or more TriggerEvents.

    ``instance_id`` overrides the payload's ``instance`` field, which is useful
    when the instance is encoded in the webhook URL instead.
    """

    instance = instance_id or payload.get("instance") or payload.get("instanceId")
    if not instance:
        LOGGER.warning("Ignoring webhook without an instance id")
        return []
    instance = str(instance)
    event_type = str(payload.get("event") or "").lower().replace("_", ".")
    data = payload.get("data") or {}
    sender = payload.get("sender")

    if event_type == "messages.update":
        updates = data.get("updates") if isinstance(data, Mapping) else None
        if updates and (updates[0].get("message") or {}).get("reactionMessage"):
            event = reaction_event(instance, updates[0], sender)
            return [event] if event else []
        return []

    if event_type != "messages.upsert":
        LOGGER.debug("Unhandled webhook event type %s", event_type or "<missing>")
        return []

    items = data if isinstance(data, list) else data.get("messages") or [data]
    events: list[TriggerEvent] = []
    for item in items:
        if (item.get("message") or {}).get("reactionMessage"):
            event = reaction_event(instance, item, sender)
            if event:
                events.append(event)
        else:
            events.extend(message_events(instance, item, sender))
    return events


def with_target_message(event: TriggerEvent, stored: Optional[Mapping[str, Any]]) -> TriggerEvent:
    """Give a reaction event the text and author of the message it targets."""

    if stored is None:
        return event
    content = str(stored.get("content") or "")
    return replace(
        event,
        content=content,
        hashtags=extract_hashtags(content),
        original_actor_id=stored.get("sender_id") or event.original_actor_id,
    )


async def ingest_webhook(
    payload: Mapping[str, Any],
    messages: MessageLogPort,
    instance_id: Optional[str] = None,
) -> list[TriggerEvent]:
    """Map a webhook payload, remembering messages and resolving reaction targets.

    Reactions carry only the id of the message they point at; its text comes
    from the message log so content templates and enrichment see it.
    """

    events: list[TriggerEvent] = []
    for event in map_webhook(payload, instance_id=instance_id):
        if event.trigger_type is TriggerType.MESSAGE:
            await messages.save_message(event)
        elif event.trigger_type is TriggerType.REACTION:
            stored = await messages.get_message(event.instance_id, event.message_id)
            if stored is None:
                LOGGER.info("Reaction on unknown message %s; no content to attach", event.message_id)
            event = with_target_message(event, stored)
        events.append(event)
    return events
