"""Shared notification formatting helpers.

Keeping formatting here prevents drift between notifier adapters and keeps
messages consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
from datetime import datetime
from typing import Any, Mapping

from core.models import ENTITY_BILL, ENTITY_CALENDAR_EVENT, ENTITY_NOTE, ENTITY_TASK

_LABELS = {
    ENTITY_TASK: "Task",
    ENTITY_CALENDAR_EVENT: "Event",
    ENTITY_BILL: "Bill",
    ENTITY_NOTE: "Note",
}

DIVIDER = "──────────────"


def _value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.astimezone().strftime("%H:%M %d-%m-%Y")
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)


def entity_headline(entity_type: str, entity: Mapping[str, Any]) -> str:
    """Return a one-line summary such as ``Bill: CFE 450.00 MXN``."""

    label = _LABELS.get(entity_type, entity_type)
    if entity_type == ENTITY_BILL:
        amount = float(entity.get("amount") or 0)
        return f"{label}: {entity.get('vendor') or 'Unknown Vendor'} {amount:.2f} {entity.get('currency') or ''}".rstrip()
    return f"{label}: {entity.get('title') or entity.get('id') or 'untitled'}"


def entity_fields(entity_type: str, entity: Mapping[str, Any]) -> list[tuple[str, str]]:
    """Return the (name, value) pairs worth showing for a record, skipping empties."""

    names = {
        ENTITY_TASK: ("priority", "status", "due_date", "tags"),
        ENTITY_CALENDAR_EVENT: ("start_time", "end_time", "location", "attendees"),
        ENTITY_BILL: ("category", "due_date", "status"),
        ENTITY_NOTE: (),
    }.get(entity_type, ())
    pairs = []
    for name in names:
        value = entity.get(name)
        if value in (None, "", [], ()):
            continue
        pairs.append((name.replace("_", " ").capitalize(), _value(value)))
    return pairs


def _body(entity_type: str, entity: Mapping[str, Any]) -> str:
    key = "content" if entity_type == ENTITY_NOTE else "description"
    return str(entity.get(key) or "")


def _format_markdown(entity_type: str, entity: Mapping[str, Any], snippet_chars: int) -> str:
    def escape_md(value: str) -> str:
        for ch in r"*[`":
            value = value.replace(ch, f"\\{ch}")
        return value

    lines = [f"**{escape_md(entity_headline(entity_type, entity))}**", DIVIDER]
    lines.extend(f"**{name}:** {escape_md(value)}" for name, value in entity_fields(entity_type, entity))
    body = _body(entity_type, entity)[:snippet_chars]
    if body:
        lines.extend(["", escape_md(body)])
    lines.append(DIVIDER)
    return "\n".join(lines)


def _format_html(entity_type: str, entity: Mapping[str, Any], snippet_chars: int) -> str:
    parts = [f"<b>{html.escape(entity_headline(entity_type, entity))}</b>", DIVIDER]
    parts.extend(
        f"<b>{html.escape(name)}:</b> {html.escape(value)}" for name, value in entity_fields(entity_type, entity)
    )
    body = _body(entity_type, entity)[:snippet_chars]
    if body:
        parts.extend(["", html.escape(body)])
    parts.append(DIVIDER)
    return "\n".join(parts)


def _format_plain(entity_type: str, entity: Mapping[str, Any], snippet_chars: int) -> str:
    fields = "; ".join(f"{name}: {value}" for name, value in entity_fields(entity_type, entity))
    headline = entity_headline(entity_type, entity)
    return f"{headline} ({fields})" if fields else headline


def format_notification(
    entity_type: str,
    entity: Mapping[str, Any],
    mode: str,
    snippet_chars: int = 400,
) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(entity_type, entity, snippet_chars)
    if mode == "html":
        return _format_html(entity_type, entity, snippet_chars)
    if mode == "plain":
        return _format_plain(entity_type, entity, snippet_chars)
    raise ValueError(f"Unsupported notification format: {mode}")
