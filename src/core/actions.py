"""Action handlers (core domain).

Each action type has one handler. Handlers build the derived record fields in
a fixed merge order (enrichment result, then the rule's actionConfig template,
then a hard default), write through the entity store and return an
ActionOutcome for the dispatcher to record and publish.

``create`` performs exactly one write, the primary record. A handler that
derives more records from it (the bill payment task) does so in an optional
``follow_up`` step, which the dispatcher runs only after the primary record
is linked to its message.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Mapping, Optional, Protocol, Sequence

from core.config import DispatchDefaults
from core.enrichment import interpolate, parse_amount, parse_when
from core.errors import DerivedRecordPending
from core.models import (
    ENTITY_BILL,
    ENTITY_CALENDAR_EVENT,
    ENTITY_NOTE,
    ENTITY_TASK,
    ActionType,
    EnrichmentResult,
    Rule,
    TriggerEvent,
)
from core.ports import EntityStorePort, MessagingPort

PRIORITY_ORDER = ("low", "medium", "high", "urgent")

TITLE_CHARS = 100


@dataclass(frozen=True)
class ActionContext:
    """Everything a handler needs for one rule attempt."""

    rule: Rule
    event: TriggerEvent
    enrichment: EnrichmentResult
    # actionConfig with templates already interpolated against the event.
    config: Mapping[str, Any]
    defaults: DispatchDefaults
    store: EntityStorePort
    messenger: Optional[MessagingPort] = None

    def cfg(self, *keys: str) -> Any:
        for key in keys:
            value = self.config.get(key)
            if value not in (None, "", [], {}):
                return value
        return None


@dataclass(frozen=True)
class ActionOutcome:
    """What a handler did, for the execution record and fan-out."""

    summary: str
    entity_type: Optional[str] = None
    entity: Optional[dict[str, Any]] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_id(self) -> Optional[str]:
        return None if self.entity is None else self.entity.get("id")


class ActionHandler(Protocol):
    entity_type: Optional[str]

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        ...

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        ...


def first_non_empty(*values: Any) -> Any:
    """Return the first value that is not None or empty."""

    for value in values:
        if value not in (None, "", [], (), {}):
            return value
    return None


def escalate_priority(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """Return the higher of two priorities; never downgrades ``current``."""

    if not candidate:
        return current
    if not current:
        return candidate
    current_key, candidate_key = current.lower(), candidate.lower()
    if candidate_key not in PRIORITY_ORDER:
        return current
    if current_key not in PRIORITY_ORDER:
        return candidate_key
    if PRIORITY_ORDER.index(candidate_key) > PRIORITY_ORDER.index(current_key):
        return candidate_key
    return current


def _as_list(value: Any) -> list[str]:
    if value in (None, ""):
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def _content_title(event: TriggerEvent) -> Optional[str]:
    first_line = event.content.strip().splitlines()[0] if event.content.strip() else ""
    return first_line[:TITLE_CHARS].strip() or None


def _update_note(existing: Optional[str], event: TriggerEvent, enrichment: EnrichmentResult) -> str:
    note = first_non_empty(event.content.strip(), enrichment.description)
    if not note:
        note = f"{event.trigger_type.value} {event.emoji or ''}".strip()
    return f"{existing}\n\nUpdate: {note}" if existing else f"Update: {note}"


def _origin_fields(ctx: ActionContext) -> dict[str, Any]:
    event = ctx.event
    return {
        "rule_id": ctx.rule.rule_id,
        "instance_id": event.instance_id,
        "related_chat_id": event.chat_id,
        "triggering_message_id": event.message_id,
        "original_actor_id": event.original_actor_id or event.actor_id,
        "created_by": ctx.rule.created_by,
    }


async def _load(ctx: ActionContext, entity_type: str, entity_id: str) -> dict[str, Any]:
    existing = await ctx.store.get_entity(entity_type, entity_id)
    if existing is None:
        raise DerivedRecordPending(f"{entity_type} {entity_id} linked to message {ctx.event.message_id} was not found")
    return existing


class TaskHandler:
    entity_type = ENTITY_TASK

    def build(self, ctx: ActionContext) -> dict[str, Any]:
        enrichment, event = ctx.enrichment, ctx.event
        return {
            "title": first_non_empty(enrichment.title, ctx.cfg("title"), _content_title(event), ctx.defaults.task_title),
            "description": first_non_empty(enrichment.description, ctx.cfg("description"), event.content.strip()) or "",
            "priority": str(
                first_non_empty(enrichment.priority, ctx.cfg("priority"), ctx.defaults.task_priority)
            ).lower(),
            "status": first_non_empty(ctx.cfg("status"), ctx.defaults.task_status),
            "due_date": first_non_empty(enrichment.due_date, parse_when(ctx.cfg("dueDate", "due_date"))),
            "tags": list(first_non_empty(enrichment.tags, _as_list(ctx.cfg("tags"))) or []),
            **_origin_fields(ctx),
        }

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        fields = self.build(ctx)
        task_id = await ctx.store.create_task(fields)
        return ActionOutcome(
            summary=f"created task {task_id}: {fields['title']}",
            entity_type=ENTITY_TASK,
            entity={"id": task_id, **fields},
        )

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        existing = await _load(ctx, ENTITY_TASK, entity_id)
        updates: dict[str, Any] = {
            "description": _update_note(existing.get("description"), ctx.event, ctx.enrichment),
        }
        priority = escalate_priority(
            existing.get("priority"), first_non_empty(ctx.enrichment.priority, ctx.cfg("priority"))
        )
        if priority and priority != existing.get("priority"):
            updates["priority"] = priority
        due_date = first_non_empty(ctx.enrichment.due_date, parse_when(ctx.cfg("dueDate", "due_date")))
        if due_date and not existing.get("due_date"):
            updates["due_date"] = due_date
        await ctx.store.update_entity(ENTITY_TASK, entity_id, updates)
        return ActionOutcome(
            summary=f"updated task {entity_id}: {', '.join(sorted(updates))}",
            entity_type=ENTITY_TASK,
            entity={**existing, **updates, "id": entity_id},
        )


class CalendarEventHandler:
    entity_type = ENTITY_CALENDAR_EVENT

    def build(self, ctx: ActionContext) -> dict[str, Any]:
        enrichment, event = ctx.enrichment, ctx.event
        start_time = first_non_empty(enrichment.start_time, parse_when(ctx.cfg("startTime", "start_time")), event.timestamp)
        duration = int(
            first_non_empty(
                enrichment.duration_minutes,
                ctx.cfg("durationMinutes", "duration_minutes"),
                ctx.defaults.event_duration_minutes,
            )
        )
        end_time = first_non_empty(
            enrichment.end_time,
            parse_when(ctx.cfg("endTime", "end_time")),
            start_time + timedelta(minutes=duration),
        )
        attendees = list(first_non_empty(enrichment.attendees, _as_list(ctx.cfg("attendees"))) or [])
        needs_meeting_link = bool(
            enrichment.needs_meeting_link
            or ctx.cfg("needsMeetingLink", "shouldCreateMeetInvite")
            or len(attendees) > 1
        )
        return {
            "title": first_non_empty(enrichment.title, ctx.cfg("title"), _content_title(event), ctx.defaults.event_title),
            "description": first_non_empty(enrichment.description, ctx.cfg("description"), event.content.strip()) or "",
            "start_time": start_time,
            "end_time": end_time,
            "duration_minutes": duration,
            "location": first_non_empty(enrichment.location, ctx.cfg("location")),
            "attendees": attendees,
            "needs_meeting_link": needs_meeting_link,
            **_origin_fields(ctx),
        }

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        fields = self.build(ctx)
        event_id = await ctx.store.create_calendar_event(fields)
        return ActionOutcome(
            summary=f"created calendar event {event_id}: {fields['title']}",
            entity_type=ENTITY_CALENDAR_EVENT,
            entity={"id": event_id, **fields},
            details={"needs_meeting_link": fields["needs_meeting_link"]},
        )

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        existing = await _load(ctx, ENTITY_CALENDAR_EVENT, entity_id)
        updates: dict[str, Any] = {
            "description": _update_note(existing.get("description"), ctx.event, ctx.enrichment),
        }
        location = first_non_empty(ctx.enrichment.location, ctx.cfg("location"))
        if location and not existing.get("location"):
            updates["location"] = location
        await ctx.store.update_entity(ENTITY_CALENDAR_EVENT, entity_id, updates)
        return ActionOutcome(
            summary=f"updated calendar event {entity_id}: {', '.join(sorted(updates))}",
            entity_type=ENTITY_CALENDAR_EVENT,
            entity={**existing, **updates, "id": entity_id},
        )


class BillHandler:
    entity_type = ENTITY_BILL

    def build(self, ctx: ActionContext) -> dict[str, Any]:
        enrichment, event = ctx.enrichment, ctx.event
        amount = first_non_empty(enrichment.amount, parse_amount(ctx.cfg("amount")))
        return {
            "vendor": first_non_empty(enrichment.vendor, ctx.cfg("vendor"), ctx.defaults.bill_vendor),
            # Missing amounts are recorded as 0 for the user to fill in.
            "amount": float(amount) if amount is not None else 0.0,
            "currency": str(first_non_empty(enrichment.currency, ctx.cfg("currency"), ctx.defaults.bill_currency)).upper(),
            "category": first_non_empty(enrichment.category, ctx.cfg("category"), ctx.defaults.bill_category),
            "due_date": first_non_empty(enrichment.due_date, parse_when(ctx.cfg("dueDate", "due_date"))),
            "description": first_non_empty(enrichment.description, ctx.cfg("description"), event.content.strip()) or "",
            "status": "pending",
            **_origin_fields(ctx),
        }

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        fields = self.build(ctx)
        bill_id = await ctx.store.create_bill(fields)
        return ActionOutcome(
            summary=f"created bill {bill_id}: {fields['vendor']} {fields['amount']:.2f} {fields['currency']}",
            entity_type=ENTITY_BILL,
            entity={"id": bill_id, **fields},
            details={"amount": fields["amount"], "currency": fields["currency"]},
        )

    async def follow_up(self, ctx: ActionContext, outcome: ActionOutcome) -> ActionOutcome:
        """Create the companion payment task once the bill is linked."""

        if not ctx.cfg("createPaymentTask", "create_payment_task") or outcome.entity is None:
            return outcome
        bill = outcome.entity
        task_title = first_non_empty(
            ctx.cfg("taskTitle", "task_title"),
            f"Pay bill: {bill['vendor']} - {bill['amount']:.2f} {bill['currency']}",
        )
        task_id = await ctx.store.create_task(
            {
                "title": task_title,
                "description": f"Payment task for bill {bill['id']}\n\n{bill['description']}".strip(),
                "priority": ctx.defaults.task_priority,
                "status": ctx.defaults.task_status,
                "due_date": bill["due_date"],
                "tags": ["bill"],
                "linked_bill_id": bill["id"],
                **_origin_fields(ctx),
            }
        )
        return replace(outcome, details={**outcome.details, "payment_task_id": task_id})

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        existing = await _load(ctx, ENTITY_BILL, entity_id)
        updates: dict[str, Any] = {
            "description": _update_note(existing.get("description"), ctx.event, ctx.enrichment),
        }
        amount = first_non_empty(ctx.enrichment.amount, parse_amount(ctx.cfg("amount")))
        if amount and not existing.get("amount"):
            updates["amount"] = float(amount)
        due_date = first_non_empty(ctx.enrichment.due_date, parse_when(ctx.cfg("dueDate", "due_date")))
        if due_date and not existing.get("due_date"):
            updates["due_date"] = due_date
        await ctx.store.update_entity(ENTITY_BILL, entity_id, updates)
        return ActionOutcome(
            summary=f"updated bill {entity_id}: {', '.join(sorted(updates))}",
            entity_type=ENTITY_BILL,
            entity={**existing, **updates, "id": entity_id},
        )


class NoteHandler:
    entity_type = ENTITY_NOTE

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        fields = {
            "title": first_non_empty(ctx.cfg("title"), interpolate(ctx.defaults.note_title, ctx.event)),
            "content": first_non_empty(ctx.cfg("content"), interpolate(ctx.defaults.note_content, ctx.event)),
            **_origin_fields(ctx),
        }
        note_id = await ctx.store.create_note(fields)
        return ActionOutcome(
            summary=f"created note {note_id}: {fields['title']}",
            entity_type=ENTITY_NOTE,
            entity={"id": note_id, **fields},
        )

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        existing = await _load(ctx, ENTITY_NOTE, entity_id)
        updates = {"content": _update_note(existing.get("content"), ctx.event, ctx.enrichment)}
        await ctx.store.update_entity(ENTITY_NOTE, entity_id, updates)
        return ActionOutcome(
            summary=f"updated note {entity_id}",
            entity_type=ENTITY_NOTE,
            entity={**existing, **updates, "id": entity_id},
        )


class SendMessageHandler:
    entity_type = None

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        text = first_non_empty(ctx.cfg("message", "text"), ctx.event.content.strip())
        target_chat = first_non_empty(ctx.cfg("targetChat", "target_chat"), ctx.event.chat_id)
        if not text:
            raise ValueError("send_message requires actionConfig.message")
        if ctx.messenger is None:
            return ActionOutcome(summary="send_message skipped: no messaging provider configured")
        sent_id = await ctx.messenger.send_text(ctx.event.instance_id, target_chat, text)
        return ActionOutcome(
            summary=f"sent message {sent_id} to {target_chat}",
            details={"message_id": sent_id, "chat_id": target_chat},
        )

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        return await self.create(ctx)


class AddLabelHandler:
    entity_type = None

    async def create(self, ctx: ActionContext) -> ActionOutcome:
        labels: Sequence[str] = _as_list(ctx.cfg("labels", "label"))
        if not labels:
            return ActionOutcome(summary="add_label skipped: no labels configured")
        if ctx.messenger is None:
            return ActionOutcome(summary="add_label skipped: no messaging provider configured")
        await ctx.messenger.add_labels(ctx.event.instance_id, ctx.event.chat_id, labels)
        return ActionOutcome(
            summary=f"labelled {ctx.event.chat_id}: {', '.join(labels)}",
            details={"labels": list(labels)},
        )

    async def update(self, ctx: ActionContext, entity_id: str) -> ActionOutcome:
        return await self.create(ctx)


def default_handlers() -> dict[str, ActionHandler]:
    """Return the handler table, one entry per ActionType."""

    return {
        ActionType.CREATE_TASK.value: TaskHandler(),
        ActionType.CREATE_CALENDAR_EVENT.value: CalendarEventHandler(),
        ActionType.CREATE_BILL.value: BillHandler(),
        ActionType.CREATE_NOTE.value: NoteHandler(),
        ActionType.SEND_MESSAGE.value: SendMessageHandler(),
        ActionType.ADD_LABEL.value: AddLabelHandler(),
    }
