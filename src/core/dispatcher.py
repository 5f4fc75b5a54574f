"""Action dispatch (core domain).

The dispatcher is the failure boundary for a single rule attempt: whatever a
handler, the entity store or a provider raises is turned into a failure
ExecutionRecord here and never reaches the orchestrator.

A claimed trigger link is released only when the primary record was never
written. Once the record exists the link stays, bound or not, so a later
event updates that record instead of creating a second one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from core.actions import ActionContext, ActionHandler, ActionOutcome, default_handlers
from core.config import DispatchDefaults
from core.enrichment import render_config
from core.errors import DerivedRecordPending, EngineError, UnknownActionType
from core.models import (
    Create,
    DerivedRecordLink,
    EnrichmentResult,
    ExecutionRecord,
    ExecutionStatus,
    LinkType,
    Resolution,
    Rule,
    TriggerEvent,
    UpdateExisting,
)
from core.ports import EntityStorePort, MessagingPort, NotifierPort

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def failure_record(
    rule: Rule,
    event: TriggerEvent,
    error: BaseException,
    started: float,
    executed_at: Optional[datetime] = None,
) -> ExecutionRecord:
    """Build the failure ExecutionRecord for an attempt that raised ``error``."""

    message = str(error) or error.__class__.__name__
    return ExecutionRecord(
        rule_id=rule.rule_id,
        trigger_snapshot=event,
        status=ExecutionStatus.FAILURE,
        result_summary=f"{rule.action_type} failed",
        error_message=message,
        duration_ms=_elapsed_ms(started),
        executed_at=executed_at or utcnow(),
    )


class ActionDispatcher:
    """Routes a resolved rule attempt to its action handler."""

    def __init__(
        self,
        store: EntityStorePort,
        notifier: Optional[NotifierPort] = None,
        messenger: Optional[MessagingPort] = None,
        defaults: Optional[DispatchDefaults] = None,
        handlers: Optional[Mapping[str, ActionHandler]] = None,
        pending_retries: int = 3,
        pending_retry_seconds: float = 0.05,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._messenger = messenger
        self._defaults = defaults or DispatchDefaults()
        self._handlers = dict(handlers) if handlers is not None else default_handlers()
        self._pending_retries = pending_retries
        self._pending_retry_seconds = pending_retry_seconds
        self._clock = clock

    async def dispatch(
        self,
        rule: Rule,
        event: TriggerEvent,
        resolution: Resolution,
        enrichment: EnrichmentResult,
        started: Optional[float] = None,
    ) -> ExecutionRecord:
        """Run the rule's action and return the ExecutionRecord; never raises."""

        started = time.perf_counter() if started is None else started
        try:
            outcome = await self._run(rule, event, resolution, enrichment)
        except EngineError as exc:
            LOGGER.error("Rule %s (%s) failed: %s", rule.name, rule.rule_id, exc)
            return failure_record(rule, event, exc, started, self._clock())
        except Exception as exc:
            LOGGER.exception("Rule %s (%s) raised during dispatch", rule.name, rule.rule_id)
            return failure_record(rule, event, exc, started, self._clock())

        await self._publish(outcome)
        return ExecutionRecord(
            rule_id=rule.rule_id,
            trigger_snapshot=event,
            status=ExecutionStatus.SUCCESS,
            result_summary=outcome.summary,
            duration_ms=_elapsed_ms(started),
            executed_at=self._clock(),
            details={
                **outcome.details,
                **({"entity_type": outcome.entity_type, "entity_id": outcome.entity_id} if outcome.entity else {}),
            },
        )

    async def _run(
        self,
        rule: Rule,
        event: TriggerEvent,
        resolution: Resolution,
        enrichment: EnrichmentResult,
    ) -> ActionOutcome:
        handler = self._handlers.get(rule.action_type)
        if handler is None:
            raise UnknownActionType(rule.action_type)

        ctx = ActionContext(
            rule=rule,
            event=event,
            enrichment=enrichment,
            config=render_config(rule.action_config, event),
            defaults=self._defaults,
            store=self._store,
            messenger=self._messenger,
        )

        if isinstance(resolution, UpdateExisting) and handler.entity_type is not None:
            return await self._update(ctx, handler, resolution.link)
        claim = resolution.claim if isinstance(resolution, Create) else None
        return await self._create(ctx, handler, claim)

    async def _create(
        self,
        ctx: ActionContext,
        handler: ActionHandler,
        claim: Optional[DerivedRecordLink],
    ) -> ActionOutcome:
        try:
            outcome = await handler.create(ctx)
        except Exception:
            if claim is not None:
                # Nothing was written; free the claim so a later event can create.
                await self._store.release_derived_link(claim)
            raise

        if outcome.entity_type is not None and outcome.entity_id is not None:
            await self._link(ctx, outcome, claim)

        follow_up = getattr(handler, "follow_up", None)
        if follow_up is not None:
            outcome = await follow_up(ctx, outcome)
        return outcome

    async def _link(self, ctx: ActionContext, outcome: ActionOutcome, claim: Optional[DerivedRecordLink]) -> None:
        if claim is not None:
            try:
                await self._store.bind_derived_link(claim, outcome.entity_type, outcome.entity_id)
            except Exception:
                LOGGER.error(
                    "Created %s %s but could not link it to message %s; the next event will repair the link",
                    outcome.entity_type,
                    outcome.entity_id,
                    ctx.event.message_id,
                )
                raise
            return

        result = await self._store.upsert_derived_link(
            DerivedRecordLink(
                rule_id=ctx.rule.rule_id,
                triggering_message_id=ctx.event.message_id,
                instance_id=ctx.event.instance_id,
                link_type=LinkType.TRIGGER,
                entity_type=outcome.entity_type,
                derived_entity_id=outcome.entity_id,
            )
        )
        if not result.created:
            LOGGER.info(
                "Message %s already linked to %s %s for rule %s",
                ctx.event.message_id,
                result.link.entity_type,
                result.link.derived_entity_id,
                ctx.rule.rule_id,
            )

    async def _settle(self, handler: ActionHandler, link: DerivedRecordLink) -> DerivedRecordLink:
        """Wait briefly for a pending link to be bound, then try to repair it."""

        for _ in range(self._pending_retries):
            await asyncio.sleep(self._pending_retry_seconds)
            current = await self._store.find_derived_link(link.triggering_message_id, link.rule_id)
            if current is None:
                break
            if current.derived_entity_id:
                return current

        # The claimant may have written the record and then failed to bind it.
        entity_type = link.entity_type or handler.entity_type
        entity_id = await self._store.find_entity_by_origin(entity_type, link.rule_id, link.triggering_message_id)
        if entity_id is None:
            raise DerivedRecordPending(
                f"derived record for message {link.triggering_message_id} is still being created"
            )
        LOGGER.warning(
            "Linking message %s to unlinked %s %s for rule %s",
            link.triggering_message_id,
            entity_type,
            entity_id,
            link.rule_id,
        )
        await self._store.bind_derived_link(link, entity_type, entity_id)
        return replace(link, entity_type=entity_type, derived_entity_id=entity_id)

    async def _update(
        self,
        ctx: ActionContext,
        handler: ActionHandler,
        link: DerivedRecordLink,
    ) -> ActionOutcome:
        if not link.derived_entity_id:
            link = await self._settle(handler, link)
        outcome = await handler.update(ctx, link.derived_entity_id)
        await self._store.upsert_derived_link(
            DerivedRecordLink(
                rule_id=ctx.rule.rule_id,
                triggering_message_id=ctx.event.message_id,
                instance_id=ctx.event.instance_id,
                link_type=LinkType.UPDATE,
                entity_type=link.entity_type,
                derived_entity_id=link.derived_entity_id,
            )
        )
        return outcome

    async def _publish(self, outcome: ActionOutcome) -> None:
        if self._notifier is None or outcome.entity_type is None or outcome.entity is None:
            return
        try:
            await self._notifier.publish(outcome.entity_type, outcome.entity)
        except Exception:
            # Fan-out is fire-and-forget; the record is already persisted.
            LOGGER.warning("Notification publish failed for %s %s", outcome.entity_type, outcome.entity_id, exc_info=True)
