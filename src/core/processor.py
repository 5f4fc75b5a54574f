"""Core trigger processing pipeline.

This module is integration-agnostic. It only relies on ports for rules,
entities, enrichment and notifications. For each TriggerEvent the pipeline
enforces a strict order:
1) Fetch the active rules for the event's trigger type and instance
2) Sort by priority desc, createdAt desc
3) Per rule: permission filter, condition check, rate gate (silent skips)
4) Resolve create-vs-update, enrich, dispatch
5) Append the ExecutionRecord, in the same order the rules were evaluated

Each rule is attempted once; a failed rule never stops the ones after it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional

from core.conditions import matches
from core.config import EngineConfig
from core.dispatcher import ActionDispatcher, Clock, failure_record, utcnow
from core.enrichment import EnrichmentAdapter
from core.errors import RuleStoreUnavailable
from core.execution_log import ExecutionLogger
from core.models import ExecutionRecord, Rule, TriggerEvent
from core.permissions import PermissionFilter
from core.ports import (
    EnrichmentServicePort,
    EntityStorePort,
    MessagingPort,
    NotifierPort,
    OwnerLookupPort,
    RuleStorePort,
)
from core.resolver import IdempotentResolver
from core.rules_engine import select_rules

LOGGER = logging.getLogger(__name__)


class TriggerProcessor:
    """Orchestrates filtering, resolution, dispatch and execution logging."""

    def __init__(
        self,
        rules: RuleStorePort,
        store: EntityStorePort,
        permissions: PermissionFilter,
        resolver: IdempotentResolver,
        enricher: EnrichmentAdapter,
        dispatcher: ActionDispatcher,
        execution_log: ExecutionLogger,
        clock: Clock = utcnow,
    ) -> None:
        self._rules = rules
        self._store = store
        self._permissions = permissions
        self._resolver = resolver
        self._enricher = enricher
        self._dispatcher = dispatcher
        self._execution_log = execution_log
        # Execution times and rate gates both read this clock (UTC).
        self._clock = clock

    @classmethod
    def build(
        cls,
        rules: RuleStorePort,
        store: EntityStorePort,
        owners: OwnerLookupPort,
        enrichment_service: Optional[EnrichmentServicePort] = None,
        notifier: Optional[NotifierPort] = None,
        messenger: Optional[MessagingPort] = None,
        config: Optional[EngineConfig] = None,
        clock: Clock = utcnow,
    ) -> "TriggerProcessor":
        """Wire the default components around the given adapters."""

        config = config or EngineConfig()
        return cls(
            rules=rules,
            store=store,
            permissions=PermissionFilter(owners),
            resolver=IdempotentResolver(store),
            enricher=EnrichmentAdapter(enrichment_service, config.enrichment),
            dispatcher=ActionDispatcher(
                store,
                notifier=notifier,
                messenger=messenger,
                defaults=config.defaults,
                pending_retries=config.pending_link_retries,
                pending_retry_seconds=config.pending_link_retry_seconds,
                clock=clock,
            ),
            execution_log=ExecutionLogger(store),
            clock=clock,
        )

    async def handle(self, event: TriggerEvent) -> List[ExecutionRecord]:
        """Process one TriggerEvent through every applicable rule.

        Raises RuleStoreUnavailable when the rule set cannot be fetched; the
        caller decides whether to retry the whole event.
        """

        try:
            candidates = await self._rules.list_active_rules(event.trigger_type, event.instance_id)
        except RuleStoreUnavailable:
            raise
        except Exception as exc:
            raise RuleStoreUnavailable(f"could not load rules for {event.trigger_type.value}: {exc}") from exc

        # The store query is trusted for speed but the gate is re-applied here.
        rules = select_rules(candidates, event)
        LOGGER.debug("%s candidate rules for %s event %s", len(rules), event.trigger_type.value, event.message_id)

        records: List[ExecutionRecord] = []
        for rule in rules:
            record = await self._attempt(rule, event)
            if record is None:
                continue
            await self._execution_log.record(record)
            records.append(record)
        return records

    async def _attempt(self, rule: Rule, event: TriggerEvent) -> Optional[ExecutionRecord]:
        try:
            if not await self._permissions.allows(rule, event):
                LOGGER.debug("Rule %s skipped: actor %s not permitted", rule.rule_id, event.actor_id)
                return None
            if not matches(rule, event):
                LOGGER.debug("Rule %s skipped: conditions not met", rule.rule_id)
                return None
            if not await self._within_rate_limits(rule, self._clock()):
                return None
        except Exception:
            LOGGER.warning("Rule %s skipped: pre-dispatch check raised", rule.rule_id, exc_info=True)
            return None

        started = time.perf_counter()
        try:
            resolution = await self._resolver.resolve(rule, event)
        except Exception as exc:
            LOGGER.exception("Rule %s failed to resolve message %s", rule.rule_id, event.message_id)
            return failure_record(rule, event, exc, started, self._clock())

        enrichment = await self._enricher.enrich(rule.action_type, event)
        return await self._dispatcher.dispatch(rule, event, resolution, enrichment, started=started)

    async def _within_rate_limits(self, rule: Rule, now: datetime) -> bool:
        if rule.cooldown_minutes > 0:
            last = await self._store.last_execution_at(rule.rule_id)
            if last is not None and now < last + timedelta(minutes=rule.cooldown_minutes):
                LOGGER.info("Rule %s skipped: cooling down until %s", rule.rule_id, last + timedelta(minutes=rule.cooldown_minutes))
                return False

        if rule.max_executions_per_day > 0:
            day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            count = await self._store.count_executions_since(rule.rule_id, day_start)
            if count >= rule.max_executions_per_day:
                LOGGER.info("Rule %s skipped: daily limit of %s reached", rule.rule_id, rule.max_executions_per_day)
                return False
        return True
