"""Idempotent create-vs-update resolution (core domain).

The trigger link is claimed before the derived record exists. The store's
insert-if-absent write is the only linearizable step: of two concurrent
events for the same (message, rule) exactly one gets ``Create``, the other
gets ``UpdateExisting`` and never creates a duplicate.
"""

from __future__ import annotations

import logging

from core.models import (
    SINGLE_ENTITY_ACTIONS,
    Create,
    DerivedRecordLink,
    LinkType,
    Resolution,
    Rule,
    TriggerEvent,
    UpdateExisting,
)
from core.ports import EntityStorePort

LOGGER = logging.getLogger(__name__)


class IdempotentResolver:
    """Decides whether a rule attempt creates a record or updates one."""

    def __init__(self, store: EntityStorePort) -> None:
        self._store = store

    async def resolve(self, rule: Rule, event: TriggerEvent) -> Resolution:
        entity_type = SINGLE_ENTITY_ACTIONS.get(rule.action_type)
        if not rule.allow_update_existing or entity_type is None:
            return Create()

        # A reply to a message that already produced a record updates it.
        if event.quoted_message_id:
            quoted = await self._store.find_derived_link(event.quoted_message_id, rule.rule_id)
            if quoted is not None and quoted.derived_entity_id:
                LOGGER.info(
                    "Message %s replies to %s; updating %s %s",
                    event.message_id,
                    event.quoted_message_id,
                    quoted.entity_type,
                    quoted.derived_entity_id,
                )
                return UpdateExisting(link=quoted)

        outcome = await self._store.upsert_derived_link(
            DerivedRecordLink(
                rule_id=rule.rule_id,
                triggering_message_id=event.message_id,
                instance_id=event.instance_id,
                link_type=LinkType.TRIGGER,
                entity_type=entity_type,
            )
        )
        if outcome.created:
            return Create(claim=outcome.link)

        LOGGER.info(
            "Rule %s already handled message %s; updating instead of creating",
            rule.rule_id,
            event.message_id,
        )
        return UpdateExisting(link=outcome.link)
