"""Performer permission filter (core domain)."""

from __future__ import annotations

import logging

from core.models import PerformerFilter, Rule, TriggerEvent
from core.ports import OwnerLookupPort

LOGGER = logging.getLogger(__name__)


class PermissionFilter:
    """Decides whether the event's actor may fire a rule.

    Owner lookups fail closed: an unknown instance, a missing owner mapping or
    a lookup error all skip the rule without producing an ExecutionRecord.
    """

    def __init__(self, owners: OwnerLookupPort) -> None:
        self._owners = owners

    async def allows(self, rule: Rule, event: TriggerEvent) -> bool:
        if rule.performer_filter is PerformerFilter.ANYONE:
            return True

        if rule.performer_filter is PerformerFilter.ALLOW_LIST:
            return event.actor_id in rule.allowed_performer_ids

        if rule.performer_filter is PerformerFilter.OWNER_ONLY:
            try:
                owner_id = await self._owners.get_instance_owner(event.instance_id)
            except Exception:
                LOGGER.warning(
                    "Owner lookup failed for instance %s; skipping rule %s",
                    event.instance_id,
                    rule.rule_id,
                    exc_info=True,
                )
                return False
            if not owner_id:
                LOGGER.info(
                    "No owner mapping for instance %s; skipping rule %s", event.instance_id, rule.rule_id
                )
                return False
            # Instance owner and rule creator are both accepted as the owner.
            return bool(event.actor_id) and event.actor_id in {owner_id, rule.created_by}

        LOGGER.warning("Rule %s has unknown performer filter %r", rule.rule_id, rule.performer_filter)
        return False
