"""Rule normalization and ordering (core domain).

Rule payloads arrive from the store in more than one shape: camelCase or
snake_case keys, object-style conditions, or the legacy array of condition
rows. Everything is normalized here into a single Rule with one conditions
variant, and anything that does not fit is rejected before evaluation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Sequence

from core.errors import RuleValidationError
from core.models import (
    HashtagConditions,
    KeywordConditions,
    MessageConditions,
    PerformerFilter,
    ReactionConditions,
    Rule,
    RuleConditions,
    TriggerEvent,
    TriggerType,
)

LOGGER = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

# Performer filter names used by older rule rows.
_LEGACY_PERFORMER_FILTERS = {
    "both": PerformerFilter.ANYONE,
    "user_only": PerformerFilter.OWNER_ONLY,
    "me": PerformerFilter.OWNER_ONLY,
    "users": PerformerFilter.ALLOW_LIST,
}

# Condition keys accepted for each trigger type, preferred name first.
_CONDITION_KEYS = {
    TriggerType.REACTION: ("allowed_emojis", "allowedEmojis", "reactions"),
    TriggerType.KEYWORD: ("keywords",),
    TriggerType.HASHTAG: ("tags", "hashtags"),
}


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _parse_datetime(value: Any) -> datetime:
    if value is None:
        return _EPOCH
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _string_list(rule_id: str, key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise RuleValidationError(rule_id, f"conditions.{key} must be a list of strings")
    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise RuleValidationError(rule_id, f"conditions.{key} must be a list of strings")
        items.append(item.strip())
    return [item for item in items if item]


def _legacy_reaction_emojis(rule_id: str, rows: Sequence[Any]) -> List[str]:
    emojis: List[str] = []
    for row in rows:
        if not isinstance(row, Mapping):
            raise RuleValidationError(rule_id, "legacy condition rows must be objects")
        if row.get("condition_type") != "reaction_emoji" or row.get("field_name") != "emoji":
            raise RuleValidationError(
                rule_id, f"unsupported legacy condition {row.get('condition_type')!r}"
            )
        if row.get("operator", "equals") != "equals" or not isinstance(row.get("value"), str):
            raise RuleValidationError(rule_id, "legacy emoji conditions only support 'equals' on a string")
        emojis.append(row["value"])
    return emojis


def normalize_conditions(rule_id: str, trigger_type: TriggerType, raw: Any) -> RuleConditions:
    """Return the single conditions variant for ``trigger_type``.

    Plain message rules carry no conditions. Reaction rules may have an empty
    emoji set (any emoji). Keyword and hashtag rules must name at least one
    keyword/tag, otherwise the rule could never be told apart from a plain
    message rule.
    """

    if trigger_type is TriggerType.MESSAGE:
        if raw in (None, {}, []):
            return MessageConditions()
        if isinstance(raw, list):
            # Legacy rows for message rules only restated the event type.
            return MessageConditions()
        raise RuleValidationError(rule_id, "message triggers do not take conditions")

    if isinstance(raw, list):
        if trigger_type is not TriggerType.REACTION:
            raise RuleValidationError(rule_id, f"legacy array conditions are not valid for {trigger_type.value}")
        return ReactionConditions(allowed_emojis=frozenset(_legacy_reaction_emojis(rule_id, raw)))

    if not isinstance(raw, Mapping):
        raise RuleValidationError(rule_id, f"missing conditions for {trigger_type.value} trigger")

    keys = _CONDITION_KEYS[trigger_type]
    present = [key for key in keys if key in raw]
    if not present:
        raise RuleValidationError(
            rule_id, f"{trigger_type.value} trigger requires one of: {', '.join(keys)}"
        )
    values = _string_list(rule_id, present[0], raw[present[0]])

    if trigger_type is TriggerType.REACTION:
        return ReactionConditions(allowed_emojis=frozenset(values))
    if not values:
        raise RuleValidationError(rule_id, f"{trigger_type.value} trigger has an empty {present[0]} list")
    if trigger_type is TriggerType.KEYWORD:
        return KeywordConditions(keywords=tuple(dict.fromkeys(v.lower() for v in values)))
    return HashtagConditions(tags=tuple(dict.fromkeys(v.lstrip("#").lower() for v in values)))


def _normalize_performer_filter(rule_id: str, raw: Any) -> PerformerFilter:
    if raw is None:
        return PerformerFilter.ANYONE
    if isinstance(raw, PerformerFilter):
        return raw
    if isinstance(raw, Mapping):
        # Older rows stored {"allowedPerformers": ["user_only", ...]}.
        allowed = raw.get("allowedPerformers") or []
        if "both" in allowed or not allowed:
            return PerformerFilter.ANYONE
        raw = allowed[0]
    value = str(raw).strip().lower()
    if value in _LEGACY_PERFORMER_FILTERS:
        return _LEGACY_PERFORMER_FILTERS[value]
    try:
        return PerformerFilter(value)
    except ValueError:
        raise RuleValidationError(rule_id, f"unknown performer filter {raw!r}") from None


def build_rule(payload: Mapping[str, Any]) -> Rule:
    """Normalize one rule payload, raising RuleValidationError if invalid."""

    rule_id = str(_pick(payload, "rule_id", "ruleId", "id", default="") or "")
    if not rule_id:
        raise RuleValidationError("<missing>", "rule id is required")

    raw_trigger = _pick(payload, "trigger_type", "triggerType")
    try:
        trigger_type = TriggerType(raw_trigger)
    except ValueError:
        raise RuleValidationError(rule_id, f"unknown trigger type {raw_trigger!r}") from None

    conditions = normalize_conditions(
        rule_id,
        trigger_type,
        _pick(payload, "conditions", "trigger_conditions", "triggerConditions"),
    )

    action_type = _pick(payload, "action_type", "actionType")
    if not action_type:
        raise RuleValidationError(rule_id, "action type is required")

    action_config = _pick(payload, "action_config", "actionConfig", default={})
    if not isinstance(action_config, Mapping):
        raise RuleValidationError(rule_id, "action config must be an object")

    performer_filter = _normalize_performer_filter(
        rule_id, _pick(payload, "performer_filter", "performerFilter", "performer_filters")
    )
    allowed_ids = _pick(payload, "allowed_performer_ids", "allowedPerformerIds", "allowed_user_ids", default=[])

    created_at = _parse_datetime(_pick(payload, "created_at", "createdAt"))
    return Rule(
        rule_id=rule_id,
        name=str(_pick(payload, "name", "rule_name", "ruleName", default=rule_id)),
        trigger_type=trigger_type,
        conditions=conditions,
        action_type=str(getattr(action_type, "value", action_type)),
        action_config=dict(action_config),
        created_by=str(_pick(payload, "created_by", "createdBy", default="")),
        created_at=created_at,
        updated_at=_parse_datetime(_pick(payload, "updated_at", "updatedAt", default=created_at)),
        is_active=bool(_pick(payload, "is_active", "isActive", "enabled", default=True)),
        priority=int(_pick(payload, "priority", default=0)),
        scope_instance_id=_pick(payload, "scope_instance_id", "scopeInstanceId", "whatsapp_instance_id"),
        performer_filter=performer_filter,
        allowed_performer_ids=frozenset(str(item) for item in allowed_ids),
        allow_update_existing=bool(_pick(payload, "allow_update_existing", "allowUpdateExisting", default=False)),
        cooldown_minutes=int(_pick(payload, "cooldown_minutes", "cooldownMinutes", default=0)),
        max_executions_per_day=int(_pick(payload, "max_executions_per_day", "maxExecutionsPerDay", default=0)),
    )


def build_rules(payloads: Iterable[Mapping[str, Any]]) -> List[Rule]:
    """Normalize many payloads, dropping (and logging) the invalid ones."""

    rules: List[Rule] = []
    for payload in payloads:
        try:
            rules.append(build_rule(payload))
        except (RuleValidationError, TypeError, ValueError) as exc:
            LOGGER.error("Rejected rule at load time: %s", exc)
    return rules


def applies_to(rule: Rule, event: TriggerEvent) -> bool:
    """Return True when the rule is active, of the event's type and in scope."""

    if not rule.is_active or rule.trigger_type is not event.trigger_type:
        return False
    return rule.scope_instance_id is None or rule.scope_instance_id == event.instance_id


def order_rules(rules: Iterable[Rule]) -> List[Rule]:
    """Sort by priority desc, then most recently created first."""

    return sorted(rules, key=lambda rule: (rule.priority, rule.created_at), reverse=True)


def select_rules(rules: Iterable[Rule], event: TriggerEvent) -> List[Rule]:
    """Filter candidate rules for ``event`` and return them in evaluation order."""

    return order_rules(rule for rule in rules if applies_to(rule, event))
