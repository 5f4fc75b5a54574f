from __future__ import annotations

from datetime import datetime, timezone

import pytest

from core.errors import RuleValidationError
from core.models import (
    HashtagConditions,
    KeywordConditions,
    MessageConditions,
    PerformerFilter,
    ReactionConditions,
    TriggerEvent,
    TriggerType,
)
from core.rules_engine import build_rule, build_rules, select_rules


def _payload(**overrides):
    payload = {
        "id": "r1",
        "name": "Pin to task",
        "trigger_type": "reaction",
        "conditions": {"allowed_emojis": ["📌"]},
        "action_type": "create_task",
    }
    payload.update(overrides)
    return payload


def _event(instance_id: str = "main") -> TriggerEvent:
    return TriggerEvent(
        trigger_type=TriggerType.REACTION,
        instance_id=instance_id,
        chat_id="c1",
        message_id="m1",
        actor_id="a1",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        emoji="📌",
    )


def test_build_rule_accepts_camel_case_payload() -> None:
    rule = build_rule(
        {
            "ruleId": "r9",
            "ruleName": "Meetings",
            "triggerType": "keyword",
            "triggerConditions": {"keywords": ["Meeting", "  ", "REUNIÓN"]},
            "actionType": "create_calendar_event",
            "actionConfig": {"title": "{{content}}"},
            "isActive": True,
            "allowUpdateExisting": True,
            "createdAt": "2024-02-01T10:00:00Z",
        }
    )

    assert rule.rule_id == "r9"
    assert rule.name == "Meetings"
    assert rule.conditions == KeywordConditions(keywords=("meeting", "reunión"))
    assert rule.allow_update_existing is True
    assert rule.created_at == datetime(2024, 2, 1, 10, tzinfo=timezone.utc)
    assert rule.updated_at == rule.created_at


def test_legacy_reaction_rows_become_reaction_conditions() -> None:
    rule = build_rule(
        _payload(
            conditions=[
                {"condition_type": "reaction_emoji", "field_name": "emoji", "operator": "equals", "value": "✅"},
                {"condition_type": "reaction_emoji", "field_name": "emoji", "operator": "equals", "value": "📌"},
            ]
        )
    )

    assert rule.conditions == ReactionConditions(allowed_emojis=frozenset({"✅", "📌"}))


def test_legacy_rows_with_other_operators_are_rejected() -> None:
    with pytest.raises(RuleValidationError, match="only support 'equals'"):
        build_rule(
            _payload(
                conditions=[
                    {"condition_type": "reaction_emoji", "field_name": "emoji", "operator": "contains", "value": "✅"}
                ]
            )
        )


def test_single_emoji_string_is_a_one_item_list() -> None:
    rule = build_rule(_payload(conditions={"allowedEmojis": "✅"}))

    assert rule.conditions == ReactionConditions(allowed_emojis=frozenset({"✅"}))


def test_reaction_rule_may_have_empty_emoji_set() -> None:
    rule = build_rule(_payload(conditions={"reactions": []}))

    assert rule.conditions == ReactionConditions(allowed_emojis=frozenset())


def test_hashtags_are_normalized_without_hash() -> None:
    rule = build_rule(_payload(trigger_type="hashtag", conditions={"hashtags": ["#Factura", "recibo*"]}))

    assert rule.conditions == HashtagConditions(tags=("factura", "recibo*"))


def test_message_rule_ignores_empty_conditions() -> None:
    rule = build_rule(_payload(trigger_type="message", conditions={}))

    assert isinstance(rule.conditions, MessageConditions)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"trigger_type": "keyword", "conditions": {"keywords": []}}, "empty keywords"),
        ({"trigger_type": "hashtag", "conditions": {"allowed_emojis": ["✅"]}}, "requires one of"),
        ({"trigger_type": "sticker"}, "unknown trigger type"),
        ({"trigger_type": "message", "conditions": {"keywords": ["x"]}}, "do not take conditions"),
        ({"action_type": ""}, "action type is required"),
        ({"performer_filter": "admins"}, "unknown performer filter"),
    ],
)
def test_invalid_payloads_are_rejected(overrides, message) -> None:
    with pytest.raises(RuleValidationError, match=message):
        build_rule(_payload(**overrides))


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, PerformerFilter.ANYONE),
        ("both", PerformerFilter.ANYONE),
        ("user_only", PerformerFilter.OWNER_ONLY),
        ("me", PerformerFilter.OWNER_ONLY),
        ("users", PerformerFilter.ALLOW_LIST),
        ("owner_only", PerformerFilter.OWNER_ONLY),
        ({"allowedPerformers": ["user_only"]}, PerformerFilter.OWNER_ONLY),
        ({"allowedPerformers": ["both", "user_only"]}, PerformerFilter.ANYONE),
    ],
)
def test_legacy_performer_filters_are_mapped(raw, expected) -> None:
    assert build_rule(_payload(performer_filter=raw)).performer_filter is expected


def test_build_rules_drops_invalid_payloads(caplog) -> None:
    rules = build_rules([_payload(), _payload(id="bad", trigger_type="nope")])

    assert [rule.rule_id for rule in rules] == ["r1"]
    assert "rule bad: unknown trigger type" in caplog.text


def test_select_rules_applies_scope_and_order() -> None:
    rules = [
        build_rule(_payload(id="other-instance", scope_instance_id="backup", priority=9)),
        build_rule(_payload(id="scoped", scope_instance_id="main", priority=1)),
        build_rule(_payload(id="unscoped", priority=3)),
        build_rule(_payload(id="inactive", priority=10, is_active=False)),
        build_rule(_payload(id="keyword", trigger_type="keyword", conditions={"keywords": ["x"]})),
    ]

    assert [rule.rule_id for rule in select_rules(rules, _event())] == ["unscoped", "scoped"]
