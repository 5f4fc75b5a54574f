from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from core.config import EngineConfig, EnrichmentConfig
from core.errors import RuleStoreUnavailable
from core.models import (
    ENTITY_BILL,
    ENTITY_NOTE,
    ENTITY_TASK,
    DerivedRecordLink,
    ExecutionRecord,
    ExecutionStatus,
    LinkType,
    LinkUpsert,
    TriggerEvent,
    TriggerType,
)
from core.processor import TriggerProcessor
from core.rules_engine import build_rule


class FakeStore:
    """In-memory rule, owner and entity store."""

    def __init__(self, rules=(), owners: Optional[dict[str, str]] = None) -> None:
        self.rules = list(rules)
        self.owners = owners or {}
        self.entities: dict[str, dict[str, dict[str, Any]]] = {}
        self.links: list[DerivedRecordLink] = []
        self.records: list[ExecutionRecord] = []
        self.fail_task_writes = False
        self.fail_rule_fetch = False
        self.fail_record_writes = False
        self.fail_binds = False
        self.task_write_delay = 0.0
        self._ids = itertools.count(1)

    async def list_active_rules(self, trigger_type, instance_id=None):
        if self.fail_rule_fetch:
            raise ConnectionError("rule store is down")
        return [rule for rule in self.rules if rule.trigger_type is trigger_type]

    async def get_instance_owner(self, instance_id: str) -> Optional[str]:
        return self.owners.get(instance_id)

    async def _create(self, entity_type: str, fields) -> str:
        entity_id = f"{entity_type}-{next(self._ids)}"
        self.entities.setdefault(entity_type, {})[entity_id] = dict(fields)
        return entity_id

    async def create_task(self, fields) -> str:
        if self.task_write_delay:
            await asyncio.sleep(self.task_write_delay)
        if self.fail_task_writes:
            raise RuntimeError("tasks table is locked")
        return await self._create(ENTITY_TASK, fields)

    async def create_calendar_event(self, fields) -> str:
        return await self._create("calendar_event", fields)

    async def create_bill(self, fields) -> str:
        return await self._create(ENTITY_BILL, fields)

    async def create_note(self, fields) -> str:
        return await self._create(ENTITY_NOTE, fields)

    async def get_entity(self, entity_type: str, entity_id: str):
        entity = self.entities.get(entity_type, {}).get(entity_id)
        return dict(entity) if entity is not None else None

    async def update_entity(self, entity_type: str, entity_id: str, fields) -> None:
        self.entities[entity_type][entity_id].update(fields)

    async def upsert_derived_link(self, link: DerivedRecordLink) -> LinkUpsert:
        if link.link_type is not LinkType.UPDATE:
            existing = await self.find_derived_link(link.triggering_message_id, link.rule_id)
            if existing is not None:
                return LinkUpsert(created=False, link=existing)
        self.links.append(link)
        return LinkUpsert(created=True, link=link)

    async def bind_derived_link(self, link: DerivedRecordLink, entity_type: str, entity_id: str) -> None:
        if self.fail_binds:
            raise RuntimeError("links table is locked")
        self.links = [
            replace(item, entity_type=entity_type, derived_entity_id=entity_id) if item == link else item
            for item in self.links
        ]

    async def release_derived_link(self, link: DerivedRecordLink) -> None:
        self.links = [item for item in self.links if item != link]

    async def find_derived_link(self, triggering_message_id: str, rule_id: str):
        for link in self.links:
            if (
                link.link_type is not LinkType.UPDATE
                and link.triggering_message_id == triggering_message_id
                and link.rule_id == rule_id
            ):
                return link
        return None

    async def find_entity_by_origin(self, entity_type: str, rule_id: str, triggering_message_id: str):
        for entity_id, fields in self.entities.get(entity_type, {}).items():
            if fields.get("rule_id") == rule_id and fields.get("triggering_message_id") == triggering_message_id:
                return entity_id
        return None

    async def append_execution_record(self, record: ExecutionRecord) -> None:
        if self.fail_record_writes:
            raise RuntimeError("disk full")
        self.records.append(record)

    async def count_executions_since(self, rule_id: str, since: datetime) -> int:
        return sum(1 for record in self.records if record.rule_id == rule_id and record.executed_at >= since)

    async def last_execution_at(self, rule_id: str) -> Optional[datetime]:
        times = [record.executed_at for record in self.records if record.rule_id == rule_id]
        return max(times) if times else None

    def trigger_links(self, message_id: str) -> list[DerivedRecordLink]:
        return [
            link
            for link in self.links
            if link.triggering_message_id == message_id and link.link_type is LinkType.TRIGGER
        ]


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.published: list[tuple[str, dict]] = []
        self._fail = fail

    async def publish(self, entity_type: str, entity) -> None:
        if self._fail:
            raise RuntimeError("socket closed")
        self.published.append((entity_type, dict(entity)))


class FakeEnrichment:
    def __init__(self, result=None, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def enrich(self, text: str, domain_hint: str):
        self.calls.append((text, domain_hint))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


def _rule(rule_id: str = "r1", **overrides: Any):
    payload = {
        "id": rule_id,
        "name": f"rule {rule_id}",
        "trigger_type": "reaction",
        "conditions": {"allowed_emojis": ["✅"]},
        "action_type": "create_task",
        "performer_filter": "anyone",
        "created_by": "creator@s.whatsapp.net",
        "created_at": "2024-01-01T00:00:00Z",
    }
    payload.update(overrides)
    return build_rule(payload)


def _event(**overrides: Any) -> TriggerEvent:
    fields: dict[str, Any] = dict(
        trigger_type=TriggerType.REACTION,
        instance_id="main",
        chat_id="120363@g.us",
        message_id="m1",
        actor_id="owner@s.whatsapp.net",
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        content="Buy milk",
        emoji="✅",
    )
    fields.update(overrides)
    return TriggerEvent(**fields)


def _processor(store: FakeStore, **kwargs: Any) -> TriggerProcessor:
    return TriggerProcessor.build(rules=store, store=store, owners=store, **kwargs)


def test_reaction_creates_task_titled_from_content() -> None:
    store = FakeStore([_rule()])
    records = asyncio.run(_processor(store).handle(_event()))

    assert [record.status for record in records] == [ExecutionStatus.SUCCESS]
    tasks = list(store.entities[ENTITY_TASK].values())
    assert len(tasks) == 1
    assert tasks[0]["title"] == "Buy milk"
    assert tasks[0]["triggering_message_id"] == "m1"
    assert len(store.trigger_links("m1")) == 1
    assert store.records == records


def test_second_reaction_on_same_message_updates_existing_task() -> None:
    store = FakeStore([_rule(allow_update_existing=True)])
    processor = _processor(store)

    asyncio.run(processor.handle(_event()))
    records = asyncio.run(processor.handle(_event(content="")))

    assert records[0].status is ExecutionStatus.SUCCESS
    assert records[0].result_summary.startswith("updated task")
    assert len(store.entities[ENTITY_TASK]) == 1
    assert len(store.trigger_links("m1")) == 1
    assert [link.link_type for link in store.links] == [LinkType.TRIGGER, LinkType.UPDATE]
    task = next(iter(store.entities[ENTITY_TASK].values()))
    assert "Update: reaction ✅" in task["description"]


def test_without_update_flag_second_event_creates_and_keeps_one_trigger_link() -> None:
    store = FakeStore([_rule()])
    processor = _processor(store)

    asyncio.run(processor.handle(_event()))
    asyncio.run(processor.handle(_event()))

    assert len(store.entities[ENTITY_TASK]) == 2
    assert len(store.trigger_links("m1")) == 1


def test_unknown_action_type_is_recorded_as_failure() -> None:
    store = FakeStore([_rule(action_type="foo")])
    records = asyncio.run(_processor(store).handle(_event()))

    assert len(records) == 1
    assert records[0].status is ExecutionStatus.FAILURE
    assert records[0].error_message == "unknown action type: foo"
    assert store.entities == {}
    assert store.links == []


def test_inactive_rule_never_produces_a_record() -> None:
    store = FakeStore([_rule(is_active=False)])
    records = asyncio.run(_processor(store).handle(_event()))

    assert records == []
    assert store.records == []


def test_emoji_outside_allowed_set_does_not_dispatch() -> None:
    store = FakeStore([_rule()])
    records = asyncio.run(_processor(store).handle(_event(emoji="👍")))

    assert records == []
    assert store.entities == {}


def test_keyword_match_is_case_insensitive() -> None:
    rule = _rule(trigger_type="keyword", conditions={"keywords": ["factura"]}, action_type="create_note")
    store = FakeStore([rule])
    event = _event(trigger_type=TriggerType.KEYWORD, emoji=None, content="Please send the FACTURA")

    records = asyncio.run(_processor(store).handle(event))

    assert [record.status for record in records] == [ExecutionStatus.SUCCESS]
    note = next(iter(store.entities[ENTITY_NOTE].values()))
    assert note["content"] == "Please send the FACTURA"
    assert note["title"] == "Note from keyword"


def test_owner_only_dispatches_for_owner_and_skips_others() -> None:
    store = FakeStore([_rule(performer_filter="owner_only")], owners={"main": "owner@s.whatsapp.net"})
    processor = _processor(store)

    assert len(asyncio.run(processor.handle(_event()))) == 1
    assert asyncio.run(processor.handle(_event(message_id="m2", actor_id="stranger@s.whatsapp.net"))) == []
    assert len(store.records) == 1


def test_owner_only_accepts_rule_creator() -> None:
    store = FakeStore([_rule(performer_filter="owner_only")], owners={"main": "owner@s.whatsapp.net"})
    records = asyncio.run(_processor(store).handle(_event(actor_id="creator@s.whatsapp.net")))

    assert len(records) == 1


def test_owner_only_without_owner_mapping_fails_closed() -> None:
    store = FakeStore([_rule(performer_filter="owner_only")])
    records = asyncio.run(_processor(store).handle(_event(actor_id="creator@s.whatsapp.net")))

    assert records == []
    assert store.records == []


def test_allow_list_only_lets_listed_actors_through() -> None:
    store = FakeStore([_rule(performer_filter="allow_list", allowed_performer_ids=["A"])])
    processor = _processor(store)

    assert len(asyncio.run(processor.handle(_event(actor_id="A")))) == 1
    assert asyncio.run(processor.handle(_event(actor_id="B", message_id="m2"))) == []


def test_failing_rule_does_not_stop_the_next_one() -> None:
    store = FakeStore(
        [
            _rule("task-rule", priority=10),
            _rule("note-rule", priority=1, action_type="create_note"),
        ]
    )
    store.fail_task_writes = True

    records = asyncio.run(_processor(store).handle(_event()))

    assert [(record.rule_id, record.status) for record in records] == [
        ("task-rule", ExecutionStatus.FAILURE),
        ("note-rule", ExecutionStatus.SUCCESS),
    ]
    assert records[0].error_message == "tasks table is locked"
    assert len(store.entities[ENTITY_NOTE]) == 1


def test_records_follow_priority_then_newest_first() -> None:
    store = FakeStore(
        [
            _rule("old-low", action_type="create_note", created_at="2024-01-01T00:00:00Z"),
            _rule("high", action_type="create_note", priority=5),
            _rule("new-low", action_type="create_note", created_at="2024-03-01T00:00:00Z"),
        ]
    )
    records = asyncio.run(_processor(store).handle(_event()))

    assert [record.rule_id for record in records] == ["high", "new-low", "old-low"]


def test_failed_task_creation_releases_the_claim() -> None:
    store = FakeStore([_rule(allow_update_existing=True)])
    store.fail_task_writes = True
    processor = _processor(store)

    failed = asyncio.run(processor.handle(_event()))
    store.fail_task_writes = False
    retried = asyncio.run(processor.handle(_event()))

    assert failed[0].status is ExecutionStatus.FAILURE
    assert retried[0].status is ExecutionStatus.SUCCESS
    assert retried[0].result_summary.startswith("created task")
    assert len(store.trigger_links("m1")) == 1


def test_bill_without_enrichment_defaults_amount_and_uses_config_currency() -> None:
    rule = _rule(action_type="create_bill", action_config={"currency": "usd"})
    store = FakeStore([rule])
    records = asyncio.run(_processor(store, enrichment_service=FakeEnrichment(result=None)).handle(_event()))

    assert records[0].status is ExecutionStatus.SUCCESS
    bill = next(iter(store.entities[ENTITY_BILL].values()))
    assert bill["amount"] == 0.0
    assert bill["currency"] == "USD"
    assert bill["vendor"] == "Unknown Vendor"


def test_enrichment_timeout_falls_back_to_defaults() -> None:
    rule = _rule(action_type="create_bill")
    store = FakeStore([rule])
    config = EngineConfig(enrichment=EnrichmentConfig(timeout_seconds=0.01))
    slow = FakeEnrichment(result={"vendor": "CFE", "amount": 99, "confidence": 0.9}, delay=1.0)

    records = asyncio.run(_processor(store, enrichment_service=slow, config=config).handle(_event()))

    assert records[0].status is ExecutionStatus.SUCCESS
    bill = next(iter(store.entities[ENTITY_BILL].values()))
    assert bill["amount"] == 0.0
    assert bill["currency"] == "MXN"


def test_enrichment_fields_win_over_templates() -> None:
    rule = _rule(action_type="create_bill", action_config={"vendor": "{{sender}}", "currency": "USD"})
    store = FakeStore([rule])
    service = FakeEnrichment(result={"vendor": "CFE", "amount": "450.50", "confidence": 0.8})

    asyncio.run(_processor(store, enrichment_service=service).handle(_event(content="Recibo CFE $450.50")))

    bill = next(iter(store.entities[ENTITY_BILL].values()))
    assert (bill["vendor"], bill["amount"], bill["currency"]) == ("CFE", 450.5, "USD")
    assert service.calls == [("Recibo CFE $450.50", "bill")]


def test_rule_store_outage_aborts_the_event() -> None:
    store = FakeStore([_rule()])
    store.fail_rule_fetch = True

    with pytest.raises(RuleStoreUnavailable):
        asyncio.run(_processor(store).handle(_event()))


def test_notification_failure_does_not_fail_dispatch() -> None:
    store = FakeStore([_rule()])
    records = asyncio.run(_processor(store, notifier=FakeNotifier(fail=True)).handle(_event()))

    assert records[0].status is ExecutionStatus.SUCCESS


def test_created_records_are_published() -> None:
    store = FakeStore([_rule()])
    notifier = FakeNotifier()
    records = asyncio.run(_processor(store, notifier=notifier).handle(_event()))

    assert [entity_type for entity_type, _ in notifier.published] == [ENTITY_TASK]
    assert notifier.published[0][1]["id"] == records[0].details["entity_id"]


def test_execution_log_failure_is_swallowed() -> None:
    store = FakeStore([_rule()])
    store.fail_record_writes = True

    records = asyncio.run(_processor(store).handle(_event()))

    assert records[0].status is ExecutionStatus.SUCCESS
    assert store.records == []


def test_reply_to_linked_message_updates_that_record() -> None:
    rule = _rule(trigger_type="message", conditions=None, allow_update_existing=True)
    store = FakeStore([rule])
    processor = _processor(store)

    asyncio.run(processor.handle(_event(trigger_type=TriggerType.MESSAGE, emoji=None, content="Fix the sink")))
    records = asyncio.run(
        processor.handle(
            _event(
                trigger_type=TriggerType.MESSAGE,
                emoji=None,
                message_id="m2",
                quoted_message_id="m1",
                content="also the faucet",
            )
        )
    )

    assert records[0].result_summary.startswith("updated task")
    task = next(iter(store.entities[ENTITY_TASK].values()))
    assert len(store.entities[ENTITY_TASK]) == 1
    assert task["description"] == "Fix the sink\n\nUpdate: also the faucet"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_cooldown_uses_wall_clock_and_expires() -> None:
    clock = FixedClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
    store = FakeStore([_rule(cooldown_minutes=10)])
    processor = _processor(store, clock=clock)
    # Replayed events carry old timestamps; only the wall clock matters.
    yesterday = clock.now - timedelta(days=1)

    first = asyncio.run(processor.handle(_event(timestamp=yesterday)))
    clock.now += timedelta(minutes=5)
    during = asyncio.run(processor.handle(_event(message_id="m2", timestamp=yesterday + timedelta(hours=2))))
    clock.now += timedelta(minutes=6)
    after = asyncio.run(processor.handle(_event(message_id="m3", timestamp=yesterday)))

    assert len(first) == 1
    assert during == []
    assert [record.status for record in after] == [ExecutionStatus.SUCCESS]
    assert store.records[-1].executed_at == clock.now


def test_daily_limit_counts_runs_of_the_current_day() -> None:
    clock = FixedClock(datetime(2024, 5, 1, 23, 0, tzinfo=timezone.utc))
    store = FakeStore([_rule(max_executions_per_day=2, action_type="create_note")])
    processor = _processor(store, clock=clock)
    old = datetime(2024, 4, 1, tzinfo=timezone.utc)

    for index in range(3):
        asyncio.run(processor.handle(_event(message_id=f"m{index}", timestamp=old)))
    assert len(store.records) == 2

    clock.now += timedelta(hours=2)
    next_day = asyncio.run(processor.handle(_event(message_id="m9", timestamp=old)))

    assert len(next_day) == 1
    assert len(store.records) == 3


def test_failed_payment_task_keeps_the_bill_linked() -> None:
    rule = _rule(action_type="create_bill", action_config={"createPaymentTask": True}, allow_update_existing=True)
    store = FakeStore([rule])
    store.fail_task_writes = True
    processor = _processor(store)

    failed = asyncio.run(processor.handle(_event()))
    store.fail_task_writes = False
    again = asyncio.run(processor.handle(_event(content="ya pagado")))

    assert failed[0].status is ExecutionStatus.FAILURE
    assert again[0].status is ExecutionStatus.SUCCESS
    assert again[0].result_summary.startswith("updated bill")
    assert len(store.entities[ENTITY_BILL]) == 1
    (bill_id,) = store.entities[ENTITY_BILL]
    assert [link.derived_entity_id for link in store.trigger_links("m1")] == [bill_id]


def test_unbound_claim_is_repaired_by_the_next_event() -> None:
    store = FakeStore([_rule(allow_update_existing=True)])
    store.fail_binds = True
    processor = _processor(store, config=EngineConfig(pending_link_retry_seconds=0))

    failed = asyncio.run(processor.handle(_event()))
    store.fail_binds = False
    repaired = asyncio.run(processor.handle(_event(content="oat milk")))

    assert failed[0].status is ExecutionStatus.FAILURE
    assert repaired[0].status is ExecutionStatus.SUCCESS
    assert len(store.entities[ENTITY_TASK]) == 1
    (task_id,) = store.entities[ENTITY_TASK]
    assert [link.derived_entity_id for link in store.trigger_links("m1")] == [task_id]
    assert store.entities[ENTITY_TASK][task_id]["description"].endswith("Update: oat milk")


def test_update_waits_for_a_concurrent_create() -> None:
    store = FakeStore([_rule(allow_update_existing=True)])
    store.task_write_delay = 0.02
    config = EngineConfig(pending_link_retries=10, pending_link_retry_seconds=0.01)
    processor = _processor(store, config=config)

    async def scenario():
        return await asyncio.gather(
            processor.handle(_event()),
            processor.handle(_event(content="and bread")),
        )

    first, second = asyncio.run(scenario())

    assert first[0].result_summary.startswith("created task")
    assert second[0].status is ExecutionStatus.SUCCESS
    assert second[0].result_summary.startswith("updated task")
    task = next(iter(store.entities[ENTITY_TASK].values()))
    assert len(store.entities[ENTITY_TASK]) == 1
    assert task["description"].endswith("Update: and bread")
