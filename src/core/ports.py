"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, enrichment, notification and
messaging adapters so that the core can be reused with different backends.
Every call is awaited: none of these collaborators may be assumed to be
synchronous or in-memory.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from core.models import (
    DerivedRecordLink,
    EnrichmentResult,
    ExecutionRecord,
    LinkUpsert,
    Rule,
    TriggerEvent,
    TriggerType,
)


class RuleStorePort(Protocol):
    """Rule queries required by the orchestrator."""

    async def list_active_rules(
        self, trigger_type: TriggerType, instance_id: Optional[str] = None
    ) -> Sequence[Rule]:
        ...


class OwnerLookupPort(Protocol):
    """Resolves the owner actor of a communication channel instance."""

    async def get_instance_owner(self, instance_id: str) -> Optional[str]:
        ...


class EntityStorePort(Protocol):
    """Derived-record, link and execution-history operations."""

    async def create_task(self, fields: Mapping[str, Any]) -> str:
        ...

    async def create_calendar_event(self, fields: Mapping[str, Any]) -> str:
        ...

    async def create_bill(self, fields: Mapping[str, Any]) -> str:
        ...

    async def create_note(self, fields: Mapping[str, Any]) -> str:
        ...

    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        ...

    async def update_entity(self, entity_type: str, entity_id: str, fields: Mapping[str, Any]) -> None:
        ...

    async def upsert_derived_link(self, link: DerivedRecordLink) -> LinkUpsert:
        """Insert the link unless a non-update link exists for the same
        (triggering_message_id, rule_id); return the stored link either way.
        Must be atomic."""
        ...

    async def bind_derived_link(self, link: DerivedRecordLink, entity_type: str, entity_id: str) -> None:
        ...

    async def release_derived_link(self, link: DerivedRecordLink) -> None:
        ...

    async def find_derived_link(self, triggering_message_id: str, rule_id: str) -> Optional[DerivedRecordLink]:
        ...

    async def find_entity_by_origin(
        self, entity_type: str, rule_id: str, triggering_message_id: str
    ) -> Optional[str]:
        """Return the id of the record a rule derived from a message, if any."""
        ...

    async def append_execution_record(self, record: ExecutionRecord) -> None:
        ...

    async def count_executions_since(self, rule_id: str, since: datetime) -> int:
        ...

    async def last_execution_at(self, rule_id: str) -> Optional[datetime]:
        ...


class EnrichmentServicePort(Protocol):
    """External text enrichment service."""

    async def enrich(self, text: str, domain_hint: str) -> Optional[EnrichmentResult]:
        ...


class NotifierPort(Protocol):
    """Live-client fan-out for created/updated entities."""

    async def publish(self, entity_type: str, entity: Mapping[str, Any]) -> None:
        ...


class MessagingPort(Protocol):
    """Messaging provider used as a leaf side effect of an action."""

    async def send_text(self, instance_id: str, chat_id: str, text: str) -> str:
        ...

    async def add_labels(self, instance_id: str, chat_id: str, labels: Sequence[str]) -> None:
        ...


class MessageLogPort(Protocol):
    """Remembers message text so reactions can be matched against it."""

    async def save_message(self, event: TriggerEvent) -> None:
        ...

    async def get_message(self, instance_id: str, message_id: str) -> Optional[dict[str, Any]]:
        ...
