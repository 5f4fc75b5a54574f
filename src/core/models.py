"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Mapping, Optional, Union


class TriggerType(str, Enum):
    MESSAGE = "message"
    KEYWORD = "keyword"
    HASHTAG = "hashtag"
    REACTION = "reaction"


class PerformerFilter(str, Enum):
    ANYONE = "anyone"
    OWNER_ONLY = "owner_only"
    ALLOW_LIST = "allow_list"


class ActionType(str, Enum):
    CREATE_TASK = "create_task"
    CREATE_CALENDAR_EVENT = "create_calendar_event"
    CREATE_BILL = "create_bill"
    CREATE_NOTE = "create_note"
    SEND_MESSAGE = "send_message"
    ADD_LABEL = "add_label"


class LinkType(str, Enum):
    TRIGGER = "trigger"
    UPDATE = "update"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# Entity types handed to the entity store and the notification fan-out.
ENTITY_TASK = "task"
ENTITY_CALENDAR_EVENT = "calendar_event"
ENTITY_BILL = "bill"
ENTITY_NOTE = "note"

# Actions that produce exactly one derived record per triggering message.
SINGLE_ENTITY_ACTIONS: Mapping[str, str] = {
    ActionType.CREATE_TASK.value: ENTITY_TASK,
    ActionType.CREATE_CALENDAR_EVENT.value: ENTITY_CALENDAR_EVENT,
    ActionType.CREATE_BILL.value: ENTITY_BILL,
    ActionType.CREATE_NOTE.value: ENTITY_NOTE,
}


@dataclass(frozen=True)
class ReactionConditions:
    """Emojis that fire a reaction rule; empty means any emoji."""

    trigger_type: ClassVar[TriggerType] = TriggerType.REACTION

    allowed_emojis: frozenset[str] = frozenset()


@dataclass(frozen=True)
class KeywordConditions:
    """Lowercased keywords matched as substrings of the message content."""

    trigger_type: ClassVar[TriggerType] = TriggerType.KEYWORD

    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class HashtagConditions:
    """Lowercased tags (without '#') matched against the event's hashtags."""

    trigger_type: ClassVar[TriggerType] = TriggerType.HASHTAG

    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class MessageConditions:
    """Plain message triggers carry no condition data."""

    trigger_type: ClassVar[TriggerType] = TriggerType.MESSAGE


RuleConditions = Union[ReactionConditions, KeywordConditions, HashtagConditions, MessageConditions]


@dataclass(frozen=True)
class Rule:
    """Normalized automation rule used by the engine."""

    rule_id: str
    name: str
    trigger_type: TriggerType
    conditions: RuleConditions
    # Kept as a raw string so unregistered action types surface at dispatch.
    action_type: str
    action_config: Mapping[str, Any]
    created_by: str
    created_at: datetime
    updated_at: datetime
    is_active: bool = True
    priority: int = 0
    scope_instance_id: Optional[str] = None
    performer_filter: PerformerFilter = PerformerFilter.ANYONE
    allowed_performer_ids: frozenset[str] = frozenset()
    allow_update_existing: bool = False
    cooldown_minutes: int = 0
    max_executions_per_day: int = 0


@dataclass(frozen=True)
class TriggerEvent:
    """One incoming occurrence, as produced by event ingestion."""

    trigger_type: TriggerType
    instance_id: str
    chat_id: str
    message_id: str
    actor_id: str
    timestamp: datetime
    content: str = ""
    from_me: bool = False
    emoji: Optional[str] = None
    quoted_message_id: Optional[str] = None
    original_actor_id: Optional[str] = None
    hashtags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class EnrichmentResult:
    """Best-effort structured fields extracted from free text."""

    # Task fields
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    tags: tuple[str, ...] = ()
    # Calendar fields
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    location: Optional[str] = None
    attendees: tuple[str, ...] = ()
    needs_meeting_link: Optional[bool] = None
    # Bill fields
    vendor: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    confidence: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self == EMPTY_ENRICHMENT


EMPTY_ENRICHMENT = EnrichmentResult()


@dataclass(frozen=True)
class DerivedRecordLink:
    """Ties a derived record back to the message that triggered it."""

    rule_id: str
    triggering_message_id: str
    instance_id: str
    link_type: LinkType = LinkType.TRIGGER
    entity_type: Optional[str] = None
    # None while the record is still being created by the link's claimant.
    derived_entity_id: Optional[str] = None


@dataclass(frozen=True)
class LinkUpsert:
    """Outcome of the atomic insert-if-absent link write."""

    created: bool
    link: DerivedRecordLink


@dataclass(frozen=True)
class Create:
    """Resolution: create a new derived record.

    ``claim`` is set when the trigger link was already inserted on behalf of
    this attempt and only needs the new entity id bound to it.
    """

    claim: Optional[DerivedRecordLink] = None


@dataclass(frozen=True)
class UpdateExisting:
    """Resolution: merge into the record referenced by ``link``."""

    link: DerivedRecordLink


Resolution = Union[Create, UpdateExisting]


@dataclass(frozen=True)
class ExecutionRecord:
    """Append-only audit of one dispatch attempt."""

    rule_id: str
    trigger_snapshot: TriggerEvent
    status: ExecutionStatus
    result_summary: str
    duration_ms: int
    executed_at: datetime
    error_message: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
