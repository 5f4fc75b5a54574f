"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class EnrichmentConfig:
    """Text enrichment settings for the enrichment adapter."""

    timeout_seconds: float = 5.0
    # Results under this confidence are discarded and templates take over.
    min_confidence: float = 0.5


@dataclass(frozen=True)
class DispatchDefaults:
    """Hard-coded fallbacks used when enrichment and actionConfig are empty."""

    task_title: str = "New Task"
    task_priority: str = "medium"
    task_status: str = "todo"
    event_title: str = "New Event"
    event_duration_minutes: int = 60
    bill_vendor: str = "Unknown Vendor"
    bill_currency: str = "MXN"
    bill_category: str = "general"
    note_title: str = "Note from {{triggerType}}"
    note_content: str = "{{content}}"


@dataclass(frozen=True)
class EngineConfig:
    """Top-level settings consumed by the rule engine."""

    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    defaults: DispatchDefaults = field(default_factory=DispatchDefaults)
    # How long an update waits for a concurrent create to bind its link.
    pending_link_retries: int = 3
    pending_link_retry_seconds: float = 0.05
