"""Exceptions raised inside the core.

Only RuleStoreUnavailable is allowed to escape the orchestrator; everything
raised during dispatch is converted into a failure ExecutionRecord.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for rule engine errors."""


class RuleValidationError(EngineError):
    """A rule payload cannot be normalized into a valid Rule."""

    def __init__(self, rule_id: str, message: str) -> None:
        super().__init__(f"rule {rule_id}: {message}")
        self.rule_id = rule_id


class RuleStoreUnavailable(EngineError):
    """The rule store could not be queried; the whole event is aborted."""


class UnknownActionType(EngineError):
    """No handler is registered for the rule's action type."""

    def __init__(self, action_type: str) -> None:
        super().__init__(f"unknown action type: {action_type}")
        self.action_type = action_type


class DerivedRecordPending(EngineError):
    """An update targets a link whose derived record is still being created."""


class EnrichmentUnavailable(EngineError):
    """The text enrichment service failed or returned an unusable payload."""
