"""Append-only execution history writer (core domain)."""

from __future__ import annotations

import logging

from core.models import ExecutionRecord, ExecutionStatus
from core.ports import EntityStorePort

LOGGER = logging.getLogger(__name__)


class ExecutionLogger:
    """Writes ExecutionRecords; a failed write is logged, never raised."""

    def __init__(self, store: EntityStorePort) -> None:
        self._store = store

    async def record(self, record: ExecutionRecord) -> bool:
        try:
            await self._store.append_execution_record(record)
        except Exception:
            LOGGER.exception(
                "Failed to write execution record for rule %s (message %s)",
                record.rule_id,
                record.trigger_snapshot.message_id,
            )
            return False

        if record.status is ExecutionStatus.SUCCESS:
            LOGGER.info("Rule %s succeeded in %sms: %s", record.rule_id, record.duration_ms, record.result_summary)
        else:
            LOGGER.info("Rule %s failed in %sms: %s", record.rule_id, record.duration_ms, record.error_message)
        return True
