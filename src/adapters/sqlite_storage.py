"""SQLite storage adapter.

Implements the rule store, owner lookup, entity store and message log ports
using a simple SQLite database. Each call opens its own connection and runs
in a worker thread so the event loop is never blocked on disk.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from core.models import (
    ENTITY_BILL,
    ENTITY_CALENDAR_EVENT,
    ENTITY_NOTE,
    ENTITY_TASK,
    DerivedRecordLink,
    ExecutionRecord,
    LinkType,
    LinkUpsert,
    Rule,
    TriggerEvent,
    TriggerType,
)
from core.rules_engine import build_rule, build_rules

_ORIGIN_COLUMNS = (
    "rule_id",
    "instance_id",
    "related_chat_id",
    "triggering_message_id",
    "original_actor_id",
    "created_by",
)

# entity_type -> (table, writable columns)
_ENTITY_TABLES: dict[str, tuple[str, tuple[str, ...]]] = {
    ENTITY_TASK: (
        "tasks",
        ("title", "description", "priority", "status", "due_date", "tags", "linked_bill_id") + _ORIGIN_COLUMNS,
    ),
    ENTITY_CALENDAR_EVENT: (
        "calendar_events",
        (
            "title",
            "description",
            "start_time",
            "end_time",
            "duration_minutes",
            "location",
            "attendees",
            "needs_meeting_link",
        )
        + _ORIGIN_COLUMNS,
    ),
    ENTITY_BILL: (
        "bills",
        ("vendor", "amount", "currency", "category", "due_date", "description", "status") + _ORIGIN_COLUMNS,
    ),
    ENTITY_NOTE: ("notes", ("title", "content") + _ORIGIN_COLUMNS),
}

_JSON_COLUMNS = {"tags", "attendees", "allowed_performer_ids", "conditions", "action_config", "details", "trigger_snapshot"}
_DATETIME_COLUMNS = {"sent_at", "due_date", "start_time", "end_time", "created_at", "updated_at", "executed_at"}
_BOOL_COLUMNS = {"needs_meeting_link", "is_active", "allow_update_existing"}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value, default=_json_default, ensure_ascii=False)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _decode_row(row: sqlite3.Row) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if value is not None and key in _JSON_COLUMNS:
            value = json.loads(value)
        elif value is not None and key in _DATETIME_COLUMNS:
            value = datetime.fromisoformat(value)
        elif value is not None and key in _BOOL_COLUMNS:
            value = bool(value)
        decoded[key] = value
    return decoded


def _row_to_link(row: sqlite3.Row) -> DerivedRecordLink:
    return DerivedRecordLink(
        rule_id=row["rule_id"],
        triggering_message_id=row["triggering_message_id"],
        instance_id=row["instance_id"],
        link_type=LinkType(row["link_type"]),
        entity_type=row["entity_type"],
        derived_entity_id=row["derived_entity_id"],
    )


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the rule, owner, entity and message ports."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - rules: automation rules with JSON conditions/actionConfig
        - instance_owners: owner actor per communication channel instance
        - tasks, calendar_events, bills, notes: derived records
        - derived_links: derived record <-> triggering message links
        - execution_records: append-only log of dispatch attempts
        - messages: text of received messages, looked up by reactions
        """

        with self._connect() as conn:
            # rules keeps the raw JSON payloads; they are normalized (and
            # rejected if invalid) by the core every time they are loaded.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rules (
                    rule_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    priority INTEGER NOT NULL DEFAULT 0,
                    trigger_type TEXT NOT NULL,
                    scope_instance_id TEXT,
                    performer_filter TEXT NOT NULL DEFAULT 'anyone',
                    allowed_performer_ids TEXT,
                    conditions TEXT,
                    action_type TEXT NOT NULL,
                    action_config TEXT,
                    allow_update_existing INTEGER NOT NULL DEFAULT 0,
                    cooldown_minutes INTEGER NOT NULL DEFAULT 0,
                    max_executions_per_day INTEGER NOT NULL DEFAULT 0,
                    created_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS instance_owners (
                    instance_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    priority TEXT,
                    status TEXT,
                    due_date TIMESTAMP,
                    tags TEXT,
                    linked_bill_id TEXT,
                    rule_id TEXT,
                    instance_id TEXT,
                    related_chat_id TEXT,
                    triggering_message_id TEXT,
                    original_actor_id TEXT,
                    created_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_time TIMESTAMP,
                    end_time TIMESTAMP,
                    duration_minutes INTEGER,
                    location TEXT,
                    attendees TEXT,
                    needs_meeting_link INTEGER,
                    rule_id TEXT,
                    instance_id TEXT,
                    related_chat_id TEXT,
                    triggering_message_id TEXT,
                    original_actor_id TEXT,
                    created_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bills (
                    id TEXT PRIMARY KEY,
                    vendor TEXT,
                    amount REAL NOT NULL DEFAULT 0,
                    currency TEXT,
                    category TEXT,
                    due_date TIMESTAMP,
                    description TEXT,
                    status TEXT,
                    rule_id TEXT,
                    instance_id TEXT,
                    related_chat_id TEXT,
                    triggering_message_id TEXT,
                    original_actor_id TEXT,
                    created_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notes (
                    id TEXT PRIMARY KEY,
                    title TEXT,
                    content TEXT,
                    rule_id TEXT,
                    instance_id TEXT,
                    related_chat_id TEXT,
                    triggering_message_id TEXT,
                    original_actor_id TEXT,
                    created_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # derived_links ties records back to messages. derived_entity_id is
            # NULL while the claiming attempt is still creating the record.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS derived_links (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id TEXT NOT NULL,
                    triggering_message_id TEXT NOT NULL,
                    instance_id TEXT,
                    link_type TEXT NOT NULL,
                    entity_type TEXT,
                    derived_entity_id TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            # At most one non-update link per (message, rule). INSERT OR IGNORE
            # against this index is the atomic insert-if-absent primitive.
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS derived_links_trigger_once
                ON derived_links (triggering_message_id, rule_id)
                WHERE link_type != 'update'
                """
            )
            # execution_records is append-only; rows are never updated.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id TEXT NOT NULL,
                    message_id TEXT,
                    trigger_snapshot TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result_summary TEXT,
                    error_message TEXT,
                    details TEXT,
                    duration_ms INTEGER,
                    executed_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS execution_records_rule ON execution_records (rule_id, executed_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    instance_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    chat_id TEXT,
                    sender_id TEXT,
                    content TEXT,
                    sent_at TIMESTAMP,
                    PRIMARY KEY (instance_id, message_id)
                )
                """
            )

    # Rules and owners

    def save_rule_sync(self, payload: Mapping[str, Any]) -> Rule:
        """Validate and upsert one rule payload; invalid payloads raise."""

        rule = build_rule(payload)
        row = {
            "rule_id": rule.rule_id,
            "name": rule.name,
            "is_active": rule.is_active,
            "priority": rule.priority,
            "trigger_type": rule.trigger_type.value,
            "scope_instance_id": rule.scope_instance_id,
            "performer_filter": rule.performer_filter.value,
            "allowed_performer_ids": sorted(rule.allowed_performer_ids),
            "conditions": dataclasses.asdict(rule.conditions),
            "action_type": rule.action_type,
            "action_config": dict(rule.action_config),
            "allow_update_existing": rule.allow_update_existing,
            "cooldown_minutes": rule.cooldown_minutes,
            "max_executions_per_day": rule.max_executions_per_day,
            "created_by": rule.created_by,
            "created_at": rule.created_at,
            "updated_at": rule.updated_at,
        }
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO rules ({columns}) VALUES ({placeholders})",
                tuple(_encode(column, value) for column, value in row.items()),
            )
        return rule

    async def save_rule(self, payload: Mapping[str, Any]) -> Rule:
        return await asyncio.to_thread(self.save_rule_sync, payload)

    def _list_active_rules(self, trigger_type: TriggerType, instance_id: Optional[str]) -> list[Rule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM rules
                WHERE is_active = 1
                  AND trigger_type = ?
                  AND (scope_instance_id IS NULL OR scope_instance_id = ?)
                ORDER BY priority DESC, created_at DESC
                """,
                (trigger_type.value, instance_id),
            ).fetchall()
        return build_rules(_decode_row(row) for row in rows)

    async def list_active_rules(
        self, trigger_type: TriggerType, instance_id: Optional[str] = None
    ) -> Sequence[Rule]:
        return await asyncio.to_thread(self._list_active_rules, trigger_type, instance_id)

    def set_instance_owner(self, instance_id: str, owner_id: str) -> None:
        """Upsert the owner actor for an instance."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO instance_owners (instance_id, owner_id)
                VALUES (?, ?)
                ON CONFLICT(instance_id) DO UPDATE SET owner_id = excluded.owner_id
                """,
                (instance_id, owner_id),
            )

    def _get_instance_owner(self, instance_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT owner_id FROM instance_owners WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()
        return row["owner_id"] if row else None

    async def get_instance_owner(self, instance_id: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_instance_owner, instance_id)

    # Derived records

    def _insert_entity(self, entity_type: str, fields: Mapping[str, Any]) -> str:
        table, columns = _ENTITY_TABLES[entity_type]
        entity_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        row = {"id": entity_id, **{c: fields.get(c) for c in columns}, "created_at": now, "updated_at": now}
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                tuple(_encode(column, value) for column, value in row.items()),
            )
        return entity_id

    async def create_task(self, fields: Mapping[str, Any]) -> str:
        return await asyncio.to_thread(self._insert_entity, ENTITY_TASK, fields)

    async def create_calendar_event(self, fields: Mapping[str, Any]) -> str:
        return await asyncio.to_thread(self._insert_entity, ENTITY_CALENDAR_EVENT, fields)

    async def create_bill(self, fields: Mapping[str, Any]) -> str:
        return await asyncio.to_thread(self._insert_entity, ENTITY_BILL, fields)

    async def create_note(self, fields: Mapping[str, Any]) -> str:
        return await asyncio.to_thread(self._insert_entity, ENTITY_NOTE, fields)

    def get_entity_sync(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        table, _ = _ENTITY_TABLES[entity_type]
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        return _decode_row(row) if row else None

    async def get_entity(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self.get_entity_sync, entity_type, entity_id)

    def _update_entity(self, entity_type: str, entity_id: str, fields: Mapping[str, Any]) -> None:
        table, columns = _ENTITY_TABLES[entity_type]
        updates = {column: value for column, value in fields.items() if column in columns}
        updates["updated_at"] = datetime.now(timezone.utc)
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*(_encode(column, value) for column, value in updates.items()), entity_id),
            )
            if cur.rowcount == 0:
                raise LookupError(f"{entity_type} {entity_id} does not exist")

    async def update_entity(self, entity_type: str, entity_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._update_entity, entity_type, entity_id, fields)

    async def update_task(self, task_id: str, fields: Mapping[str, Any]) -> None:
        await self.update_entity(ENTITY_TASK, task_id, fields)

    def count_entities(self, entity_type: str) -> int:
        """Return the number of stored records of one entity type."""

        table, _ = _ENTITY_TABLES[entity_type]
        with self._connect() as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])

    # Links

    def _upsert_derived_link(self, link: DerivedRecordLink) -> LinkUpsert:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO derived_links (
                    rule_id, triggering_message_id, instance_id, link_type,
                    entity_type, derived_entity_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link.rule_id,
                    link.triggering_message_id,
                    link.instance_id,
                    link.link_type.value,
                    link.entity_type,
                    link.derived_entity_id,
                    now,
                ),
            )
            if link.link_type is LinkType.UPDATE:
                return LinkUpsert(created=True, link=link)
            row = conn.execute(
                """
                SELECT * FROM derived_links
                WHERE triggering_message_id = ? AND rule_id = ? AND link_type != 'update'
                """,
                (link.triggering_message_id, link.rule_id),
            ).fetchone()
        return LinkUpsert(created=cur.rowcount == 1, link=_row_to_link(row))

    async def upsert_derived_link(self, link: DerivedRecordLink) -> LinkUpsert:
        return await asyncio.to_thread(self._upsert_derived_link, link)

    def _bind_derived_link(self, link: DerivedRecordLink, entity_type: str, entity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE derived_links SET entity_type = ?, derived_entity_id = ?
                WHERE triggering_message_id = ? AND rule_id = ? AND link_type = ?
                  AND derived_entity_id IS NULL
                """,
                (entity_type, entity_id, link.triggering_message_id, link.rule_id, link.link_type.value),
            )

    async def bind_derived_link(self, link: DerivedRecordLink, entity_type: str, entity_id: str) -> None:
        await asyncio.to_thread(self._bind_derived_link, link, entity_type, entity_id)

    def _release_derived_link(self, link: DerivedRecordLink) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM derived_links
                WHERE triggering_message_id = ? AND rule_id = ? AND link_type = ?
                  AND derived_entity_id IS NULL
                """,
                (link.triggering_message_id, link.rule_id, link.link_type.value),
            )

    async def release_derived_link(self, link: DerivedRecordLink) -> None:
        await asyncio.to_thread(self._release_derived_link, link)

    def list_derived_links(self, triggering_message_id: str) -> list[DerivedRecordLink]:
        """Return every link (trigger and update) recorded for a message."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM derived_links WHERE triggering_message_id = ? ORDER BY id",
                (triggering_message_id,),
            ).fetchall()
        return [_row_to_link(row) for row in rows]

    def _find_derived_link(self, triggering_message_id: str, rule_id: str) -> Optional[DerivedRecordLink]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM derived_links
                WHERE triggering_message_id = ? AND rule_id = ? AND link_type != 'update'
                """,
                (triggering_message_id, rule_id),
            ).fetchone()
        return _row_to_link(row) if row else None

    async def find_derived_link(self, triggering_message_id: str, rule_id: str) -> Optional[DerivedRecordLink]:
        return await asyncio.to_thread(self._find_derived_link, triggering_message_id, rule_id)

    def _find_entity_by_origin(self, entity_type: str, rule_id: str, triggering_message_id: str) -> Optional[str]:
        table, _ = _ENTITY_TABLES[entity_type]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT id FROM {table}
                WHERE rule_id = ? AND triggering_message_id = ?
                ORDER BY created_at
                LIMIT 1
                """,
                (rule_id, triggering_message_id),
            ).fetchone()
        return row["id"] if row else None

    async def find_entity_by_origin(
        self, entity_type: str, rule_id: str, triggering_message_id: str
    ) -> Optional[str]:
        return await asyncio.to_thread(self._find_entity_by_origin, entity_type, rule_id, triggering_message_id)

    # Message log

    def _save_message(self, event: TriggerEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages (instance_id, message_id, chat_id, sender_id, content, sent_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(instance_id, message_id) DO UPDATE SET content = excluded.content
                """,
                (
                    event.instance_id,
                    event.message_id,
                    event.chat_id,
                    event.actor_id,
                    event.content,
                    event.timestamp.isoformat(),
                ),
            )

    async def save_message(self, event: TriggerEvent) -> None:
        await asyncio.to_thread(self._save_message, event)

    def get_message_sync(self, instance_id: str, message_id: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE instance_id = ? AND message_id = ?",
                (instance_id, message_id),
            ).fetchone()
        return _decode_row(row) if row else None

    async def get_message(self, instance_id: str, message_id: str) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self.get_message_sync, instance_id, message_id)

    # Execution history

    def _append_execution_record(self, record: ExecutionRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_records (
                    rule_id, message_id, trigger_snapshot, status, result_summary,
                    error_message, details, duration_ms, executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.rule_id,
                    record.trigger_snapshot.message_id,
                    _encode("trigger_snapshot", dataclasses.asdict(record.trigger_snapshot)),
                    record.status.value,
                    record.result_summary,
                    record.error_message,
                    _encode("details", dict(record.details)),
                    record.duration_ms,
                    record.executed_at.isoformat(),
                ),
            )

    async def append_execution_record(self, record: ExecutionRecord) -> None:
        await asyncio.to_thread(self._append_execution_record, record)

    def _count_executions_since(self, rule_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM execution_records WHERE rule_id = ? AND executed_at >= ?",
                (rule_id, since.isoformat()),
            ).fetchone()
        return int(row[0])

    async def count_executions_since(self, rule_id: str, since: datetime) -> int:
        return await asyncio.to_thread(self._count_executions_since, rule_id, since)

    def _last_execution_at(self, rule_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(executed_at) AS last FROM execution_records WHERE rule_id = ?",
                (rule_id,),
            ).fetchone()
        return datetime.fromisoformat(row["last"]) if row and row["last"] else None

    async def last_execution_at(self, rule_id: str) -> Optional[datetime]:
        return await asyncio.to_thread(self._last_execution_at, rule_id)

    def list_execution_records(self, rule_id: Optional[str] = None, limit: int = 20) -> list[dict[str, Any]]:
        """Return the most recent execution records, newest first."""

        query = "SELECT * FROM execution_records"
        params: tuple[Any, ...] = ()
        if rule_id:
            query += " WHERE rule_id = ?"
            params = (rule_id,)
        query += " ORDER BY id DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, (*params, limit)).fetchall()
        return [_decode_row(row) for row in rows]
