"""Application entry point for the cortex-actions rule engine."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.enrichment_client import HttpEnrichmentClient
from adapters.evolution_mapper import ingest_webhook
from adapters.evolution_messenger import EvolutionMessenger
from adapters.sqlite_storage import SQLiteStorage
from adapters.webhook_notifier import LogNotifier, WebhookNotifier
from core.config import DispatchDefaults, EngineConfig, EnrichmentConfig
from core.errors import RuleStoreUnavailable, RuleValidationError
from core.processor import TriggerProcessor

NAME = "CORTEX"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    """Masks API keys and webhook tokens wherever they show up in a record."""

    def __init__(self, secrets: list[str], fmt: str) -> None:
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")
        # Longest first, so a key that contains another is masked whole.
        self._secrets = sorted({secret for secret in secrets if secret}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _secret_values(redact: dict) -> list[str]:
    if not redact.get("enabled", False):
        return []
    return [os.getenv(name, "") for name in redact.get("patterns", [])]


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(
        _secret_values(config.get("redact", {})),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        # stdout carries command output.
        handlers.append(logging.StreamHandler(sys.stderr))
    if settings.LOG_FILE:
        os.makedirs(os.path.dirname(settings.LOG_FILE), exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                settings.LOG_FILE,
                maxBytes=settings.LOG_MAX_BYTES,
                backupCount=settings.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )
    if not handlers:
        return

    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _engine_config() -> EngineConfig:
    known = {f.name for f in dataclasses.fields(DispatchDefaults)}
    unknown = set(settings.DEFAULTS) - known
    if unknown:
        logging.getLogger(__name__).warning("Ignoring unknown defaults: %s", ", ".join(sorted(unknown)))
    return EngineConfig(
        enrichment=EnrichmentConfig(
            timeout_seconds=settings.ENRICHMENT_TIMEOUT_SECONDS,
            min_confidence=settings.ENRICHMENT_MIN_CONFIDENCE,
        ),
        defaults=DispatchDefaults(**{k: v for k, v in settings.DEFAULTS.items() if k in known}),
    )


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    for instance_id, owner_id in settings.INSTANCE_OWNERS.items():
        storage.set_instance_owner(instance_id, owner_id)
    return storage


def _build_processor(storage: SQLiteStorage) -> TriggerProcessor:
    logger = logging.getLogger(__name__)
    config = _engine_config()

    enrichment_service = None
    if settings.ENRICHMENT_URL:
        enrichment_service = HttpEnrichmentClient(
            settings.ENRICHMENT_URL,
            api_key=os.getenv("ENRICHMENT_API_KEY"),
            timeout=config.enrichment.timeout_seconds,
        )
    else:
        logger.info("No enrichment url configured; using templates only")

    # Select the notification adapter based on configuration to keep the core
    # independent from delivery details.
    if settings.NOTIFICATION_METHOD == "webhook":
        if not settings.NOTIFY_WEBHOOK_URL:
            raise RuntimeError("notifications.webhook_url is required when notification_method=webhook")
        notifier = WebhookNotifier(
            settings.NOTIFY_WEBHOOK_URL,
            token=os.getenv("NOTIFY_WEBHOOK_TOKEN"),
            mode=settings.NOTIFICATION_FORMAT,
            snippet_chars=settings.SNIPPET_CHARS,
        )
    elif settings.NOTIFICATION_METHOD == "log":
        notifier = LogNotifier()
    elif settings.NOTIFICATION_METHOD == "off":
        notifier = None
    else:
        raise RuntimeError("notification_method must be 'log', 'webhook' or 'off'")
    logger.info("Selected notification method - %s", settings.NOTIFICATION_METHOD)

    messenger = None
    if settings.EVOLUTION_BASE_URL:
        api_key = os.getenv("EVOLUTION_API_KEY")
        if not api_key:
            raise RuntimeError("EVOLUTION_API_KEY is required when evolution.base_url is set")
        messenger = EvolutionMessenger(
            settings.EVOLUTION_BASE_URL,
            api_key,
            timeout=settings.EVOLUTION_TIMEOUT_SECONDS,
        )

    return TriggerProcessor.build(
        rules=storage,
        store=storage,
        owners=storage,
        enrichment_service=enrichment_service,
        notifier=notifier,
        messenger=messenger,
        config=config,
    )


def _init_db() -> None:
    _open_storage()
    logging.getLogger(__name__).info("Database ready at %s", settings.DB_PATH)
    print(f"Initialized {settings.DB_PATH}")


def _load_rules() -> int:
    logger = logging.getLogger(__name__)
    storage = _open_storage()
    loaded = 0
    rejected = 0
    for payload in settings.RULES_CONFIG:
        try:
            storage.save_rule_sync(payload)
            loaded += 1
        except (RuleValidationError, TypeError, ValueError) as exc:
            rejected += 1
            logger.error("Rejected rule at load time: %s", exc)
    print(f"Loaded {loaded} rules ({rejected} rejected)")
    return 1 if rejected else 0


def _read_payloads(source: str) -> list[dict[str, Any]]:
    if source == "-":
        data = json.load(sys.stdin)
    else:
        with open(source, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    return data if isinstance(data, list) else [data]


async def _process_payloads(
    processor: TriggerProcessor,
    storage: SQLiteStorage,
    payloads: list[dict[str, Any]],
    instance: Optional[str],
) -> int:
    logger = logging.getLogger(__name__)
    total = 0
    for payload in payloads:
        for event in await ingest_webhook(payload, storage, instance_id=instance):
            records = await processor.handle(event)
            total += len(records)
            for record in records:
                print(
                    f"{event.trigger_type.value:<8} {event.message_id} "
                    f"rule={record.rule_id} {record.status.value}: "
                    f"{record.error_message or record.result_summary}"
                )
    logger.info("Processed %s payloads, %s executions", len(payloads), total)
    return total


def _process(source: str, instance: Optional[str]) -> int:
    storage = _open_storage()
    processor = _build_processor(storage)
    try:
        asyncio.run(_process_payloads(processor, storage, _read_payloads(source), instance))
    except RuleStoreUnavailable:
        logging.getLogger(__name__).exception("Rule store unavailable; event aborted")
        return 2
    return 0


def _history(rule_id: Optional[str], limit: int) -> None:
    storage = _open_storage()
    records = storage.list_execution_records(rule_id=rule_id, limit=limit)
    if not records:
        print("No executions recorded.")
        return
    for record in records:
        executed_at = record["executed_at"].strftime("%Y-%m-%d %H:%M:%S")
        outcome = record["error_message"] or record["result_summary"]
        print(f"{executed_at} | {record['rule_id']} | {record['status']} | {record['duration_ms']}ms | {outcome}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="cortex-actions")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create the database schema")
    subparsers.add_parser("load-rules", help="Store the rules from config.json")
    process_parser = subparsers.add_parser("process", help="Run webhook payloads through the rule engine")
    process_parser.add_argument("payload", help="Path to a JSON payload (or list of payloads), '-' for stdin")
    process_parser.add_argument("--instance", help="Instance id when the payload does not carry one")
    history_parser = subparsers.add_parser("history", help="Show recent rule executions")
    history_parser.add_argument("--rule", dest="rule_id", help="Only show executions of this rule")
    history_parser.add_argument("--limit", type=int, default=20)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    load_dotenv()
    _print_banner()
    _configure_logging()

    if args.command == "init-db":
        _init_db()
        return
    if args.command == "load-rules":
        sys.exit(_load_rules())
    if args.command == "process":
        sys.exit(_process(args.payload, args.instance))
    if args.command == "history":
        _history(args.rule_id, args.limit)


if __name__ == "__main__":
    main()
