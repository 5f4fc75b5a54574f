"""Static configuration for cortex-actions.

All user-editable settings (database, instance owners, enrichment, defaults,
notifications, seed rules) live in a single JSON file for quick edits without
touching Python. Secrets stay in the environment (.env).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# The config path can be overridden to run several engines side by side.
CONFIG_PATH = os.getenv("CORTEX_ACTIONS_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database.
DB_PATH = _project_path(_CONFIG.get("database", {}).get("path", "cortex_actions.db"))

# Owner actor per instance, used by owner_only rules. Owners saved in the
# database take precedence over this seed mapping.
INSTANCE_OWNERS: dict[str, str] = {
    str(instance): str(owner) for instance, owner in _CONFIG.get("instance_owners", {}).items()
}

# Text enrichment service. Without a url the engine runs on templates only.
_enrichment = _CONFIG.get("enrichment", {})
ENRICHMENT_URL = _enrichment.get("url")
ENRICHMENT_TIMEOUT_SECONDS = float(_enrichment.get("timeout_seconds", 5.0))
ENRICHMENT_MIN_CONFIDENCE = float(_enrichment.get("min_confidence", 0.5))

# Fallback values used when neither enrichment nor actionConfig set a field.
DEFAULTS = _CONFIG.get("defaults", {})

# Evolution API server used by send_message/add_label actions.
_evolution = _CONFIG.get("evolution", {})
EVOLUTION_BASE_URL = _evolution.get("base_url")
EVOLUTION_TIMEOUT_SECONDS = float(_evolution.get("timeout_seconds", 15.0))

# Notification fan-out: "log", "webhook" or "off".
_notifications = _CONFIG.get("notifications", {})
NOTIFICATION_METHOD = _notifications.get("notification_method", "log")
NOTIFY_WEBHOOK_URL = _notifications.get("webhook_url")
NOTIFICATION_FORMAT = _notifications.get("format", "markdown")
SNIPPET_CHARS = int(_notifications.get("snippet_chars", 400))

# Seed rules, written to the store by `cortex-actions load-rules`.
RULES_CONFIG = _CONFIG.get("rules", [])

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})

# Rotating log file, None when file logging is off.
_log_file = LOGGING.get("file", {})
LOG_FILE = _project_path(_log_file.get("path", "logs/cortex-actions.log")) if _log_file.get("enabled") else None
LOG_MAX_BYTES = int(_log_file.get("max_bytes", 5 * 1024 * 1024))
LOG_BACKUP_COUNT = int(_log_file.get("backup_count", 5))
