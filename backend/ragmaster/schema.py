# ragmaster/schema.py
# ──────────────────────────────────────────────────────────────────────────────
#  The tables belong to the external store. This backend needs a few columns
#  on top of the ones the admin console already had; they must be added once
#  with the SQL from ``migration_sql`` before the relay is started.
# ──────────────────────────────────────────────────────────────────────────────
from typing import Dict, List, Tuple

from sqlalchemy import inspect

from .log import get_logger

logger = get_logger(__name__)

# table -> [(column, SQL type)]
RELAY_COLUMNS: Dict[str, List[Tuple[str, str]]] = {
    "app_settings": [("webhook_verified_at", "timestamptz")],
    "request_logs": [("latency_ms", "integer")],
    "profiles":     [("email", "text"), ("status", "text DEFAULT 'active'"), ("last_active", "timestamptz")],
}


def missing_columns(bind) -> List[Tuple[str, str, str]]:
    """Relay columns absent from existing tables, as (table, column, type)."""
    insp   = inspect(bind)
    tables = set(insp.get_table_names())
    out    = []
    for table, columns in RELAY_COLUMNS.items():
        if table not in tables:
            continue
        present = {c["name"] for c in insp.get_columns(table)}
        out.extend((table, name, sql_type) for name, sql_type in columns if name not in present)
    return out


def migration_sql(missing: List[Tuple[str, str, str]]) -> str:
    return "\n".join(
        f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {name} {sql_type};"
        for table, name, sql_type in missing
    )


def check(bind) -> List[Tuple[str, str, str]]:
    missing = missing_columns(bind)
    if missing:
        logger.error("[Schema] missing columns: %s. Run this SQL on the database:\n%s",
                     ", ".join(f"{t}.{c}" for t, c, _ in missing), migration_sql(missing))
    return missing
