"""
Audit Store — Append-only persistence of audit entries in PostgreSQL.

The store only ever INSERTs and SELECTs; the schema installs a trigger that
rejects UPDATE and DELETE on the log table. Retention purges are an
out-of-band administrative task.
"""
import logging
from typing import Any, Optional
from collections.abc import AsyncIterator

import orjson

from ..db import escape_like, run
from .models import AuditFilters, AuditLogEntry

logger = logging.getLogger("navigator.audit")

AUDIT_SCHEMA = """
CREATE SCHEMA IF NOT EXISTS audit;

CREATE TABLE IF NOT EXISTS audit.audit_log (
    id BIGSERIAL PRIMARY KEY,
    actor VARCHAR(255) NOT NULL,
    action VARCHAR(32) NOT NULL,
    entity_type VARCHAR(64) NOT NULL,
    entity_id VARCHAR(255),
    description TEXT NOT NULL,
    before JSONB,
    after JSONB,
    ip VARCHAR(64),
    user_agent TEXT,
    access_level VARCHAR(32) NOT NULL,
    sensitive BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS ix_audit_log_created ON audit.audit_log (created_at DESC, id DESC);
CREATE INDEX IF NOT EXISTS ix_audit_log_actor ON audit.audit_log (actor, created_at DESC);
CREATE INDEX IF NOT EXISTS ix_audit_log_entity ON audit.audit_log (entity_type, created_at DESC);
CREATE INDEX IF NOT EXISTS ix_audit_log_sensitive ON audit.audit_log (sensitive, created_at DESC);

CREATE OR REPLACE FUNCTION audit.reject_audit_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'audit.audit_log is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS audit_log_append_only ON audit.audit_log;
CREATE TRIGGER audit_log_append_only
    BEFORE UPDATE OR DELETE ON audit.audit_log
    FOR EACH ROW EXECUTE FUNCTION audit.reject_audit_mutation();
"""

_COLUMNS = (
    "id, actor, action, entity_type, entity_id, description, before, after, "
    "ip, user_agent, access_level, sensitive, created_at"
)

_INSERT_ENTRY = """
INSERT INTO audit.audit_log (
    actor, action, entity_type, entity_id, description, before, after,
    ip, user_agent, access_level, sensitive
)
VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11)
RETURNING id, created_at
"""

_ORDER = " ORDER BY created_at DESC, id DESC"


def _dump_json(value: Optional[dict]) -> Optional[str]:
    if value is None:
        return None
    return orjson.dumps(value, default=str).decode("utf-8")


def _load_json(value: Any) -> Optional[dict]:
    if value is None or isinstance(value, dict):
        return value
    return orjson.loads(value)


def build_where(filters: Optional[AuditFilters]) -> tuple[list[str], list[Any]]:
    """Translate filters into SQL conditions and positional arguments."""
    clauses: list[str] = []
    args: list[Any] = []
    if filters is None:
        return clauses, args

    def add(template: str, value: Any) -> None:
        args.append(value)
        clauses.append(template.format(n=len(args)))

    if filters.actor:
        add("actor ILIKE ${n} ESCAPE '\\'", f"%{escape_like(filters.actor)}%")
    if filters.action is not None:
        add("action = ${n}", filters.action.value)
    if filters.entity_type:
        add("entity_type = ${n}", filters.entity_type)
    if filters.sensitive is not None:
        add("sensitive = ${n}", filters.sensitive)
    if filters.date_from is not None:
        add("created_at >= ${n}", filters.date_from)
    if filters.date_to is not None:
        add("created_at <= ${n}", filters.date_to)
    return clauses, args


def _where_sql(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def entry_from_row(row: Any) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        actor=row["actor"],
        action=row["action"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        description=row["description"],
        before=_load_json(row["before"]),
        after=_load_json(row["after"]),
        ip=row["ip"],
        user_agent=row["user_agent"],
        access_level=row["access_level"],
        sensitive=row["sensitive"],
        created_at=row["created_at"],
    )


class AuditStore:
    """Append-only audit log table behind an asyncpg-compatible pool."""

    name = "audit store"

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def init_schema(self) -> None:
        await run(self._db, "execute", AUDIT_SCHEMA, store=self.name)
        logger.info("Audit schema ready")

    async def insert(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append one entry; returns it with store-assigned id/created_at."""
        row = await run(
            self._db, "fetchrow", _INSERT_ENTRY,
            entry.actor,
            entry.action.value,
            entry.entity_type,
            entry.entity_id,
            entry.description,
            _dump_json(entry.before),
            _dump_json(entry.after),
            entry.ip,
            entry.user_agent,
            entry.access_level.value,
            entry.sensitive,
            store=self.name,
        )
        return entry.model_copy(
            update={"id": row["id"], "created_at": row["created_at"]}
        )

    async def count(self, filters: Optional[AuditFilters] = None) -> int:
        clauses, args = build_where(filters)
        sql = f"SELECT count(*) FROM audit.audit_log{_where_sql(clauses)}"
        return await run(self._db, "fetchval", sql, *args, store=self.name)

    async def fetch_page(
        self,
        filters: Optional[AuditFilters],
        limit: int,
        offset: int,
    ) -> list[AuditLogEntry]:
        clauses, args = build_where(filters)
        sql = (
            f"SELECT {_COLUMNS} FROM audit.audit_log{_where_sql(clauses)}"
            f"{_ORDER} LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}"
        )
        rows = await run(
            self._db, "fetch", sql, *args, limit, offset, store=self.name,
        )
        return [entry_from_row(row) for row in rows]

    async def stream(
        self,
        filters: Optional[AuditFilters] = None,
        chunk_size: int = 500,
    ) -> AsyncIterator[AuditLogEntry]:
        """Yield every matching entry, newest first, in keyset-paged chunks."""
        cursor: Optional[tuple] = None
        while True:
            clauses, args = build_where(filters)
            if cursor is not None:
                args.extend(cursor)
                clauses.append(
                    f"(created_at, id) < (${len(args) - 1}, ${len(args)})"
                )
            sql = (
                f"SELECT {_COLUMNS} FROM audit.audit_log{_where_sql(clauses)}"
                f"{_ORDER} LIMIT ${len(args) + 1}"
            )
            rows = await run(
                self._db, "fetch", sql, *args, chunk_size, store=self.name,
            )
            for row in rows:
                yield entry_from_row(row)
            if len(rows) < chunk_size:
                break
            last = rows[-1]
            cursor = (last["created_at"], last["id"])
