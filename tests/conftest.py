"""Shared fixtures: in-memory stand-ins for the PostgreSQL pool and stores."""
import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from navigator_credentials.exceptions import PersistenceError
from navigator_credentials.audit.models import AccessLevel, AuditFilters, AuthContext
from navigator_credentials.vault.crypto import SecretCodec
from navigator_credentials.vault.records import (
    DEVICE_PASSWORD,
    EMAIL_CREDENTIAL,
    SecretEntity,
    SecretRecord,
)

CURRENT_KEY = "4595b50d7e" + "0" * 54
OLD_KEY = "old passphrase used before the rotation"
CREATED = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


# --- asyncpg-compatible pool ---

class FakeConnection:
    def __init__(self, pool: "FakePool"):
        self._pool = pool

    async def _call(self, method: str, sql: str, *args: Any) -> Any:
        self._pool.calls.append((method, sql, args))
        if self._pool.error is not None:
            raise self._pool.error
        if self._pool.responder is None:
            return None
        return self._pool.responder(method, sql, args)

    async def fetch(self, sql, *args):
        return await self._call("fetch", sql, *args)

    async def fetchrow(self, sql, *args):
        return await self._call("fetchrow", sql, *args)

    async def fetchval(self, sql, *args):
        return await self._call("fetchval", sql, *args)

    async def execute(self, sql, *args):
        return await self._call("execute", sql, *args)


class _Acquire:
    def __init__(self, pool: "FakePool"):
        self._pool = pool

    async def __aenter__(self) -> FakeConnection:
        return FakeConnection(self._pool)

    async def __aexit__(self, *exc) -> None:
        return None


class FakePool:
    """Records every statement; answers through ``responder``."""

    def __init__(self, responder: Optional[Callable] = None, error: Exception = None):
        self.responder = responder
        self.error = error
        self.calls: list[tuple[str, str, tuple]] = []

    def acquire(self) -> _Acquire:
        return _Acquire(self)


# --- secret repositories ---

class MemorySecretRepository:
    """Same interface as SecretRepository, backed by a dict."""

    def __init__(self, entity: SecretEntity):
        self.entity = entity
        self.rows: dict[int, SecretRecord] = {}
        self._ids = itertools.count(1)
        self.fail_writes_for: set[int] = set()
        self.fail_listing = False

    @property
    def name(self) -> str:
        return self.entity.name

    def add(self, ciphertext: str, **data: Any) -> SecretRecord:
        record_id = next(self._ids)
        label = str(data.get(self.entity.label_column, f"item-{record_id}"))
        data.setdefault(self.entity.label_column, label)
        record = SecretRecord(
            self.entity.name, record_id, label, ciphertext, data,
            created_at=CREATED + timedelta(seconds=record_id),
        )
        self.rows[record_id] = record
        return record

    def _ordered(self) -> list[SecretRecord]:
        return sorted(self.rows.values(), key=lambda r: (r.created_at, r.id))

    async def fetch(self, record_id):
        return self.rows.get(record_id)

    async def fetch_batch(self, after, limit):
        if self.fail_listing:
            raise PersistenceError("store unavailable (OSError)")
        ordered = self._ordered()
        if after is not None:
            ordered = [r for r in ordered if (r.created_at, r.id) > after]
        return ordered[:limit]

    async def search(self, text, limit, offset):
        found = list(reversed(self._ordered()))
        if text and text.strip():
            needle = text.strip().lower()
            found = [
                r for r in found
                if any(needle in str(r.data.get(c, "")).lower() for c in self.entity.columns)
            ]
        return found[offset:offset + limit], len(found)

    async def insert(self, data, ciphertext):
        return self.add(ciphertext, **data)

    async def update(self, record_id, data=None, ciphertext=None):
        record = self.rows.get(record_id)
        if record is None:
            return None
        changes: dict[str, Any] = {"data": {**record.data, **(data or {})}}
        if ciphertext is not None:
            changes["ciphertext"] = ciphertext
        record = replace(record, **changes)
        self.rows[record_id] = record
        return record

    async def replace_ciphertext(self, record_id, ciphertext, expected):
        if record_id in self.fail_writes_for:
            raise PersistenceError("store unavailable (ConnectionError)")
        record = self.rows.get(record_id)
        if record is None or record.ciphertext != expected:
            return False
        self.rows[record_id] = replace(record, ciphertext=ciphertext)
        return True

    async def delete(self, record_id):
        return self.rows.pop(record_id, None)


# --- audit store ---

def _matches(entry, filters: Optional[AuditFilters]) -> bool:
    if filters is None:
        return True
    if filters.actor and filters.actor.lower() not in entry.actor.lower():
        return False
    if filters.action is not None and entry.action is not filters.action:
        return False
    if filters.entity_type and entry.entity_type != filters.entity_type:
        return False
    if filters.sensitive is not None and entry.sensitive != filters.sensitive:
        return False
    if filters.date_from and entry.created_at < filters.date_from:
        return False
    if filters.date_to and entry.created_at > filters.date_to:
        return False
    return True


class MemoryAuditStore:
    """Append-only list with the AuditStore read interface."""

    def __init__(self, start: datetime = None):
        self.entries = []
        self.available = True
        self._clock = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    async def insert(self, entry):
        if not self.available:
            raise PersistenceError("audit store unavailable (OSError)")
        self._clock += timedelta(seconds=1)
        stored = entry.model_copy(
            update={"id": len(self.entries) + 1, "created_at": self._clock}
        )
        self.entries.append(stored)
        return stored

    def _selected(self, filters):
        if not self.available:
            raise PersistenceError("audit store unavailable (OSError)")
        found = [e for e in self.entries if _matches(e, filters)]
        return sorted(found, key=lambda e: (e.created_at, e.id), reverse=True)

    async def count(self, filters=None):
        return len(self._selected(filters))

    async def fetch_page(self, filters, limit, offset):
        return self._selected(filters)[offset:offset + limit]

    async def stream(self, filters=None, chunk_size=500):
        for entry in self._selected(filters):
            yield entry


# --- fixtures ---

@pytest.fixture
def codec() -> SecretCodec:
    return SecretCodec.from_material(CURRENT_KEY)


@pytest.fixture
def old_codec() -> SecretCodec:
    return SecretCodec.from_material(OLD_KEY)


@pytest.fixture
def admin() -> AuthContext:
    return AuthContext(username="admin.ti", access_level=AccessLevel.ADMIN)


@pytest.fixture
def analyst() -> AuthContext:
    return AuthContext(username="ana.analista", access_level=AccessLevel.ANALYST)


@pytest.fixture
def emails() -> MemorySecretRepository:
    return MemorySecretRepository(EMAIL_CREDENTIAL)


@pytest.fixture
def devices() -> MemorySecretRepository:
    return MemorySecretRepository(DEVICE_PASSWORD)


@pytest.fixture
def audit_store() -> MemoryAuditStore:
    return MemoryAuditStore()
