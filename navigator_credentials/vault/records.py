"""
Secret Records — Entities whose rows hold an encrypted secret column.

Each entity keeps its plain columns (account name, equipment, ...) next to a
``senha`` column holding the ciphertext blob produced by the codec.
Only the codec ever interprets that column.
"""
import logging
from typing import Any, Optional
from dataclasses import dataclass, field

from ..db import escape_like, run

logger = logging.getLogger("navigator.credentials")


@dataclass(frozen=True)
class SecretEntity:
    """Describes a table storing one encrypted secret per row."""
    name: str
    table: str
    label_column: str
    columns: tuple[str, ...]
    secret_column: str = "senha"


EMAIL_CREDENTIAL = SecretEntity(
    name="email",
    table="inventory.emails",
    label_column="email",
    columns=("email", "colaborador", "nome"),
)

DEVICE_PASSWORD = SecretEntity(
    name="senha",
    table="inventory.senhas",
    label_column="equipamento",
    columns=("ip", "equipamento", "categoria"),
)

SECRET_ENTITIES = {
    entity.name: entity for entity in (EMAIL_CREDENTIAL, DEVICE_PASSWORD)
}


@dataclass(frozen=True)
class SecretRecord:
    entity: str
    id: Any
    label: str
    ciphertext: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: Any = None

    def snapshot(self) -> dict[str, Any]:
        """Plain fields of the record, safe for audit snapshots."""
        return {"id": str(self.id), **self.data}


class SecretRepository:
    """Per-record read/update of one secret entity in PostgreSQL.

    Table and column names come from the trusted :class:`SecretEntity`
    definition; every value is bound as a parameter.
    """

    def __init__(self, db_pool: Any, entity: SecretEntity):
        self._db = db_pool
        self.entity = entity
        cols = ", ".join(entity.columns)
        self._select = (
            f"SELECT id, {cols}, {entity.secret_column} AS ciphertext, "
            f"created_at FROM {entity.table}"
        )
        self._returning = (
            f"RETURNING id, {cols}, {entity.secret_column} AS ciphertext, "
            "created_at"
        )

    @property
    def name(self) -> str:
        return self.entity.name

    def _to_record(self, row: Any) -> SecretRecord:
        data = {col: row[col] for col in self.entity.columns}
        return SecretRecord(
            entity=self.entity.name,
            id=row["id"],
            label=str(row[self.entity.label_column] or ""),
            ciphertext=row["ciphertext"] or "",
            data=data,
            created_at=row["created_at"],
        )

    async def _call(self, method: str, sql: str, *args: Any) -> Any:
        return await run(
            self._db, method, sql, *args, store=f"{self.entity.name} store"
        )

    async def fetch(self, record_id: Any) -> Optional[SecretRecord]:
        row = await self._call(
            "fetchrow", f"{self._select} WHERE id = $1", record_id
        )
        return self._to_record(row) if row else None

    async def fetch_batch(
        self, after: Optional[tuple], limit: int
    ) -> list[SecretRecord]:
        """Records in creation order, used by the key migration job.

        Keyset paging: ``after`` is the ``(created_at, id)`` of the last
        record already read, so rows removed meanwhile never shift a page.
        """
        if after is None:
            sql = f"{self._select} ORDER BY created_at, id LIMIT $1"
            args: tuple = (limit,)
        else:
            sql = (
                f"{self._select} WHERE (created_at, id) > ($1, $2) "
                "ORDER BY created_at, id LIMIT $3"
            )
            args = (*after, limit)
        rows = await self._call("fetch", sql, *args)
        return [self._to_record(row) for row in rows]

    async def search(
        self, text: Optional[str], limit: int, offset: int
    ) -> tuple[list[SecretRecord], int]:
        """One page of records, newest first, plus the total match count.

        ``text`` is matched case-insensitively against every plain column.
        """
        where = ""
        args: list[Any] = []
        if text and text.strip():
            args.append(f"%{escape_like(text.strip())}%")
            where = " WHERE " + " OR ".join(
                f"{col}::text ILIKE $1 ESCAPE '\\'" for col in self.entity.columns
            )
        total = await self._call(
            "fetchval", f"SELECT count(*) FROM {self.entity.table}{where}", *args
        )
        if not total:
            return [], 0
        rows = await self._call(
            "fetch",
            f"{self._select}{where} ORDER BY created_at DESC, id DESC "
            f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
            *args, limit, offset,
        )
        return [self._to_record(row) for row in rows], total

    async def insert(self, data: dict[str, Any], ciphertext: str) -> SecretRecord:
        cols = self.entity.columns
        values = [data.get(col) for col in cols]
        placeholders = ", ".join(f"${n}" for n in range(1, len(cols) + 2))
        sql = (
            f"INSERT INTO {self.entity.table} "
            f"({', '.join(cols)}, {self.entity.secret_column}) "
            f"VALUES ({placeholders}) {self._returning}"
        )
        row = await self._call("fetchrow", sql, *values, ciphertext)
        return self._to_record(row)

    async def update(
        self,
        record_id: Any,
        data: Optional[dict[str, Any]] = None,
        ciphertext: Optional[str] = None,
    ) -> Optional[SecretRecord]:
        """Update plain columns and/or the secret of one record."""
        assignments: list[str] = []
        args: list[Any] = []
        for col in self.entity.columns:
            if data and col in data:
                args.append(data[col])
                assignments.append(f"{col} = ${len(args)}")
        if ciphertext is not None:
            args.append(ciphertext)
            assignments.append(f"{self.entity.secret_column} = ${len(args)}")
        if not assignments:
            return await self.fetch(record_id)
        args.append(record_id)
        sql = (
            f"UPDATE {self.entity.table} SET {', '.join(assignments)}, "
            f"updated_at = NOW() WHERE id = ${len(args)} {self._returning}"
        )
        row = await self._call("fetchrow", sql, *args)
        return self._to_record(row) if row else None

    async def replace_ciphertext(
        self, record_id: Any, ciphertext: str, expected: str
    ) -> bool:
        """Swap the secret only if it still holds ``expected``.

        Returns False when the record was removed or edited meanwhile.
        """
        sql = (
            f"UPDATE {self.entity.table} "
            f"SET {self.entity.secret_column} = $1, updated_at = NOW() "
            f"WHERE id = $2 AND {self.entity.secret_column} = $3 RETURNING id"
        )
        updated = await self._call("fetchval", sql, ciphertext, record_id, expected)
        return updated is not None

    async def delete(self, record_id: Any) -> Optional[SecretRecord]:
        row = await self._call(
            "fetchrow",
            f"DELETE FROM {self.entity.table} WHERE id = $1 {self._returning}",
            record_id,
        )
        return self._to_record(row) if row else None


def build_repositories(db_pool: Any) -> dict[str, SecretRepository]:
    """One repository per known secret entity, keyed by entity name."""
    return {
        name: SecretRepository(db_pool, entity)
        for name, entity in SECRET_ENTITIES.items()
    }
