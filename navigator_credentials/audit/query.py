"""
Audit Query Service — paginated reads and streamed CSV export of the log.
"""
import io
import csv
import math
import logging
from typing import Any, Optional
from dataclasses import dataclass, field
from collections.abc import AsyncIterator, Mapping

from ..exceptions import ValidationError
from .models import AuditFilters, AuditLogEntry

logger = logging.getLogger("navigator.audit")

DEFAULT_MAX_PAGE_SIZE = 50
DEFAULT_EXPORT_CHUNK_SIZE = 500

CSV_COLUMNS = (
    "timestamp",
    "actor",
    "action",
    "entityType",
    "entityId",
    "description",
    "ip",
    "sensitive",
)

BOM = "\ufeff"
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


@dataclass
class AuditPage:
    entries: list[AuditLogEntry] = field(default_factory=list)
    page: int = 1
    page_size: int = DEFAULT_MAX_PAGE_SIZE
    total: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
            "total": self.total,
        }


def int_param(params: Mapping[str, Any], name: str, default: int) -> int:
    raw = params.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid {name}: expected an integer", field=name
        ) from None


def parse_pagination(params: Mapping[str, Any]) -> tuple[int, int]:
    """Read ``page`` and ``pageSize`` from query parameters."""
    return (
        int_param(params, "page", 1),
        int_param(params, "pageSize", DEFAULT_MAX_PAGE_SIZE),
    )


def csv_cell(value: Optional[str]) -> str:
    """Quote text a spreadsheet would otherwise evaluate as a formula."""
    value = value or ""
    if value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def csv_row(entry: AuditLogEntry) -> list[str]:
    return [
        entry.created_at.isoformat() if entry.created_at else "",
        csv_cell(entry.actor),
        entry.action.value,
        csv_cell(entry.entity_type),
        csv_cell(entry.entity_id),
        csv_cell(entry.description),
        csv_cell(entry.ip),
        "true" if entry.sensitive else "false",
    ]


class AuditQueryService:
    """Filtered read access over an :class:`AuditStore`.

    Args:
        store: Audit store exposing count/fetch_page/stream.
        max_page_size: Server-side cap on page size.
        export_chunk_size: Rows fetched per store round-trip when exporting.
    """

    def __init__(
        self,
        store: Any,
        max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
        export_chunk_size: int = DEFAULT_EXPORT_CHUNK_SIZE,
    ):
        self._store = store
        self._max_page_size = max_page_size
        self._chunk_size = export_chunk_size

    @property
    def max_page_size(self) -> int:
        return self._max_page_size

    def clamp(self, page: int, page_size: int) -> tuple[int, int]:
        return max(page, 1), min(max(page_size, 1), self._max_page_size)

    async def query(
        self,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        page_size: int = DEFAULT_MAX_PAGE_SIZE,
    ) -> AuditPage:
        """Return one page of entries, newest first, plus the total count.

        Raises:
            PersistenceError: If the store is unavailable.
        """
        page, page_size = self.clamp(page, page_size)
        total = await self._store.count(filters)
        entries: list[AuditLogEntry] = []
        if total:
            entries = await self._store.fetch_page(
                filters, page_size, (page - 1) * page_size
            )
        return AuditPage(
            entries=entries, page=page, page_size=page_size, total=total
        )

    async def export(
        self,
        filters: Optional[AuditFilters] = None,
        flush_every: int = 100,
    ) -> AsyncIterator[bytes]:
        """Stream every matching entry as UTF-8 CSV (BOM + header first).

        The first chunk is only produced after the store answered, so a
        store failure surfaces before any byte is sent.
        """
        entries = self._store.stream(filters, self._chunk_size).__aiter__()
        try:
            first = await entries.__anext__()
        except StopAsyncIteration:
            first = None

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        buffer.write(BOM)
        writer.writerow(CSV_COLUMNS)
        rows = 0
        if first is not None:
            writer.writerow(csv_row(first))
            rows = 1
            async for entry in entries:
                writer.writerow(csv_row(entry))
                rows += 1
                if rows % flush_every == 0:
                    yield buffer.getvalue().encode("utf-8")
                    buffer.seek(0)
                    buffer.truncate(0)
        tail = buffer.getvalue()
        if tail:
            yield tail.encode("utf-8")
        logger.info("Audit export finished: %d row(s)", rows)
