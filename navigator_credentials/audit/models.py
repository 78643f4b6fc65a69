"""Audit data contracts: actions, entries, filters and caller context."""
from enum import Enum
from typing import Any, Optional
from collections.abc import Mapping
from datetime import date, datetime, time, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError


class AuditAction(str, Enum):
    """Fixed action vocabulary, stored with the application's wire values."""
    CREATE = "criar"
    EDIT = "editar"
    DELETE = "excluir"
    VIEW = "visualizar"
    EXPORT = "exportar"
    DOWNLOAD = "download"
    ACCESS = "acessar"


class AccessLevel(str, Enum):
    ADMIN = "admin"
    ANALYST = "analista"
    SUPPORT = "suporte"


# entity types holding secrets, personal data, or the audit log itself
SENSITIVE_ENTITIES = frozenset({
    "email",
    "senha",
    "usuario",
    "auditoria",
    "credencial",
})


class AuthContext(BaseModel):
    """Identity supplied by the (external) authentication layer."""
    username: str = Field(min_length=1)
    access_level: AccessLevel

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.access_level is AccessLevel.ADMIN


class RequestMetadata(BaseModel):
    """Caller network metadata captured with every audit entry."""
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_request(cls, request: Any) -> "RequestMetadata":
        """Extract client IP and user agent from an aiohttp request.

        IP resolution order: first X-Forwarded-For hop, X-Real-IP,
        the peer address, then ``unknown``.
        """
        headers = request.headers
        ip = None
        forwarded = headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip() or None
        if not ip:
            ip = headers.get("X-Real-IP") or request.remote or "unknown"
        return cls(ip=ip, user_agent=headers.get("User-Agent"))


class AuditLogEntry(BaseModel):
    """One immutable audit record.

    ``id`` and ``created_at`` are assigned by the store on insert.
    """
    id: Optional[int] = None
    actor: str = Field(min_length=1)
    action: AuditAction
    entity_type: str = Field(min_length=1)
    entity_id: Optional[str] = None
    description: str = ""
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    access_level: AccessLevel
    sensitive: bool = False
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("actor", "entity_type", "description")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("entity_id", mode="before")
    @classmethod
    def entity_id_as_text(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        return str(v)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation used by the query endpoint."""
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action.value,
            "entityType": self.entity_type,
            "entityId": self.entity_id or "",
            "description": self.description,
            "before": self.before,
            "after": self.after,
            "ip": self.ip or "",
            "userAgent": self.user_agent or "",
            "accessLevel": self.access_level.value,
            "sensitive": self.sensitive,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_moment(value: Any, end_of_day: bool) -> Any:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime.combine(
            value, time.max if end_of_day else time.min, tzinfo=timezone.utc
        )
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if len(text) == 10:
            day = date.fromisoformat(text)
            return _parse_moment(day, end_of_day)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return _as_utc(datetime.fromisoformat(text))
    return value


class AuditFilters(BaseModel):
    """Intersection of optional filters over the audit log.

    A date-only ``date_to`` covers the whole day.
    """
    actor: Optional[str] = None
    action: Optional[AuditAction] = None
    entity_type: Optional[str] = None
    sensitive: Optional[bool] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("actor", "entity_type", "action", "sensitive", mode="before")
    @classmethod
    def blank_is_unset(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("date_from", mode="before")
    @classmethod
    def parse_date_from(cls, v: Any) -> Any:
        return _parse_moment(v, end_of_day=False)

    @field_validator("date_to", mode="before")
    @classmethod
    def parse_date_to(cls, v: Any) -> Any:
        return _parse_moment(v, end_of_day=True)

    @model_validator(mode="after")
    def validate_range(self) -> "AuditFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("dateFrom must not be after dateTo")
        return self

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "AuditFilters":
        """Build filters from request query parameters (camelCase names).

        Raises:
            ValidationError: If any value cannot be parsed.
        """
        names = {
            "actor": "actor",
            "action": "action",
            "entityType": "entity_type",
            "sensitive": "sensitive",
            "dateFrom": "date_from",
            "dateTo": "date_to",
        }
        values = {
            field: params[name] for name, field in names.items() if name in params
        }
        try:
            return cls(**values)
        except PydanticValidationError as err:
            first = err.errors()[0]
            field = str(first["loc"][0]) if first["loc"] else None
            raise ValidationError(
                f"Invalid filter {field}: {first['msg']}", field=field
            ) from None
