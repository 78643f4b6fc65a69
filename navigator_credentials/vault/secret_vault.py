"""
SecretVault — Encrypted credential storage with audited access.

Provides the public API for secret-bearing entities:
- ``create(entity, data, secret)`` — encrypt and persist a new record
- ``update(entity, record_id, data, secret)`` — edit fields and/or the secret
- ``reveal(entity, record_id)`` — decrypt a secret for an authorized caller
- ``display(entity, record_id)`` — like reveal, with an explicit indicator
  instead of an error when the secret cannot be decrypted
- ``list_secrets(entity, search, page)`` — one page of records, newest
  first, each with its secret shown the same way as ``display``
- ``delete(entity, record_id)`` — remove a record

Every operation is handed to the audit dispatcher with redacted snapshots.

Security Note:
    Never log plaintext or ciphertext values. Only log entity names,
    record ids and operations.
"""
import math
import logging
from typing import Any, NamedTuple, Optional
from dataclasses import dataclass, field

from ..exceptions import DecryptionError, ValidationError
from ..audit.models import AuditAction, AuthContext, RequestMetadata
from .crypto import SecretCodec
from .records import SecretRecord, SecretRepository

logger = logging.getLogger("navigator.credentials")

UNDECRYPTABLE = "cannot decrypt - check key"
WITHHELD = "cannot display secret"
DEFAULT_LIST_PAGE_SIZE = 10


class Revealed(NamedTuple):
    """Result of :meth:`SecretVault.display`."""
    value: str
    decrypted: bool


@dataclass
class SecretPage:
    """One page of :meth:`SecretVault.list_secrets`."""
    entity: str
    items: list[tuple[SecretRecord, Revealed]] = field(default_factory=list)
    page: int = 1
    page_size: int = DEFAULT_LIST_PAGE_SIZE
    total: int = 0

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        items = []
        for record, shown in self.items:
            item = record.snapshot()
            item["secret"] = shown.value
            item["decrypted"] = shown.decrypted
            item["createdAt"] = record.created_at
            items.append(item)
        return {
            "items": items,
            "pagination": {
                "total": self.total,
                "page": self.page,
                "pages": self.pages,
            },
        }


class SecretVault:
    """Field-level encryption front end for secret-bearing entities.

    Args:
        codec: Codec bound to the current master key.
        repositories: Secret repositories keyed by entity name.
        audit: Dispatcher used to submit audit entries.
    """

    def __init__(
        self,
        codec: SecretCodec,
        repositories: dict[str, SecretRepository],
        audit: Any,
    ):
        self._codec = codec
        self._repositories = repositories
        self._audit = audit

    @property
    def entities(self) -> list[str]:
        return list(self._repositories)

    def repository(self, entity: str) -> SecretRepository:
        try:
            return self._repositories[entity]
        except KeyError:
            raise ValidationError(
                f"Unknown secret entity: {entity}", field="entity"
            ) from None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_secret(self, secret: Any) -> str:
        if not isinstance(secret, str) or not secret.strip():
            raise ValidationError("Secret cannot be empty", field="senha")
        return secret

    def _validate_data(self, repo: SecretRepository, data: dict[str, Any], partial: bool) -> dict[str, Any]:
        unknown = set(data) - set(repo.entity.columns) - {repo.entity.secret_column}
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {repo.name}: {', '.join(sorted(unknown))}"
            )
        clean = {k: v for k, v in data.items() if k in repo.entity.columns}
        if not partial:
            missing = [c for c in repo.entity.columns if not clean.get(c)]
            if missing:
                raise ValidationError(
                    f"Missing field(s) for {repo.name}: {', '.join(missing)}",
                    field=missing[0],
                )
        return clean

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create(
        self,
        entity: str,
        data: dict[str, Any],
        secret: str,
        auth: AuthContext,
        metadata: Optional[RequestMetadata] = None,
    ) -> SecretRecord:
        """Encrypt ``secret`` and persist a new record.

        Raises:
            ValidationError: On unknown entity, missing fields or empty secret.
            PersistenceError: If the store rejects the insert.
        """
        repo = self.repository(entity)
        clean = self._validate_data(repo, data, partial=False)
        secret = self._validate_secret(secret)
        record = await repo.insert(clean, self._codec.encrypt(secret))
        self._audit.submit(
            auth, AuditAction.CREATE, entity,
            entity_id=record.id,
            description=f"Criou {entity} {record.label}",
            after={**record.snapshot(), repo.entity.secret_column: secret},
            metadata=metadata,
        )
        logger.debug("Secret created: entity=%s id=%s", entity, record.id)
        return record

    async def update(
        self,
        entity: str,
        record_id: Any,
        data: dict[str, Any],
        auth: AuthContext,
        secret: Optional[str] = None,
        metadata: Optional[RequestMetadata] = None,
    ) -> Optional[SecretRecord]:
        """Edit plain fields; re-encrypt the secret only when a new one is given.

        Returns:
            Updated record, or None if it does not exist.
        """
        repo = self.repository(entity)
        clean = self._validate_data(repo, data, partial=True)
        ciphertext = None
        if secret is not None and secret.strip():
            ciphertext = self._codec.encrypt(secret)
        current = await repo.fetch(record_id)
        if current is None:
            return None
        record = await repo.update(record_id, clean, ciphertext)
        if record is None:
            return None
        after = record.snapshot()
        if ciphertext is not None:
            after[repo.entity.secret_column] = secret
        self._audit.submit(
            auth, AuditAction.EDIT, entity,
            entity_id=record.id,
            description=(
                f"Editou {entity} {record.label}"
                + (" (senha alterada)" if ciphertext is not None else "")
            ),
            before=current.snapshot(),
            after=after,
            metadata=metadata,
        )
        logger.debug("Secret updated: entity=%s id=%s", entity, record.id)
        return record

    async def reveal(
        self,
        entity: str,
        record_id: Any,
        auth: AuthContext,
        metadata: Optional[RequestMetadata] = None,
    ) -> Optional[str]:
        """Decrypt and return a stored secret.

        Returns:
            Plaintext, or None if the record does not exist.

        Raises:
            DecryptionError: If the ciphertext cannot be decrypted with the
                current key.
        """
        repo = self.repository(entity)
        record = await repo.fetch(record_id)
        if record is None:
            return None
        self._audit.submit(
            auth, AuditAction.VIEW, entity,
            entity_id=record.id,
            description=f"Visualizou senha de {entity} {record.label}",
            metadata=metadata,
        )
        if not record.ciphertext:
            return ""
        try:
            return self._codec.decrypt(record.ciphertext)
        except DecryptionError as err:
            logger.error(
                "Cannot decrypt secret entity=%s id=%s: %s",
                entity, record.id, err,
            )
            raise

    async def display(
        self,
        entity: str,
        record_id: Any,
        auth: AuthContext,
        metadata: Optional[RequestMetadata] = None,
    ) -> Optional[Revealed]:
        """Reveal a secret for display.

        An undecryptable secret is never shown blank or as ciphertext:
        administrators get :data:`UNDECRYPTABLE`, everyone else
        :data:`WITHHELD`.
        """
        try:
            value = await self.reveal(entity, record_id, auth, metadata)
        except DecryptionError:
            return Revealed(UNDECRYPTABLE if auth.is_admin else WITHHELD, False)
        if value is None:
            return None
        return Revealed(value, True)

    def _shown(self, record: SecretRecord, auth: AuthContext) -> Revealed:
        if not record.ciphertext:
            return Revealed("", True)
        try:
            return Revealed(self._codec.decrypt(record.ciphertext), True)
        except DecryptionError:
            return Revealed(UNDECRYPTABLE if auth.is_admin else WITHHELD, False)

    async def list_secrets(
        self,
        entity: str,
        auth: AuthContext,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_LIST_PAGE_SIZE,
        metadata: Optional[RequestMetadata] = None,
    ) -> SecretPage:
        """Return one page of records, newest first, with secrets shown.

        ``search`` matches any plain column case-insensitively. A row whose
        secret cannot be decrypted carries the same indicator as
        :meth:`display` and never fails the page.

        Raises:
            ValidationError: On an unknown entity.
            PersistenceError: If the store is unavailable.
        """
        repo = self.repository(entity)
        page = max(page, 1)
        page_size = max(page_size, 1)
        records, total = await repo.search(
            search, page_size, (page - 1) * page_size
        )
        items = [(record, self._shown(record, auth)) for record in records]
        failed = sum(1 for _, shown in items if not shown.decrypted)
        if failed:
            logger.error(
                "Cannot decrypt %d secret(s) listing entity=%s page=%d",
                failed, entity, page,
            )
        query = {"page": page}
        if search and search.strip():
            query["search"] = search.strip()
        self._audit.submit(
            auth, AuditAction.VIEW, entity,
            description=f"Listou {entity} ({len(items)} de {total})",
            after=query,
            metadata=metadata,
        )
        return SecretPage(
            entity=entity, items=items, page=page,
            page_size=page_size, total=total,
        )

    async def delete(
        self,
        entity: str,
        record_id: Any,
        auth: AuthContext,
        metadata: Optional[RequestMetadata] = None,
    ) -> bool:
        repo = self.repository(entity)
        record = await repo.delete(record_id)
        if record is None:
            return False
        self._audit.submit(
            auth, AuditAction.DELETE, entity,
            entity_id=record.id,
            description=f"Excluiu {entity} {record.label}",
            before=record.snapshot(),
            metadata=metadata,
        )
        logger.debug("Secret deleted: entity=%s id=%s", entity, record.id)
        return True
