"""
Key Migration — Batch re-encryption of stored secrets under a new master key.

Every secret of every secret-bearing entity is decrypted with the old key
material and re-encrypted with the current codec. Records are read in
creation order and handed to a small worker pool; one record's failure never
aborts the batch. Each record yields an explicit :class:`RecordOutcome`, and
the run returns a full :class:`MigrationResult` accounting.

A record already under the current key fails to decrypt with the old key and
is reported as a failure (reason says so); there is no per-record migration
marker.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Union
from dataclasses import dataclass, field
from collections.abc import Iterable

from ..exceptions import DecryptionError, PersistenceError
from .crypto import SecretCodec
from .records import SecretRecord, SecretRepository

logger = logging.getLogger("navigator.credentials")

MIN_WORKERS = 4
MAX_WORKERS = 16

ALREADY_CURRENT = "already encrypted with the current key"


class MigrationState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class RecordOutcome:
    """Per-record result; ``reason`` is set only on failure."""
    seq: int
    entity: str
    record_id: Any
    label: str
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class MigrationFailure:
    entity: str
    record_id: Any
    label: str
    reason: str

    def describe(self) -> str:
        return f"{self.entity}:{self.record_id} ({self.label}): {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "id": str(self.record_id),
            "label": self.label,
            "reason": self.reason,
        }


@dataclass
class MigrationResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[MigrationFailure] = field(default_factory=list)
    partial: bool = False
    state: MigrationState = MigrationState.COMPLETED

    @classmethod
    def from_outcomes(
        cls, outcomes: Iterable[RecordOutcome], skipped: int, partial: bool
    ) -> "MigrationResult":
        result = cls(skipped=skipped, partial=partial)
        for outcome in sorted(outcomes, key=lambda o: o.seq):
            result.attempted += 1
            if outcome.ok:
                result.succeeded += 1
            else:
                result.failed += 1
                result.failures.append(
                    MigrationFailure(
                        outcome.entity, outcome.record_id,
                        outcome.label, outcome.reason,
                    )
                )
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "partial": self.partial,
            "failureDetails": [f.to_dict() for f in self.failures],
        }


class MigrationAborted(PersistenceError):
    """Listing records failed mid-run; ``result`` holds what was done."""

    def __init__(self, message: str, result: MigrationResult):
        super().__init__(message)
        self.result = result


class KeyMigrationJob:
    """Re-encrypts every stored secret from an old key to the current one.

    Args:
        codec: Codec bound to the current master key.
        repositories: Secret repositories to migrate, in processing order.
        workers: Concurrent record operations (clamped to 4..16).
        batch_size: Records read per store round-trip.
    """

    def __init__(
        self,
        codec: SecretCodec,
        repositories: Iterable[SecretRepository],
        workers: int = 8,
        batch_size: int = 100,
    ):
        self._codec = codec
        self._repositories = list(repositories)
        self._workers = min(max(workers, MIN_WORKERS), MAX_WORKERS)
        self._batch_size = batch_size
        self._state = MigrationState.IDLE
        self._cancel = asyncio.Event()

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def workers(self) -> int:
        return self._workers

    def cancel(self) -> None:
        """Stop launching new record operations; in-flight ones finish."""
        if self._state is MigrationState.RUNNING:
            logger.warning("Key migration cancellation requested")
        self._cancel.set()

    async def _migrate_record(
        self,
        seq: int,
        repo: SecretRepository,
        record: SecretRecord,
        old_codec: SecretCodec,
    ) -> RecordOutcome:
        def failure(reason: str) -> RecordOutcome:
            logger.error(
                "Error migrating secret entity=%s id=%s: %s",
                record.entity, record.id, reason,
            )
            return RecordOutcome(seq, record.entity, record.id, record.label, reason)

        try:
            plaintext = old_codec.decrypt(record.ciphertext)
        except DecryptionError as err:
            if self._codec.can_decrypt(record.ciphertext):
                return failure(ALREADY_CURRENT)
            return failure(f"cannot decrypt with old key: {err}")

        try:
            swapped = await repo.replace_ciphertext(
                record.id, self._codec.encrypt(plaintext), record.ciphertext,
            )
        except Exception as err:
            return failure(f"write failed: {type(err).__name__}: {err}")
        if not swapped:
            return failure("record changed or removed during migration")
        return RecordOutcome(seq, record.entity, record.id, record.label)

    async def migrate(
        self,
        old_key_material: Union[str, bytes],
        timeout: Optional[float] = None,
    ) -> MigrationResult:
        """Run one migration over every secret repository.

        Args:
            old_key_material: Previous key (64 hex chars) or passphrase.
            timeout: Seconds after which no new records are started.

        Returns:
            MigrationResult; ``partial`` is True if cancelled or timed out.

        Raises:
            ConfigurationError: If old_key_material is empty.
            RuntimeError: If this job is already running.
            MigrationAborted: If reading records from the store failed.
        """
        if self._state is MigrationState.RUNNING:
            raise RuntimeError("Key migration already running")
        old_codec = SecretCodec.from_material(
            old_key_material, backend=self._codec.backend
        )
        self._state = MigrationState.RUNNING
        self._cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        timer = loop.call_later(timeout, self.cancel) if timeout else None

        queue: asyncio.Queue = asyncio.Queue(maxsize=self._workers * 2)
        outcomes: list[RecordOutcome] = []
        lock = asyncio.Lock()
        skipped = 0
        listing_error: Optional[PersistenceError] = None

        logger.info(
            "Starting key migration to key %s over %s (workers=%d, batch_size=%d)",
            self._codec.fingerprint,
            ", ".join(r.name for r in self._repositories),
            self._workers, self._batch_size,
        )

        async def producer() -> None:
            nonlocal skipped, listing_error
            seq = 0
            try:
                for repo in self._repositories:
                    cursor = None
                    while not self._cancel.is_set():
                        batch = await repo.fetch_batch(cursor, self._batch_size)
                        if not batch:
                            break
                        cursor = (batch[-1].created_at, batch[-1].id)
                        for record in batch:
                            if self._cancel.is_set():
                                return
                            if not record.ciphertext:
                                skipped += 1
                                continue
                            await queue.put((seq, repo, record))
                            seq += 1
            except PersistenceError as err:
                listing_error = err
                self._cancel.set()
            finally:
                for _ in range(self._workers):
                    await queue.put(None)

        async def worker() -> None:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if self._cancel.is_set():
                    continue
                outcome = await self._migrate_record(*item, old_codec)
                async with lock:
                    outcomes.append(outcome)

        try:
            await asyncio.gather(
                producer(), *(worker() for _ in range(self._workers))
            )
        finally:
            if timer is not None:
                timer.cancel()
            self._state = MigrationState.COMPLETED

        result = MigrationResult.from_outcomes(
            outcomes, skipped, partial=self._cancel.is_set()
        )
        logger.info(
            "Key migration complete: attempted=%d succeeded=%d failed=%d "
            "skipped=%d partial=%s",
            result.attempted, result.succeeded, result.failed,
            result.skipped, result.partial,
        )
        if listing_error is not None:
            raise MigrationAborted(
                f"Key migration aborted: {listing_error}", result
            ) from listing_error
        return result
