"""
Audit Recorder — builds, redacts and persists one entry per action.

``AuditRecorder.record()`` never raises into the business operation that
called it: any failure to build or persist an entry goes to an error
channel (the operational log by default). ``AuditDispatcher`` puts the
recorder behind an unbounded queue drained by a background worker, so
callers submit and move on without waiting for the write.

Security Note:
    Snapshots are redacted before they leave this module. Error reports
    carry only actor, action and entity identifiers.
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Union
from collections.abc import Mapping

from .models import (
    SENSITIVE_ENTITIES,
    AccessLevel,
    AuditAction,
    AuditLogEntry,
    AuthContext,
    RequestMetadata,
)
from .redactor import collect_secrets, redact

logger = logging.getLogger("navigator.audit")

MASK = "***"

ErrorHandler = Callable[[BaseException, dict], None]


def log_audit_failure(err: BaseException, context: dict) -> None:
    """Default error channel: report the dropped entry to the operational log."""
    logger.error(
        "Audit entry dropped: actor=%s action=%s entity=%s id=%s: %s",
        context.get("actor"), context.get("action"),
        context.get("entity_type"), context.get("entity_id"),
        f"{type(err).__name__}: {err}",
    )


def classify(
    entity_type: str,
    sensitive: Optional[bool] = None,
    sensitive_entities: frozenset = SENSITIVE_ENTITIES,
) -> bool:
    """Decide whether an action is sensitive.

    Any action on a sensitive entity type is sensitive, reads included.
    An explicit ``sensitive=True`` upgrades other entities; it never
    downgrades a sensitive entity type.
    """
    if entity_type.strip().lower() in sensitive_entities:
        return True
    return bool(sensitive)


def scrub(description: str, secrets: set[str]) -> str:
    for value in sorted(secrets, key=len, reverse=True):
        description = description.replace(value, MASK)
    return description


class AuditRecorder:
    """Persists audit entries through an append-only store.

    Args:
        store: Object exposing ``async insert(entry)``.
        on_error: Error channel for dropped entries.
        sensitive_entities: Entity types always classified as sensitive.
    """

    def __init__(
        self,
        store: Any,
        on_error: Optional[ErrorHandler] = None,
        sensitive_entities: frozenset = SENSITIVE_ENTITIES,
    ):
        self._store = store
        self._on_error = on_error or log_audit_failure
        self._sensitive_entities = sensitive_entities

    def build_entry(
        self,
        actor: str,
        action: Union[AuditAction, str],
        entity_type: str,
        entity_id: Any = None,
        description: str = "",
        before: Optional[Mapping[str, Any]] = None,
        after: Optional[Mapping[str, Any]] = None,
        access_level: Union[AccessLevel, str] = AccessLevel.ADMIN,
        metadata: Optional[RequestMetadata] = None,
        sensitive: Optional[bool] = None,
    ) -> AuditLogEntry:
        """Classify, redact and validate an entry without persisting it."""
        secrets = collect_secrets(before) | collect_secrets(after)
        metadata = metadata or RequestMetadata()
        return AuditLogEntry(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            description=scrub(description or "", secrets),
            before=redact(before),
            after=redact(after),
            ip=metadata.ip,
            user_agent=metadata.user_agent,
            access_level=access_level,
            sensitive=classify(
                entity_type, sensitive, self._sensitive_entities
            ),
        )

    async def record(
        self,
        actor: str,
        action: Union[AuditAction, str],
        entity_type: str,
        entity_id: Any = None,
        description: str = "",
        before: Optional[Mapping[str, Any]] = None,
        after: Optional[Mapping[str, Any]] = None,
        access_level: Union[AccessLevel, str] = AccessLevel.ADMIN,
        metadata: Optional[RequestMetadata] = None,
        sensitive: Optional[bool] = None,
    ) -> Optional[AuditLogEntry]:
        """Build and persist one entry.

        Returns:
            The stored entry, or None if it was dropped.
        """
        try:
            entry = self.build_entry(
                actor, action, entity_type, entity_id, description,
                before, after, access_level, metadata, sensitive,
            )
            stored = await self._store.insert(entry)
        except Exception as err:
            context = {
                "actor": actor,
                "action": getattr(action, "value", action),
                "entity_type": entity_type,
                "entity_id": entity_id,
            }
            try:
                self._on_error(err, context)
            except Exception:
                logger.exception("Audit error handler failed")
            return None
        logger.debug(
            "Audit %s: %s %s/%s sensitive=%s",
            stored.id, stored.action.value, stored.entity_type,
            stored.entity_id, stored.sensitive,
        )
        return stored

    async def record_for(
        self,
        auth: AuthContext,
        action: Union[AuditAction, str],
        entity_type: str,
        entity_id: Any = None,
        description: str = "",
        before: Optional[Mapping[str, Any]] = None,
        after: Optional[Mapping[str, Any]] = None,
        metadata: Optional[RequestMetadata] = None,
        sensitive: Optional[bool] = None,
    ) -> Optional[AuditLogEntry]:
        """Shortcut for :meth:`record` taking the caller's AuthContext."""
        return await self.record(
            auth.username, action, entity_type, entity_id, description,
            before, after, auth.access_level, metadata, sensitive,
        )


class AuditDispatcher:
    """Fire-and-forget front end for an :class:`AuditRecorder`.

    ``submit()`` enqueues and returns immediately; one background worker
    performs the writes in submission order.
    """

    def __init__(self, recorder: AuditRecorder):
        self._recorder = recorder
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    @property
    def recorder(self) -> AuditRecorder:
        return self._recorder

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="audit-dispatcher"
            )
            logger.debug("Audit dispatcher started")

    def submit(self, auth: AuthContext, action: Union[AuditAction, str], entity_type: str, **kwargs: Any) -> None:
        """Queue an entry for ``AuditRecorder.record_for``.

        Must be called from inside the running event loop; the worker is
        started on first use if needed.
        """
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="audit-dispatcher"
            )
        self._queue.put_nowait((auth, action, entity_type, kwargs))

    async def _run(self) -> None:
        while True:
            auth, action, entity_type, kwargs = await self._queue.get()
            try:
                await self._recorder.record_for(auth, action, entity_type, **kwargs)
            except Exception:
                # malformed submission; the worker keeps draining the queue
                logger.exception(
                    "Audit submission rejected: action=%s entity=%s",
                    getattr(action, "value", action), entity_type,
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted entry has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue, then stop the worker."""
        if self._worker is None:
            return
        if self.running:
            await self.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.debug("Audit dispatcher stopped")
