"""
HTTP boundary (aiohttp) for the audit log, secret reads and key migration.

The authentication layer is an external collaborator: it must place an
:class:`AuthContext` (or a mapping with ``username`` and ``access_level``)
under ``request["auth"]`` before these handlers run.
"""
import logging
from typing import Any, Optional
from datetime import datetime, timezone
from collections.abc import Mapping

import orjson
from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from .exceptions import (
    ConfigurationError,
    PersistenceError,
    ValidationError,
)
from .audit.models import AuditAction, AuditFilters, AuthContext, RequestMetadata
from .audit.query import AuditQueryService, int_param, parse_pagination
from .audit.recorder import AuditDispatcher, AuditRecorder
from .audit.store import AuditStore
from .vault.config import CredentialsConfig
from .vault.key_rotation import KeyMigrationJob, MigrationAborted
from .vault.records import build_repositories
from .vault.secret_vault import SecretVault

logger = logging.getLogger("navigator.credentials")

CONFIG_KEY = web.AppKey("credentials_config", CredentialsConfig)
DISPATCHER_KEY = web.AppKey("audit_dispatcher", AuditDispatcher)
QUERY_KEY = web.AppKey("audit_query", AuditQueryService)
VAULT_KEY = web.AppKey("secret_vault", SecretVault)
MIGRATION_KEY = web.AppKey("key_migration", KeyMigrationJob)


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj, default=str).decode("utf-8")


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def get_auth(request: web.Request) -> AuthContext:
    """Return the caller identity set by the authentication layer."""
    auth = request.get("auth")
    if isinstance(auth, AuthContext):
        return auth
    if isinstance(auth, Mapping):
        try:
            return AuthContext(
                username=auth.get("username"),
                access_level=auth.get("access_level") or auth.get("nivelAcesso"),
            )
        except PydanticValidationError:
            pass
    raise web.HTTPUnauthorized(
        text=_dumps({"error": "Unauthorized"}), content_type="application/json"
    )


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Translate package errors into client/server HTTP errors."""
    try:
        return await handler(request)
    except ValidationError as err:
        return json_response({"error": str(err), "field": err.field}, status=400)
    except PersistenceError as err:
        logger.error("Storage error on %s: %s", request.path, err)
        return json_response({"error": "Internal server error"}, status=500)
    except ConfigurationError as err:
        logger.error("Configuration error on %s: %s", request.path, err)
        return json_response({"error": "Internal server error"}, status=500)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json(loads=orjson.loads)
    except (orjson.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

async def audit_list(request: web.Request) -> web.Response:
    """GET /api/auditoria"""
    auth = get_auth(request)
    filters = AuditFilters.from_query(request.query)
    page, page_size = parse_pagination(request.query)
    result = await request.app[QUERY_KEY].query(filters, page, page_size)
    request.app[DISPATCHER_KEY].submit(
        auth, AuditAction.VIEW, "auditoria",
        description="Consultou log de auditoria",
        after={
            **filters.model_dump(mode="json", exclude_none=True),
            "page": result.page,
            "pageSize": result.page_size,
        },
        metadata=RequestMetadata.from_request(request),
    )
    return json_response(result.to_dict())


async def audit_export(request: web.Request) -> web.StreamResponse:
    """GET /api/auditoria/export — streamed CSV attachment."""
    auth = get_auth(request)
    filters = AuditFilters.from_query(request.query)
    chunks = request.app[QUERY_KEY].export(filters).__aiter__()
    # first chunk before prepare(): store errors still become a 500
    first = await chunks.__anext__()
    request.app[DISPATCHER_KEY].submit(
        auth, AuditAction.EXPORT, "auditoria",
        description="Exportou log de auditoria",
        after=filters.model_dump(mode="json", exclude_none=True),
        metadata=RequestMetadata.from_request(request),
    )

    filename = f"auditoria_{datetime.now(timezone.utc).date().isoformat()}.csv"
    response = web.StreamResponse(
        headers={
            "Content-Type": "text/csv; charset=utf-8",
            "Content-Disposition": f'attachment; filename="{filename}"',
        }
    )
    await response.prepare(request)
    await response.write(first)
    async for chunk in chunks:
        await response.write(chunk)
    await response.write_eof()
    return response


async def audit_log(request: web.Request) -> web.Response:
    """POST /api/auditoria/log — client-side access logging."""
    auth = get_auth(request)
    body = await _json_body(request)
    action = body.get("action") or AuditAction.ACCESS
    try:
        action = AuditAction(action)
    except ValueError:
        raise ValidationError(f"Unknown action: {action}", field="action") from None
    sensitive = body.get("sensitive", False)
    if not isinstance(sensitive, bool):
        raise ValidationError("sensitive must be a boolean", field="sensitive")
    request.app[DISPATCHER_KEY].submit(
        auth, action, str(body.get("entityType") or "pagina"),
        entity_id=body.get("entityId"),
        description=str(body.get("description") or ""),
        sensitive=sensitive,
        metadata=RequestMetadata.from_request(request),
    )
    return json_response({"success": True}, status=202)


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

async def list_secrets(request: web.Request) -> web.Response:
    """GET /api/credentials/{entity}"""
    auth = get_auth(request)
    result = await request.app[VAULT_KEY].list_secrets(
        request.match_info["entity"], auth,
        search=request.query.get("search"),
        page=int_param(request.query, "page", 1),
        metadata=RequestMetadata.from_request(request),
    )
    return json_response(result.to_dict())


async def reveal_secret(request: web.Request) -> web.Response:
    """GET /api/credentials/{entity}/{record_id}/secret"""
    auth = get_auth(request)
    entity = request.match_info["entity"]
    record_id = request.match_info["record_id"]
    if record_id.isdigit():
        record_id = int(record_id)
    shown = await request.app[VAULT_KEY].display(
        entity, record_id, auth, RequestMetadata.from_request(request)
    )
    if shown is None:
        return json_response({"error": f"{entity} not found"}, status=404)
    return json_response({
        "entity": entity,
        "id": str(record_id),
        "secret": shown.value,
        "decrypted": shown.decrypted,
    })


async def migrate_encryption(request: web.Request) -> web.Response:
    """POST /api/credentials/migrate-encryption"""
    auth = get_auth(request)
    body = await _json_body(request)
    old_key = body.get("oldKeyMaterial")
    if not isinstance(old_key, str) or not old_key.strip():
        raise ValidationError("oldKeyMaterial is required", field="oldKeyMaterial")

    job = request.app[MIGRATION_KEY]
    dispatcher = request.app[DISPATCHER_KEY]
    metadata = RequestMetadata.from_request(request)
    try:
        result = await job.migrate(
            old_key, timeout=request.app[CONFIG_KEY].migration_timeout
        )
        status = 200
    except RuntimeError as err:
        return json_response({"error": str(err)}, status=409)
    except MigrationAborted as err:
        result = err.result
        status = 500

    dispatcher.submit(
        auth, AuditAction.EDIT, "credencial",
        description=(
            f"Migração de chave: {result.succeeded} migrados, "
            f"{result.failed} falhas"
            + (" (parcial)" if result.partial else "")
        ),
        after={
            "attempted": result.attempted,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "skipped": result.skipped,
            "partial": result.partial,
        },
        metadata=metadata,
        sensitive=True,
    )
    return json_response(result.to_dict(), status=status)


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------

def setup_credentials(
    app: web.Application,
    db_pool: Any,
    config: Optional[CredentialsConfig] = None,
    prefix: str = "/api",
) -> web.Application:
    """Wire stores, services and routes into an aiohttp application.

    Reads configuration from the environment when ``config`` is omitted,
    failing closed (ConfigurationError) if no master key is set.
    """
    config = config or CredentialsConfig.from_env()
    codec = config.codec()
    repositories = build_repositories(db_pool)
    store = AuditStore(db_pool)
    dispatcher = AuditDispatcher(AuditRecorder(store))

    app[CONFIG_KEY] = config
    app[DISPATCHER_KEY] = dispatcher
    app[QUERY_KEY] = AuditQueryService(
        store,
        max_page_size=config.audit_max_page_size,
        export_chunk_size=config.audit_export_chunk_size,
    )
    app[VAULT_KEY] = SecretVault(codec, repositories, dispatcher)
    app[MIGRATION_KEY] = KeyMigrationJob(
        codec,
        repositories.values(),
        workers=config.migration_workers,
        batch_size=config.migration_batch_size,
    )
    app.middlewares.append(error_middleware)

    async def _start(app: web.Application) -> None:
        await app[DISPATCHER_KEY].start()

    async def _stop(app: web.Application) -> None:
        await app[DISPATCHER_KEY].stop()

    app.on_startup.append(_start)
    app.on_cleanup.append(_stop)

    app.router.add_get(f"{prefix}/auditoria", audit_list)
    app.router.add_get(f"{prefix}/auditoria/export", audit_export)
    app.router.add_post(f"{prefix}/auditoria/log", audit_log)
    app.router.add_post(
        f"{prefix}/credentials/migrate-encryption", migrate_encryption
    )
    app.router.add_get(f"{prefix}/credentials/{{entity}}", list_secrets)
    app.router.add_get(
        f"{prefix}/credentials/{{entity}}/{{record_id}}/secret", reveal_secret
    )
    logger.info("Credentials routes registered (key %s)", codec.fingerprint)
    return app
