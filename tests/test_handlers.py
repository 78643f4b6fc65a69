"""
Tests for the aiohttp routes registered by ``setup_credentials``.

Services are rebound to the in-memory stores after wiring, so no database
is needed; authentication is simulated through request headers.
"""
import csv
import io

import pytest
from aiohttp import web
from aiohttp import test_utils

from navigator_credentials import setup_credentials
from navigator_credentials.audit.models import AuditAction, AuditLogEntry, AccessLevel
from navigator_credentials.audit.query import BOM, CSV_COLUMNS, AuditQueryService
from navigator_credentials.audit.recorder import AuditDispatcher, AuditRecorder
from navigator_credentials.handlers import (
    DISPATCHER_KEY,
    MIGRATION_KEY,
    QUERY_KEY,
    VAULT_KEY,
)
from navigator_credentials.vault.config import CredentialsConfig
from navigator_credentials.vault.key_rotation import KeyMigrationJob
from navigator_credentials.vault.secret_vault import UNDECRYPTABLE, WITHHELD, SecretVault

from .conftest import CURRENT_KEY, OLD_KEY, FakePool

ADMIN = {"X-User": "admin.ti", "X-Level": "admin"}
ANALYST = {"X-User": "ana.analista", "X-Level": "analista"}


@web.middleware
async def header_auth(request, handler):
    if "X-User" in request.headers:
        request["auth"] = {
            "username": request.headers["X-User"],
            "nivelAcesso": request.headers.get("X-Level"),
        }
    return await handler(request)


@pytest.fixture
async def client(codec, emails, devices, audit_store):
    app = web.Application(middlewares=[header_auth])
    config = CredentialsConfig(master_key=bytes.fromhex(CURRENT_KEY))
    setup_credentials(app, FakePool(), config)

    dispatcher = AuditDispatcher(AuditRecorder(audit_store))
    app[DISPATCHER_KEY] = dispatcher
    app[QUERY_KEY] = AuditQueryService(audit_store)
    app[VAULT_KEY] = SecretVault(
        codec, {"email": emails, "senha": devices}, dispatcher
    )
    app[MIGRATION_KEY] = KeyMigrationJob(codec, [emails, devices])

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


def dispatcher_of(client):
    return client.server.app[DISPATCHER_KEY]


async def seed_audit(audit_store, count):
    for n in range(count):
        await audit_store.insert(AuditLogEntry(
            actor="admin.ti", action=AuditAction.VIEW,
            entity_type="email" if n % 2 else "pc", entity_id=str(n),
            description=f"item {n}", access_level=AccessLevel.ADMIN,
            sensitive=bool(n % 2),
        ))


class TestAuth:
    """Tests for authentication on every route."""

    @pytest.mark.parametrize("method,path", [
        ("GET", "/api/auditoria"),
        ("GET", "/api/auditoria/export"),
        ("POST", "/api/auditoria/log"),
        ("POST", "/api/credentials/migrate-encryption"),
        ("GET", "/api/credentials/email/1/secret"),
        ("GET", "/api/credentials/email"),
    ])
    async def test_unauthenticated(self, client, method, path):
        """Test requests without an identity are rejected."""
        resp = await client.request(method, path)
        assert resp.status == 401

    async def test_unknown_access_level(self, client):
        """Test an unknown access level is treated as unauthenticated."""
        resp = await client.get(
            "/api/auditoria", headers={"X-User": "x", "X-Level": "root"}
        )
        assert resp.status == 401


class TestAuditRoutes:
    """Tests for the audit log routes."""

    async def test_list(self, client, audit_store):
        """Test a filtered page is returned and the read itself is audited."""
        await seed_audit(audit_store, 5)
        resp = await client.get(
            "/api/auditoria", params={"sensitive": "true"}, headers=ADMIN
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["total"] == 2
        assert body["totalPages"] == 1
        assert [e["entityId"] for e in body["entries"]] == ["3", "1"]
        assert body["entries"][0]["action"] == "visualizar"

        await dispatcher_of(client).join()
        viewed = audit_store.entries[-1]
        assert viewed.action is AuditAction.VIEW
        assert viewed.entity_type == "auditoria"
        assert viewed.actor == "admin.ti"
        assert viewed.sensitive is True
        assert viewed.after == {"sensitive": True, "page": 1, "pageSize": 50}

    async def test_page_size_capped(self, client, audit_store):
        """Test the page size is capped server-side."""
        await seed_audit(audit_store, 3)
        resp = await client.get(
            "/api/auditoria", params={"pageSize": "500"}, headers=ADMIN
        )
        body = await resp.json()
        assert body["pageSize"] == 50

    async def test_empty_result(self, client, audit_store):
        """Test an empty date range returns an empty page."""
        await seed_audit(audit_store, 3)
        resp = await client.get(
            "/api/auditoria",
            params={"sensitive": "true", "dateFrom": "2001-01-01", "dateTo": "2001-01-31"},
            headers=ADMIN,
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["entries"] == []
        assert body["total"] == 0
        assert body["totalPages"] == 0

    async def test_invalid_date(self, client):
        """Test an invalid date is a 400 naming the field."""
        resp = await client.get(
            "/api/auditoria", params={"dateFrom": "ontem"}, headers=ADMIN
        )
        assert resp.status == 400
        body = await resp.json()
        assert body["field"] == "date_from"

    async def test_store_down(self, client, audit_store):
        """Test a store outage is a generic 500."""
        audit_store.available = False
        resp = await client.get("/api/auditoria", headers=ADMIN)
        assert resp.status == 500
        assert await resp.json() == {"error": "Internal server error"}

    async def test_export(self, client, audit_store):
        """Test the CSV attachment and its export entry."""
        await seed_audit(audit_store, 4)
        resp = await client.get(
            "/api/auditoria/export", params={"entityType": "pc"}, headers=ADMIN
        )
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/csv")
        disposition = resp.headers["Content-Disposition"]
        assert "attachment" in disposition
        assert 'filename="auditoria_' in disposition
        text = (await resp.read()).decode("utf-8")
        assert text.startswith(BOM)
        rows = list(csv.reader(io.StringIO(text[1:])))
        assert tuple(rows[0]) == CSV_COLUMNS
        assert [r[4] for r in rows[1:]] == ["2", "0"]

        await dispatcher_of(client).join()
        exported = audit_store.entries[-1]
        assert exported.action is AuditAction.EXPORT
        assert exported.entity_type == "auditoria"
        assert exported.sensitive is True

    async def test_export_store_down(self, client, audit_store):
        """Test an export against a failing store is a 500."""
        audit_store.available = False
        resp = await client.get("/api/auditoria/export", headers=ADMIN)
        assert resp.status == 500

    async def test_client_log(self, client, audit_store):
        """Test client-side access logging with the forwarded address."""
        resp = await client.post(
            "/api/auditoria/log",
            json={"entityType": "relatorio", "description": "Abriu relatorio"},
            headers={**ANALYST, "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )
        assert resp.status == 202
        await dispatcher_of(client).join()
        entry = audit_store.entries[0]
        assert entry.action is AuditAction.ACCESS
        assert entry.actor == "ana.analista"
        assert entry.access_level is AccessLevel.ANALYST
        assert entry.ip == "203.0.113.7"
        assert entry.sensitive is False

    @pytest.mark.parametrize("value", ["false", 0, None, [True]])
    async def test_client_log_sensitive_must_be_boolean(self, client, audit_store, value):
        """Test only a JSON boolean is accepted for sensitive."""
        resp = await client.post(
            "/api/auditoria/log",
            json={"entityType": "relatorio", "sensitive": value},
            headers=ANALYST,
        )
        assert resp.status == 400
        assert (await resp.json())["field"] == "sensitive"
        await dispatcher_of(client).join()
        assert audit_store.entries == []

    async def test_client_log_sensitive_flag(self, client, audit_store):
        """Test an explicit sensitive flag is recorded."""
        resp = await client.post(
            "/api/auditoria/log",
            json={"entityType": "relatorio", "sensitive": True},
            headers=ANALYST,
        )
        assert resp.status == 202
        await dispatcher_of(client).join()
        assert audit_store.entries[0].sensitive is True

    async def test_client_log_invalid_action(self, client):
        """Test an unknown action is rejected."""
        resp = await client.post(
            "/api/auditoria/log", json={"action": "apagar"}, headers=ADMIN
        )
        assert resp.status == 400

    async def test_client_log_invalid_body(self, client):
        """Test a body that is not JSON is rejected."""
        resp = await client.post(
            "/api/auditoria/log", data=b"not json", headers=ADMIN
        )
        assert resp.status == 400


class TestSecretRoutes:
    """Tests for the secret listing and reveal routes."""

    async def test_reveal(self, client, emails, codec, audit_store):
        """Test revealing a secret is audited without the secret."""
        record = emails.add(codec.encrypt("Secr3t!"), email="ana@empresa.com")
        resp = await client.get(
            f"/api/credentials/email/{record.id}/secret", headers=ANALYST
        )
        assert resp.status == 200
        assert await resp.json() == {
            "entity": "email", "id": str(record.id),
            "secret": "Secr3t!", "decrypted": True,
        }
        await dispatcher_of(client).join()
        assert audit_store.entries[0].action is AuditAction.VIEW
        assert "Secr3t!" not in audit_store.entries[0].model_dump_json()

    @pytest.mark.parametrize("headers,expected", [
        (ADMIN, UNDECRYPTABLE),
        (ANALYST, WITHHELD),
    ])
    async def test_undecryptable(self, client, devices, old_codec, headers, expected):
        """Test undecryptable secrets show an indicator by access level."""
        record = devices.add(old_codec.encrypt("Sw1tch!"), equipamento="SW-01")
        resp = await client.get(
            f"/api/credentials/senha/{record.id}/secret", headers=headers
        )
        body = await resp.json()
        assert body["secret"] == expected
        assert body["decrypted"] is False

    async def test_list(self, client, emails, codec, old_codec, audit_store):
        """Test a listing page decrypts what it can and flags the rest."""
        for n in range(12):
            emails.add(codec.encrypt(f"pw-{n}"), email=f"u{n}@empresa.com")
        stale = emails.add(old_codec.encrypt("antiga"), email="legado@empresa.com")
        resp = await client.get(
            "/api/credentials/email", params={"page": "1"}, headers=ADMIN
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["pagination"] == {"total": 13, "page": 1, "pages": 2}
        assert len(body["items"]) == 10
        newest = body["items"][0]
        assert newest["id"] == str(stale.id)
        assert newest["secret"] == UNDECRYPTABLE
        assert newest["decrypted"] is False
        assert body["items"][1]["secret"] == "pw-11"
        assert body["items"][1]["decrypted"] is True

        await dispatcher_of(client).join()
        entry = audit_store.entries[-1]
        assert entry.action is AuditAction.VIEW
        assert entry.entity_type == "email"
        assert "pw-11" not in entry.model_dump_json()

    async def test_list_search(self, client, devices, codec, old_codec):
        """Test searching is case-insensitive over plain columns."""
        devices.add(codec.encrypt("sw"), ip="10.0.0.2", equipamento="SW-Core", categoria="switch")
        devices.add(codec.encrypt("fw"), ip="10.0.0.1", equipamento="FW-01", categoria="firewall")
        devices.add(old_codec.encrypt("sw2"), ip="10.0.0.3", equipamento="SW-Acesso", categoria="Switch")
        resp = await client.get(
            "/api/credentials/senha", params={"search": "SWITCH"}, headers=ANALYST
        )
        body = await resp.json()
        assert body["pagination"] == {"total": 2, "page": 1, "pages": 1}
        assert [(i["equipamento"], i["secret"]) for i in body["items"]] == [
            ("SW-Acesso", WITHHELD), ("SW-Core", "sw"),
        ]

    async def test_list_invalid_page(self, client):
        """Test a non-numeric page is rejected."""
        resp = await client.get(
            "/api/credentials/email", params={"page": "um"}, headers=ADMIN
        )
        assert resp.status == 400
        assert (await resp.json())["field"] == "page"

    async def test_not_found(self, client):
        """Test a missing record is a 404."""
        resp = await client.get("/api/credentials/email/99/secret", headers=ADMIN)
        assert resp.status == 404

    async def test_unknown_entity(self, client):
        """Test an unknown entity is a 400."""
        resp = await client.get("/api/credentials/pc/1/secret", headers=ADMIN)
        assert resp.status == 400


class TestMigrationRoute:
    """Tests for the key migration route."""

    async def test_migrate(self, client, emails, codec, old_codec, audit_store):
        """Test a migration run returns the result and is audited."""
        for n in range(3):
            emails.add(old_codec.encrypt(f"pw-{n}"), email=f"u{n}@empresa.com")
        emails.add("garbage", email="broken@empresa.com")
        resp = await client.post(
            "/api/credentials/migrate-encryption",
            json={"oldKeyMaterial": OLD_KEY}, headers=ADMIN,
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["attempted"] == 4
        assert body["succeeded"] == 3
        assert body["failed"] == 1
        assert body["failureDetails"][0]["label"] == "broken@empresa.com"
        assert codec.decrypt(emails.rows[1].ciphertext) == "pw-0"

        await dispatcher_of(client).join()
        entry = audit_store.entries[-1]
        assert entry.entity_type == "credencial"
        assert entry.sensitive is True
        assert OLD_KEY not in entry.model_dump_json()

    async def test_missing_old_key(self, client):
        """Test the old key material is required."""
        resp = await client.post(
            "/api/credentials/migrate-encryption", json={}, headers=ADMIN
        )
        assert resp.status == 400
        assert (await resp.json())["field"] == "oldKeyMaterial"

    async def test_listing_failure(self, client, emails, devices, old_codec):
        """Test a listing failure returns the partial result as a 500."""
        emails.add(old_codec.encrypt("pw"), email="a@empresa.com")
        devices.fail_listing = True
        resp = await client.post(
            "/api/credentials/migrate-encryption",
            json={"oldKeyMaterial": OLD_KEY}, headers=ADMIN,
        )
        assert resp.status == 500
        body = await resp.json()
        assert body["partial"] is True
