# tests/test_credentials.py — Encrypted project credentials
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from encryption import decrypt
from models import Credential
from tests.conftest import add_org_member, create_project, get_auth_headers, make_group


@pytest.fixture
def project(client, db_session, org, alice, bob):
    """Project administered by alice; bob is a reader"""
    async def _build():
        await add_org_member(db_session, org.id, bob)
        core = await make_group(db_session, org.id, alice, "Core")
        readers = await make_group(db_session, org.id, alice, "Readers", members=[bob])
        created = await create_project(client, org, alice, core)
        await client.post(f"/api/v1/projects/{created['id']}/groups", headers=get_auth_headers(alice), json={
            "group_id": readers.id, "permission_level": "read",
        })
        return created
    return _build


async def stored(db_session, credential_id) -> Credential:
    db_session.expire_all()
    return (await db_session.execute(select(Credential).where(Credential.id == credential_id))).scalar_one()


@pytest.mark.asyncio
class TestCredentials:
    async def test_create_stores_ciphertext_only(self, client: AsyncClient, db_session, alice, project):
        proj = await project()
        res = await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "Stripe key", "value": "sk_live_123", "type": "api_key",
        })
        assert res.status_code == 201
        data = res.json()
        assert data["type"] == "api_key"
        assert "value" not in data
        assert "encrypted_value" not in data
        assert "encryption_iv" not in data

        row = await stored(db_session, data["id"])
        assert "sk_live_123" not in row.encrypted_value
        assert decrypt(row.encrypted_value, row.encryption_iv) == "sk_live_123"

    async def test_list_is_metadata_only(self, client: AsyncClient, alice, bob, project):
        proj = await project()
        for name in ("b-token", "a-password"):
            await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
                "project_id": proj["id"], "name": name, "value": "secret",
            })
        res = await client.get(f"/api/v1/credentials/project/{proj['id']}", headers=get_auth_headers(bob))
        assert res.status_code == 200
        assert [c["name"] for c in res.json()] == ["a-password", "b-token"]
        assert all("secret" not in str(c) for c in res.json())

    async def test_update_reencrypts_with_fresh_iv(self, client: AsyncClient, db_session, alice, project):
        proj = await project()
        created = (await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "db", "value": "first",
        })).json()
        before = await stored(db_session, created["id"])
        old_iv = before.encryption_iv

        res = await client.put(f"/api/v1/credentials/{created['id']}", headers=get_auth_headers(alice), json={
            "value": "second", "description": "rotated",
        })
        assert res.status_code == 200
        assert res.json()["description"] == "rotated"

        after = await stored(db_session, created["id"])
        assert after.encryption_iv != old_iv
        assert decrypt(after.encrypted_value, after.encryption_iv) == "second"

    async def test_rename_keeps_ciphertext(self, client: AsyncClient, db_session, alice, project):
        proj = await project()
        created = (await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "db", "value": "first",
        })).json()
        before = await stored(db_session, created["id"])
        sealed = (before.encrypted_value, before.encryption_iv)

        await client.put(f"/api/v1/credentials/{created['id']}", headers=get_auth_headers(alice), json={
            "name": "database",
        })
        after = await stored(db_session, created["id"])
        assert (after.encrypted_value, after.encryption_iv) == sealed
        assert after.name == "database"

    async def test_readers_cannot_write(self, client: AsyncClient, alice, bob, project):
        proj = await project()
        res = await client.post("/api/v1/credentials", headers=get_auth_headers(bob), json={
            "project_id": proj["id"], "name": "x", "value": "y",
        })
        assert res.status_code == 403

        created = (await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "x", "value": "y",
        })).json()
        assert (await client.delete(f"/api/v1/credentials/{created['id']}", headers=get_auth_headers(bob))).status_code == 403

    async def test_delete(self, client: AsyncClient, alice, project):
        proj = await project()
        created = (await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "x", "value": "y",
        })).json()
        headers = get_auth_headers(alice)
        assert (await client.delete(f"/api/v1/credentials/{created['id']}", headers=headers)).status_code == 200
        assert (await client.delete(f"/api/v1/credentials/{created['id']}", headers=headers)).status_code == 404

    async def test_empty_value(self, client: AsyncClient, alice, project):
        proj = await project()
        res = await client.post("/api/v1/credentials", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "x", "value": "",
        })
        assert res.status_code == 422
