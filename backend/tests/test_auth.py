# tests/test_auth.py — Registration, login, tokens and profile
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

import auth as auth_module
from tests.conftest import TEST_PASSWORD, get_auth_headers


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_success(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "username": "new_user",
            "email": "NewUser@test.com",
            "password": "SecurePass123!",
            "display_name": "New User",
        })
        assert res.status_code == 201
        data = res.json()
        assert "access_token" in data
        assert "refresh_token" in data
        assert data["user"]["username"] == "new_user"
        assert data["user"]["email"] == "newuser@test.com"

    async def test_register_short_password(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "username": "weak", "email": "weak@test.com", "password": "short",
        })
        assert res.status_code == 422

    async def test_register_bad_username(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "username": "no spaces!", "email": "u@test.com", "password": "SecurePass123!",
        })
        assert res.status_code == 422

    async def test_register_duplicate_username(self, client: AsyncClient, alice):
        res = await client.post("/api/v1/auth/register", json={
            "username": "alice", "email": "other@test.com", "password": "SecurePass123!",
        })
        assert res.status_code == 400
        assert "Username" in res.json()["detail"]

    async def test_register_duplicate_email(self, client: AsyncClient, alice):
        res = await client.post("/api/v1/auth/register", json={
            "username": "alice2", "email": alice.email, "password": "SecurePass123!",
        })
        assert res.status_code == 400
        assert "Email" in res.json()["detail"]


@pytest.mark.asyncio
class TestLogin:
    async def test_login_with_username(self, client: AsyncClient, alice):
        res = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": TEST_PASSWORD})
        assert res.status_code == 200
        assert res.json()["user"]["id"] == alice.id

    async def test_login_with_email(self, client: AsyncClient, alice):
        res = await client.post("/api/v1/auth/login", json={"identifier": alice.email, "password": TEST_PASSWORD})
        assert res.status_code == 200

    async def test_login_wrong_password(self, client: AsyncClient, alice):
        res = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": "wrong-password"})
        assert res.status_code == 401

    async def test_login_lockout_after_repeated_failures(self, client: AsyncClient, alice):
        for _ in range(5):
            await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": "wrong-password"})
        res = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": TEST_PASSWORD})
        assert res.status_code == 429

    async def test_stale_attempts_are_dropped(self):
        stale = datetime.now(timezone.utc) - timedelta(minutes=auth_module.LOGIN_LOCKOUT_MINUTES + 1)
        auth_module._login_attempts["ghost"] = [stale] * 5

        auth_module.AuthService._check_brute_force("ghost")
        auth_module.AuthService._check_brute_force("never-seen")
        assert "ghost" not in auth_module._login_attempts
        assert "never-seen" not in auth_module._login_attempts


@pytest.mark.asyncio
class TestTokens:
    async def test_me_requires_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code == 401

    async def test_me_rejects_garbage_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    async def test_me(self, client: AsyncClient, alice):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(alice))
        assert res.status_code == 200
        assert res.json()["username"] == "alice"

    async def test_refresh(self, client: AsyncClient, alice):
        login = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": TEST_PASSWORD})
        refresh = login.json()["refresh_token"]
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh})
        assert res.status_code == 200
        assert res.json()["access_token"]

    async def test_access_token_is_not_a_refresh_token(self, client: AsyncClient, alice):
        login = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": TEST_PASSWORD})
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": login.json()["access_token"]})
        assert res.status_code == 401

    async def test_refresh_token_is_not_an_access_token(self, client: AsyncClient, alice):
        login = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": TEST_PASSWORD})
        headers = {"Authorization": f"Bearer {login.json()['refresh_token']}"}
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401


@pytest.mark.asyncio
class TestProfile:
    async def test_update_profile(self, client: AsyncClient, alice):
        res = await client.put("/api/v1/auth/me", headers=get_auth_headers(alice), json={
            "display_name": "Alice A.", "email": "alice.a@test.com",
        })
        assert res.status_code == 200
        assert res.json()["display_name"] == "Alice A."
        assert res.json()["email"] == "alice.a@test.com"

    async def test_update_email_taken(self, client: AsyncClient, alice, bob):
        res = await client.put("/api/v1/auth/me", headers=get_auth_headers(alice), json={"email": bob.email})
        assert res.status_code == 400

    async def test_change_password(self, client: AsyncClient, alice):
        headers = get_auth_headers(alice)
        bad = await client.put("/api/v1/auth/me/password", headers=headers, json={
            "current_password": "nope-nope", "new_password": "BrandNewPass1",
        })
        assert bad.status_code == 400

        ok = await client.put("/api/v1/auth/me/password", headers=headers, json={
            "current_password": TEST_PASSWORD, "new_password": "BrandNewPass1",
        })
        assert ok.status_code == 200
        login = await client.post("/api/v1/auth/login", json={"identifier": "alice", "password": "BrandNewPass1"})
        assert login.status_code == 200


@pytest.mark.asyncio
class TestUsers:
    async def test_search_excludes_self(self, client: AsyncClient, alice, bob, carol):
        res = await client.get("/api/v1/users/search", params={"q": "teamspace"}, headers=get_auth_headers(alice))
        assert res.status_code == 200
        names = [u["username"] for u in res.json()]
        assert names == ["bob", "carol"]

    async def test_search_needs_two_chars(self, client: AsyncClient, alice):
        res = await client.get("/api/v1/users/search", params={"q": "b"}, headers=get_auth_headers(alice))
        assert res.status_code == 422

    async def test_profile(self, client: AsyncClient, alice, bob):
        res = await client.get(f"/api/v1/users/{bob.id}", headers=get_auth_headers(alice))
        assert res.status_code == 200
        assert res.json()["username"] == "bob"

        missing = await client.get("/api/v1/users/does-not-exist", headers=get_auth_headers(alice))
        assert missing.status_code == 404
