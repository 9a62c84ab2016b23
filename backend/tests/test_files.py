# tests/test_files.py — Project files, folders and signed links
import pytest
from httpx import AsyncClient

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


async def upload(client, project, user, name="notes.txt", body=b"hello world", folder_id=None):
    data = {"project_id": project["id"]}
    if folder_id:
        data["folder_id"] = folder_id
    return await client.post(
        "/api/v1/files/upload", headers=get_auth_headers(user),
        data=data, files={"file": (name, body, "text/plain")},
    )


async def new_folder(client, project, user, name, parent_id=None):
    res = await client.post("/api/v1/files/folders", headers=get_auth_headers(user), json={
        "project_id": project["id"], "name": name, "parent_id": parent_id,
    })
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestFiles:
    async def test_upload_and_download(self, client: AsyncClient, storage, alice, bob, project):
        proj = await project()
        res = await upload(client, proj, alice)
        assert res.status_code == 201
        meta = res.json()
        assert meta["size"] == 11
        assert meta["original_name"] == "notes.txt"
        assert meta["mime_type"] == "text/plain"

        download = await client.get(f"/api/v1/files/{meta['id']}/download", headers=get_auth_headers(bob))
        assert download.status_code == 200
        assert download.content == b"hello world"
        assert 'filename="notes.txt"' in download.headers["content-disposition"]

    async def test_download_non_latin1_name(self, client: AsyncClient, alice, project):
        proj = await project()
        meta = (await upload(client, proj, alice, name="报告.txt", body=b"quarterly")).json()
        assert meta["original_name"] == "报告.txt"

        download = await client.get(f"/api/v1/files/{meta['id']}/download", headers=get_auth_headers(alice))
        assert download.status_code == 200
        assert download.content == b"quarterly"
        disposition = download.headers["content-disposition"]
        assert 'filename="__.txt"' in disposition
        assert "filename*=UTF-8''%E6%8A%A5%E5%91%8A.txt" in disposition

    async def test_readers_cannot_upload(self, client: AsyncClient, bob, project):
        proj = await project()
        assert (await upload(client, proj, bob)).status_code == 403

    async def test_outsider(self, client: AsyncClient, alice, carol, project):
        proj = await project()
        meta = (await upload(client, proj, alice)).json()
        assert (await client.get(f"/api/v1/files/{meta['id']}", headers=get_auth_headers(carol))).status_code == 403
        assert (await client.get("/api/v1/files/missing", headers=get_auth_headers(carol))).status_code == 404

    async def test_too_large(self, client: AsyncClient, monkeypatch, alice, project):
        import routers.files as files_module
        monkeypatch.setattr(files_module, "MAX_UPLOAD_BYTES", 4)
        proj = await project()
        assert (await upload(client, proj, alice, body=b"12345")).status_code == 400

    async def test_signed_url_round_trip(self, client: AsyncClient, alice, project):
        proj = await project()
        meta = (await upload(client, proj, alice, body=b"signed bytes")).json()
        res = await client.get(f"/api/v1/files/{meta['id']}/url", headers=get_auth_headers(alice))
        assert res.status_code == 200
        url = res.json()["url"]
        assert res.json()["expires_in"] > 0

        # the link carries its own credential
        fetched = await client.get(url)
        assert fetched.status_code == 200
        assert fetched.content == b"signed bytes"

        tampered = await client.get(url.replace("signature=", "signature=0"))
        assert tampered.status_code == 403

    async def test_expired_signed_url(self, client: AsyncClient, storage, alice, project):
        proj = await project()
        meta = (await upload(client, proj, alice)).json()
        # mint a link that expired a minute ago
        files = (await client.get(f"/api/v1/files/project/{proj['id']}", headers=get_auth_headers(alice))).json()
        assert files["files"][0]["id"] == meta["id"]
        key = next(iter((storage.root / "projects" / proj["id"]).iterdir())).name
        url = storage.get_signed_url(f"projects/{proj['id']}/{key}", expires_in=-60)
        assert (await client.get(url)).status_code == 403

    async def test_delete_removes_object(self, client: AsyncClient, storage, alice, bob, project):
        proj = await project()
        meta = (await upload(client, proj, alice)).json()
        assert len(list((storage.root / "projects" / proj["id"]).iterdir())) == 1

        assert (await client.delete(f"/api/v1/files/{meta['id']}", headers=get_auth_headers(bob))).status_code == 403
        assert (await client.delete(f"/api/v1/files/{meta['id']}", headers=get_auth_headers(alice))).status_code == 200
        assert list((storage.root / "projects" / proj["id"]).iterdir()) == []
        assert (await client.get(f"/api/v1/files/{meta['id']}", headers=get_auth_headers(alice))).status_code == 404


@pytest.mark.asyncio
class TestFolders:
    async def test_listing_is_per_level(self, client: AsyncClient, alice, project):
        proj = await project()
        docs = await new_folder(client, proj, alice, "Docs")
        await upload(client, proj, alice, name="root.txt")
        await upload(client, proj, alice, name="inside.txt", folder_id=docs["id"])
        headers = get_auth_headers(alice)

        root = (await client.get(f"/api/v1/files/project/{proj['id']}", headers=headers)).json()
        assert [f["name"] for f in root["files"]] == ["root.txt"]
        assert [f["name"] for f in root["folders"]] == ["Docs"]

        inside = (await client.get(
            f"/api/v1/files/project/{proj['id']}", params={"folder_id": docs["id"]}, headers=headers,
        )).json()
        assert [f["name"] for f in inside["files"]] == ["inside.txt"]
        assert inside["folders"] == []

    async def test_folder_from_other_project(self, client: AsyncClient, db_session, org, alice, project):
        proj = await project()
        other_group = await make_group(db_session, org.id, alice, "Other")
        other = await create_project(client, org, alice, other_group, name="Zeus")
        foreign = await new_folder(client, other, alice, "Foreign")

        assert (await upload(client, proj, alice, folder_id=foreign["id"])).status_code == 400
        res = await client.post("/api/v1/files/folders", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "name": "Sub", "parent_id": foreign["id"],
        })
        assert res.status_code == 400

    async def test_rename(self, client: AsyncClient, alice, bob, project):
        proj = await project()
        folder = await new_folder(client, proj, alice, "Old")
        res = await client.put(f"/api/v1/files/folders/{folder['id']}", headers=get_auth_headers(bob), json={
            "name": "New",
        })
        assert res.status_code == 403
        res = await client.put(f"/api/v1/files/folders/{folder['id']}", headers=get_auth_headers(alice), json={
            "name": " New ",
        })
        assert res.json()["name"] == "New"

    async def test_delete_is_recursive(self, client: AsyncClient, storage, alice, project):
        proj = await project()
        top = await new_folder(client, proj, alice, "Top")
        nested = await new_folder(client, proj, alice, "Nested", parent_id=top["id"])
        await upload(client, proj, alice, name="a.txt", folder_id=top["id"])
        await upload(client, proj, alice, name="b.txt", folder_id=nested["id"])
        kept = (await upload(client, proj, alice, name="keep.txt")).json()
        headers = get_auth_headers(alice)

        res = await client.delete(f"/api/v1/files/folders/{top['id']}", headers=headers)
        assert res.status_code == 200
        assert res.json()["files_deleted"] == 2

        root = (await client.get(f"/api/v1/files/project/{proj['id']}", headers=headers)).json()
        assert [f["id"] for f in root["files"]] == [kept["id"]]
        assert root["folders"] == []
        assert len(list((storage.root / "projects" / proj["id"]).iterdir())) == 1

    async def test_unknown_folder(self, client: AsyncClient, alice, project):
        await project()
        res = await client.delete("/api/v1/files/folders/missing", headers=get_auth_headers(alice))
        assert res.status_code == 404


class TestContentDisposition:
    def test_quotes_and_non_ascii_are_replaced_in_fallback(self):
        from routers.files import _content_disposition
        header = _content_disposition('say "hi".txt')
        assert header.startswith('attachment; filename="say _hi_.txt"; ')
        assert header.endswith("filename*=UTF-8''say%20%22hi%22.txt")
