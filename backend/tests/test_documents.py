# tests/test_documents.py — Project document tree
import pytest
from httpx import AsyncClient

from tests.conftest import add_org_member, create_project, get_auth_headers, make_group


@pytest.fixture
def project(client, db_session, org, alice, bob):
    """Project "Apollo" administered by alice's group; bob reads through "Readers" """
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


async def new_doc(client, project, user, title, **extra):
    res = await client.post("/api/v1/documents", headers=get_auth_headers(user), json={
        "project_id": project["id"], "title": title, **extra,
    })
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestDocuments:
    async def test_create_and_list_without_content(self, client: AsyncClient, alice, bob, project):
        proj = await project()
        intro = await new_doc(client, proj, alice, "Intro", content="# Hello")
        setup = await new_doc(client, proj, alice, "Setup")
        child = await new_doc(client, proj, alice, "Child", parent_id=intro["id"])
        assert (intro["sort_order"], setup["sort_order"], child["sort_order"]) == (0, 1, 0)

        res = await client.get(f"/api/v1/documents/project/{proj['id']}", headers=get_auth_headers(bob))
        assert res.status_code == 200
        docs = res.json()
        assert {d["title"] for d in docs} == {"Intro", "Setup", "Child"}
        assert all(d["content"] is None for d in docs)

        full = await client.get(f"/api/v1/documents/{intro['id']}", headers=get_auth_headers(bob))
        assert full.json()["content"] == "# Hello"

    async def test_readers_cannot_write(self, client: AsyncClient, alice, bob, project):
        proj = await project()
        doc = await new_doc(client, proj, alice, "Intro")
        res = await client.post("/api/v1/documents", headers=get_auth_headers(bob), json={
            "project_id": proj["id"], "title": "Nope",
        })
        assert res.status_code == 403
        res = await client.put(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(bob), json={"title": "X"})
        assert res.status_code == 403

    async def test_outsider_and_missing(self, client: AsyncClient, alice, carol, project):
        proj = await project()
        doc = await new_doc(client, proj, alice, "Intro")
        assert (await client.get(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(carol))).status_code == 403
        assert (await client.get("/api/v1/documents/missing", headers=get_auth_headers(carol))).status_code == 404
        listed = await client.get(f"/api/v1/documents/project/{proj['id']}", headers=get_auth_headers(carol))
        assert listed.status_code == 403

    async def test_update_content_and_parent(self, client: AsyncClient, alice, project):
        proj = await project()
        a = await new_doc(client, proj, alice, "A", content="old")
        b = await new_doc(client, proj, alice, "B")
        res = await client.put(f"/api/v1/documents/{b['id']}", headers=get_auth_headers(alice), json={
            "content": "new", "parent_id": a["id"],
        })
        assert res.status_code == 200
        assert res.json()["parent_id"] == a["id"]

        res = await client.put(f"/api/v1/documents/{a['id']}", headers=get_auth_headers(alice), json={"content": None})
        assert res.json()["content"] is None

    async def test_cycles_rejected(self, client: AsyncClient, alice, project):
        proj = await project()
        a = await new_doc(client, proj, alice, "A")
        b = await new_doc(client, proj, alice, "B", parent_id=a["id"])
        headers = get_auth_headers(alice)
        assert (await client.put(f"/api/v1/documents/{a['id']}", headers=headers, json={
            "parent_id": b["id"],
        })).status_code == 400
        assert (await client.put(f"/api/v1/documents/{a['id']}", headers=headers, json={
            "parent_id": a["id"],
        })).status_code == 400

    async def test_parent_from_other_project(self, client: AsyncClient, db_session, org, alice, project):
        proj = await project()
        other_group = await make_group(db_session, org.id, alice, "Other")
        other = await create_project(client, org, alice, other_group, name="Zeus")
        foreign = await new_doc(client, other, alice, "Foreign")
        res = await client.post("/api/v1/documents", headers=get_auth_headers(alice), json={
            "project_id": proj["id"], "title": "X", "parent_id": foreign["id"],
        })
        assert res.status_code == 400

    async def test_delete_reparents_children(self, client: AsyncClient, alice, project):
        proj = await project()
        root = await new_doc(client, proj, alice, "Root")
        middle = await new_doc(client, proj, alice, "Middle", parent_id=root["id"])
        leaf = await new_doc(client, proj, alice, "Leaf", parent_id=middle["id"])
        headers = get_auth_headers(alice)

        assert (await client.delete(f"/api/v1/documents/{middle['id']}", headers=headers)).status_code == 200
        res = await client.get(f"/api/v1/documents/{leaf['id']}", headers=headers)
        assert res.json()["parent_id"] == root["id"]


@pytest.mark.asyncio
class TestReorder:
    async def test_reorder(self, client: AsyncClient, alice, project):
        proj = await project()
        a = await new_doc(client, proj, alice, "A")
        b = await new_doc(client, proj, alice, "B")
        res = await client.post("/api/v1/documents/reorder", headers=get_auth_headers(alice), json={"items": [
            {"id": a["id"], "sort_order": 1},
            {"id": b["id"], "sort_order": 0},
        ]})
        assert res.status_code == 200
        assert res.json()["count"] == 2

        listed = (await client.get(f"/api/v1/documents/project/{proj['id']}", headers=get_auth_headers(alice))).json()
        assert [d["title"] for d in listed] == ["B", "A"]

    async def test_reorder_across_projects(self, client: AsyncClient, db_session, org, alice, project):
        proj = await project()
        other_group = await make_group(db_session, org.id, alice, "Other")
        other = await create_project(client, org, alice, other_group, name="Zeus")
        a = await new_doc(client, proj, alice, "A")
        z = await new_doc(client, other, alice, "Z")
        res = await client.post("/api/v1/documents/reorder", headers=get_auth_headers(alice), json={"items": [
            {"id": a["id"], "sort_order": 0},
            {"id": z["id"], "sort_order": 1},
        ]})
        assert res.status_code == 400

    async def test_reorder_unknown_document(self, client: AsyncClient, alice, project):
        await project()
        res = await client.post("/api/v1/documents/reorder", headers=get_auth_headers(alice), json={"items": [
            {"id": "ghost", "sort_order": 0},
        ]})
        assert res.status_code == 404

    async def test_reorder_needs_write(self, client: AsyncClient, alice, bob, project):
        proj = await project()
        a = await new_doc(client, proj, alice, "A")
        res = await client.post("/api/v1/documents/reorder", headers=get_auth_headers(bob), json={"items": [
            {"id": a["id"], "sort_order": 3},
        ]})
        assert res.status_code == 403
