# tests/test_boards.py — Boards, board grants, columns & labels
import pytest
from httpx import AsyncClient

from models import PermissionLevel
from permissions import check_board_access
from tests.conftest import add_org_member, create_board, get_auth_headers, make_group


@pytest.mark.asyncio
class TestBoardCrud:
    async def test_create_with_default_columns(self, client: AsyncClient, org, alice):
        board = await create_board(client, org, alice)
        assert board["key"] == "ENG"
        assert board["my_permission"] == "admin"
        columns = [(c["name"], c["color"], c["is_default"]) for c in board["columns"]]
        assert columns == [
            ("Backlog", "#6b7280", True),
            ("To Do", "#3b82f6", False),
            ("In Progress", "#f59e0b", False),
            ("Done", "#10b981", False),
            ("Deployed", "#8b5cf6", False),
        ]
        assert [c["sort_order"] for c in board["columns"]] == [0, 1, 2, 3, 4]

    @pytest.mark.parametrize("key", ["E", "eng1", "TOOLONGKEYXX", "EN-G"])
    async def test_invalid_key(self, client: AsyncClient, org, alice, key):
        res = await client.post("/api/v1/boards", headers=get_auth_headers(alice), json={
            "organization_id": org.id, "name": "B", "key": key,
        })
        assert res.status_code == 422

    async def test_duplicate_key_in_org(self, client: AsyncClient, org, alice):
        await create_board(client, org, alice)
        res = await client.post("/api/v1/boards", headers=get_auth_headers(alice), json={
            "organization_id": org.id, "name": "Again", "key": "ENG",
        })
        assert res.status_code == 400

    async def test_non_member_cannot_create(self, client: AsyncClient, org, bob):
        res = await client.post("/api/v1/boards", headers=get_auth_headers(bob), json={
            "organization_id": org.id, "name": "B", "key": "BOB",
        })
        assert res.status_code == 403

    async def test_groups_only_granted_where_caller_is_admin(self, client: AsyncClient, db_session, org, alice, bob):
        await add_org_member(db_session, org.id, bob)
        own = await make_group(db_session, org.id, bob, "Bob's")
        foreign = await make_group(db_session, org.id, alice, "Alice's", members=[bob])

        board = await create_board(client, org, bob, group_ids=[own.id, foreign.id])
        assert board["access_groups"] == [
            {"group_id": own.id, "group_name": "Bob's", "permission_level": "write"},
        ]

    async def test_list_and_get_visibility(self, client: AsyncClient, db_session, org, alice, bob, carol):
        await add_org_member(db_session, org.id, bob)
        await add_org_member(db_session, org.id, carol)
        readers = await make_group(db_session, org.id, alice, "Readers", members=[bob])
        board = await create_board(client, org, alice)
        await client.post(f"/api/v1/boards/{board['id']}/groups", headers=get_auth_headers(alice), json={
            "group_id": readers.id, "permission_level": "read",
        })

        bob_boards = (await client.get("/api/v1/boards", headers=get_auth_headers(bob))).json()
        assert [(b["id"], b["my_permission"]) for b in bob_boards] == [(board["id"], "read")]
        assert (await client.get("/api/v1/boards", headers=get_auth_headers(carol))).json() == []

        assert (await client.get(f"/api/v1/boards/{board['id']}", headers=get_auth_headers(bob))).status_code == 200
        existing = await client.get(f"/api/v1/boards/{board['id']}", headers=get_auth_headers(carol))
        missing = await client.get("/api/v1/boards/missing", headers=get_auth_headers(carol))
        assert existing.status_code == missing.status_code == 403

    async def test_update_needs_admin(self, client: AsyncClient, db_session, org, alice, bob):
        await add_org_member(db_session, org.id, bob)
        writers = await make_group(db_session, org.id, alice, "Writers", members=[bob])
        board = await create_board(client, org, alice)
        await client.post(f"/api/v1/boards/{board['id']}/groups", headers=get_auth_headers(alice), json={
            "group_id": writers.id, "permission_level": "write",
        })
        res = await client.put(f"/api/v1/boards/{board['id']}", headers=get_auth_headers(bob), json={"name": "X"})
        assert res.status_code == 403
        res = await client.put(f"/api/v1/boards/{board['id']}", headers=get_auth_headers(alice), json={"name": "Core"})
        assert res.json()["name"] == "Core"

    async def test_delete_needs_creator_even_for_admins(self, client: AsyncClient, db_session, org, alice, bob):
        await add_org_member(db_session, org.id, bob)
        admins = await make_group(db_session, org.id, alice, "Admins", members=[bob])
        board = await create_board(client, org, alice)
        await client.post(f"/api/v1/boards/{board['id']}/groups", headers=get_auth_headers(alice), json={
            "group_id": admins.id, "permission_level": "admin",
        })
        assert (await check_board_access(db_session, board["id"], bob.id, PermissionLevel.ADMIN)).has_access

        res = await client.delete(f"/api/v1/boards/{board['id']}", headers=get_auth_headers(bob))
        assert res.status_code == 403
        res = await client.delete(f"/api/v1/boards/{board['id']}", headers=get_auth_headers(alice))
        assert res.status_code == 200
        assert not (await check_board_access(db_session, board["id"], alice.id)).found


@pytest.mark.asyncio
class TestBoardGrants:
    async def test_grant_lifecycle(self, client: AsyncClient, db_session, org, alice, bob):
        await add_org_member(db_session, org.id, bob)
        team = await make_group(db_session, org.id, alice, "Team", members=[bob])
        board = await create_board(client, org, alice)
        base = f"/api/v1/boards/{board['id']}/groups"
        headers = get_auth_headers(alice)

        assert (await client.post(base, headers=headers, json={})).status_code == 400
        assert (await client.post(base, headers=headers, json={"group_id": "ghost"})).status_code == 404

        res = await client.post(base, headers=headers, json={"group_id": team.id, "permission_level": "read"})
        assert res.status_code == 201
        assert (await client.post(base, headers=headers, json={"group_id": team.id})).status_code == 400

        notes = (await client.get("/api/v1/notifications", headers=get_auth_headers(bob))).json()
        assert notes[0]["type"] == "board"

        res = await client.put(f"{base}/{team.id}", headers=headers, json={"permission_level": "write"})
        assert res.json()["permission_level"] == "write"
        access = await check_board_access(db_session, board["id"], bob.id, PermissionLevel.WRITE)
        assert access.has_access

        assert (await client.get(base, headers=get_auth_headers(bob))).status_code == 200
        assert (await client.delete(f"{base}/{team.id}", headers=headers)).status_code == 200
        assert (await client.get(base, headers=get_auth_headers(bob))).status_code == 403

    async def test_grant_changes_notify_members(self, client: AsyncClient, db_session, org, alice, bob):
        await add_org_member(db_session, org.id, bob)
        team = await make_group(db_session, org.id, alice, "Team", members=[bob])
        board = await create_board(client, org, alice, name="Roadmap")
        base = f"/api/v1/boards/{board['id']}/groups"
        headers = get_auth_headers(alice)
        await client.post(base, headers=headers, json={"group_id": team.id, "permission_level": "read"})

        await client.put(f"{base}/{team.id}", headers=headers, json={"permission_level": "admin"})
        await client.delete(f"{base}/{team.id}", headers=headers)

        notes = (await client.get("/api/v1/notifications", headers=get_auth_headers(bob))).json()
        by_title = {n["title"]: n for n in notes}
        assert set(by_title) == {"Board Access Granted", "Board Permission Updated", "Board Access Removed"}
        assert by_title["Board Permission Updated"]["message"] == \
            'Your group "Team" now has admin access to the board "Roadmap".'
        assert by_title["Board Permission Updated"]["link"] == f"/boards/{board['id']}"
        assert by_title["Board Access Removed"]["message"] == \
            'Your group "Team" no longer has access to the board "Roadmap".'
        assert all(n["type"] == "board" for n in notes)

        # the acting admin is not notified about their own change
        assert (await client.get("/api/v1/notifications", headers=headers)).json() == []

    async def test_group_from_other_org(self, client: AsyncClient, db_session, org, alice, make_user):
        dave = await make_user("dave")
        other = (await client.post("/api/v1/organizations", headers=get_auth_headers(dave), json={
            "name": "Elsewhere",
        })).json()
        foreign = await make_group(db_session, other["id"], dave)
        board = await create_board(client, org, alice)
        res = await client.post(f"/api/v1/boards/{board['id']}/groups", headers=get_auth_headers(alice), json={
            "group_id": foreign.id,
        })
        assert res.status_code == 400


@pytest.mark.asyncio
class TestColumns:
    async def test_add_reorder_update(self, client: AsyncClient, org, alice):
        board = await create_board(client, org, alice)
        base = f"/api/v1/boards/{board['id']}/columns"
        headers = get_auth_headers(alice)

        res = await client.post(base, headers=headers, json={"name": "QA", "wip_limit": 3})
        assert res.status_code == 201
        qa = res.json()
        assert qa["sort_order"] == 5

        ids = [c["id"] for c in board["columns"]]
        new_order = [qa["id"]] + ids
        res = await client.put(f"{base}/reorder", headers=headers, json={"column_ids": new_order})
        assert res.status_code == 200
        assert [c["id"] for c in res.json()] == new_order

        res = await client.put(f"{base}/{qa['id']}", headers=headers, json={"is_default": True, "name": "Review"})
        assert res.json()["is_default"] is True
        columns = (await client.get(base, headers=headers)).json()
        assert [c["name"] for c in columns if c["is_default"]] == ["Review"]

    async def test_reorder_rejects_foreign_ids(self, client: AsyncClient, org, alice):
        board = await create_board(client, org, alice)
        res = await client.put(
            f"/api/v1/boards/{board['id']}/columns/reorder",
            headers=get_auth_headers(alice), json={"column_ids": ["nope"]},
        )
        assert res.status_code == 400

    async def test_cannot_delete_column_with_tasks(self, client: AsyncClient, org, alice):
        board = await create_board(client, org, alice)
        headers = get_auth_headers(alice)
        backlog = board["columns"][0]["id"]
        await client.post(f"/api/v1/boards/{board['id']}/tasks", headers=headers, json={"title": "T"})
        res = await client.delete(f"/api/v1/boards/{board['id']}/columns/{backlog}", headers=headers)
        assert res.status_code == 400

    async def test_cannot_delete_only_column(self, client: AsyncClient, org, alice):
        board = await create_board(client, org, alice)
        headers = get_auth_headers(alice)
        base = f"/api/v1/boards/{board['id']}/columns"
        *rest, last = [c["id"] for c in board["columns"]]
        for column_id in rest:
            assert (await client.delete(f"{base}/{column_id}", headers=headers)).status_code == 200
        assert (await client.delete(f"{base}/{last}", headers=headers)).status_code == 400

    async def test_unknown_column(self, client: AsyncClient, org, alice):
        board = await create_board(client, org, alice)
        res = await client.put(
            f"/api/v1/boards/{board['id']}/columns/missing", headers=get_auth_headers(alice), json={"name": "X"},
        )
        assert res.status_code == 404


@pytest.mark.asyncio
class TestLabels:
    async def test_labels_need_write(self, client: AsyncClient, db_session, org, alice, bob):
        await add_org_member(db_session, org.id, bob)
        readers = await make_group(db_session, org.id, alice, "Readers", members=[bob])
        board = await create_board(client, org, alice)
        await client.post(f"/api/v1/boards/{board['id']}/groups", headers=get_auth_headers(alice), json={
            "group_id": readers.id, "permission_level": "read",
        })
        base = f"/api/v1/boards/{board['id']}/labels"

        assert (await client.post(base, headers=get_auth_headers(bob), json={"name": "bug"})).status_code == 403
        res = await client.post(base, headers=get_auth_headers(alice), json={"name": "bug", "color": "#ff0000"})
        assert res.status_code == 201
        label = res.json()

        listed = (await client.get(base, headers=get_auth_headers(bob))).json()
        assert [l["name"] for l in listed] == ["bug"]

        assert (await client.delete(f"{base}/{label['id']}", headers=get_auth_headers(alice))).status_code == 200
        assert (await client.delete(f"{base}/{label['id']}", headers=get_auth_headers(alice))).status_code == 404
