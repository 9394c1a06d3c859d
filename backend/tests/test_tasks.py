# tests/test_tasks.py — Task API: columns, moves, edits, archive
from datetime import timedelta

import pytest
from httpx import AsyncClient

from auth import ROLE_PERMISSIONS
from models import TaskStatus, UserRole, utcnow
from tests.conftest import get_auth_headers, make_task

IN_PROGRESS = TaskStatus.IN_PROGRESS.value
REVIEW = TaskStatus.TO_BE_REVIEWED.value
DONE = TaskStatus.DONE.value


async def column_names(client, headers, status):
    res = await client.get("/api/v1/tasks", params={"status": status}, headers=headers)
    assert res.status_code == 200
    return [t["name"] for t in res.json()]


@pytest.mark.asyncio
class TestAccess:
    async def test_requires_auth(self, client: AsyncClient):
        res = await client.get("/api/v1/tasks")
        assert res.status_code in (401, 403)

    async def test_pending_account_blocked(self, client: AsyncClient, pending_user):
        res = await client.get("/api/v1/tasks", headers=get_auth_headers(pending_user))
        assert res.status_code == 403

    async def test_write_permission_gates_mutations(self, client: AsyncClient, db_session, test_user, monkeypatch):
        task = await make_task(db_session, test_user, "Mine")
        monkeypatch.setitem(ROLE_PERMISSIONS, UserRole.USER, ["tasks:read"])
        headers = get_auth_headers(test_user)

        assert (await client.get("/api/v1/tasks", headers=headers)).status_code == 200
        res = await client.post(
            f"/api/v1/tasks/{task.id}/move", json={"status": REVIEW, "index": 0}, headers=headers,
        )
        assert res.status_code == 403
        assert "tasks:write" in res.json()["detail"]

    async def test_users_only_see_their_own(self, client: AsyncClient, db_session, test_user, other_user):
        await make_task(db_session, test_user, "Mine")
        await make_task(db_session, other_user, "Theirs")
        res = await client.get("/api/v1/tasks", headers=get_auth_headers(test_user))
        assert [t["name"] for t in res.json()] == ["Mine"]

    async def test_sysadmin_sees_everything(self, client: AsyncClient, db_session, test_user, other_user, sysadmin):
        await make_task(db_session, test_user, "Mine")
        await make_task(db_session, other_user, "Theirs")
        res = await client.get("/api/v1/tasks", headers=get_auth_headers(sysadmin))
        assert {t["name"] for t in res.json()} == {"Mine", "Theirs"}
        assert {t["depcolor"] for t in res.json()} == {"#3b82f6", "#22c55e"}

    async def test_other_users_task_is_not_found(self, client: AsyncClient, db_session, test_user, other_user):
        task = await make_task(db_session, other_user, "Theirs")
        res = await client.get(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(test_user))
        assert res.status_code == 404
        assert res.json()["code"] == "TW-TASK-002"


@pytest.mark.asyncio
class TestCreate:
    async def test_create_appends_to_in_progress(self, client: AsyncClient, db_session, test_user):
        await make_task(db_session, test_user, "Existing")
        res = await client.post("/api/v1/tasks", json={
            "name": "Write report",
            "department": "Engineering",
            "comments": "<p>Quarterly</p>",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 201
        data = res.json()
        assert data["status"] == IN_PROGRESS
        assert data["order"] == 1
        assert data["user_id"] == test_user.id
        assert data["created_at"] is not None
        assert len(data["history"]) == 1
        assert data["history"][0]["new_value"] == IN_PROGRESS

    async def test_create_strips_unsafe_markup(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/tasks", json={
            "name": "Markup",
            "department": "Engineering",
            "comments": "<p onclick=\"steal()\"><b>Bold</b></p><script>alert(1)</script>",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 201
        assert res.json()["comments"] == "<p><b>Bold</b></p>"

    async def test_department_required(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/tasks", json={"name": "No home"}, headers=get_auth_headers(test_user))
        assert res.status_code == 400
        assert res.json()["code"] == "TW-TASK-001"

    async def test_unknown_department(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/tasks", json={
            "name": "Lost", "department": "Nowhere",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_user_cannot_assign_to_others(self, client: AsyncClient, test_user, other_user):
        res = await client.post("/api/v1/tasks", json={
            "name": "Yours now", "department": "Engineering", "user_id": other_user.id,
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 403
        assert res.json()["code"] == "TW-AUTH-003"

    async def test_admin_assignment_records_owner(self, client: AsyncClient, test_user, depadmin):
        res = await client.post("/api/v1/tasks", json={
            "name": "Delegated", "department": "Engineering", "user_id": test_user.id,
        }, headers=get_auth_headers(depadmin))
        assert res.status_code == 201
        data = res.json()
        assert data["user_id"] == test_user.id
        assert [h["field"] for h in data["history"]] == ["status", "userId"]

    async def test_new_task_cannot_start_done(self, client: AsyncClient, sysadmin, engineering):
        res = await client.post("/api/v1/tasks", json={
            "name": "Skip ahead", "department": "Engineering", "status": DONE,
        }, headers=get_auth_headers(sysadmin))
        assert res.status_code == 409
        assert res.json()["code"] == "TW-TASK-003"


@pytest.mark.asyncio
class TestMove:
    async def test_reorder_within_column(self, client: AsyncClient, db_session, test_user):
        a = await make_task(db_session, test_user, "A", order=0)
        await make_task(db_session, test_user, "B", order=1)
        await make_task(db_session, test_user, "C", order=2)
        headers = get_auth_headers(test_user)

        res = await client.post(f"/api/v1/tasks/{a.id}/move", json={"status": IN_PROGRESS, "index": 2}, headers=headers)
        assert res.status_code == 200
        assert res.json()["changed"] is True
        assert res.json()["affected"] == 3
        assert await column_names(client, headers, IN_PROGRESS) == ["B", "C", "A"]

    async def test_move_to_review_closes_gap(self, client: AsyncClient, db_session, test_user):
        await make_task(db_session, test_user, "A", order=0)
        b = await make_task(db_session, test_user, "B", order=1)
        await make_task(db_session, test_user, "C", order=2)
        headers = get_auth_headers(test_user)

        res = await client.post(f"/api/v1/tasks/{b.id}/move", json={"status": REVIEW, "index": 0}, headers=headers)
        assert res.status_code == 200
        assert res.json()["task"]["status"] == REVIEW

        tasks = (await client.get("/api/v1/tasks", params={"status": IN_PROGRESS}, headers=headers)).json()
        assert [(t["name"], t["order"]) for t in tasks] == [("A", 0), ("C", 1)]

        history = (await client.get(f"/api/v1/tasks/{b.id}/history", headers=headers)).json()
        assert history[-1]["old_value"] == IN_PROGRESS
        assert history[-1]["new_value"] == REVIEW

    async def test_noop_move(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Still")
        res = await client.post(f"/api/v1/tasks/{task.id}/move", json={"status": IN_PROGRESS, "index": 0},
                                headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["changed"] is False
        assert res.json()["affected"] == 0

    async def test_user_cannot_approve(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Waiting", status=TaskStatus.TO_BE_REVIEWED)
        res = await client.post(f"/api/v1/tasks/{task.id}/move", json={"status": DONE, "index": 0},
                                headers=get_auth_headers(test_user))
        assert res.status_code == 409
        assert res.json()["code"] == "TW-TASK-003"

    async def test_index_out_of_range(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Far")
        res = await client.post(f"/api/v1/tasks/{task.id}/move", json={"status": REVIEW, "index": 5},
                                headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_admin_marks_done(self, client: AsyncClient, db_session, test_user, depadmin):
        task = await make_task(db_session, test_user, "Ship it", status=TaskStatus.TO_BE_REVIEWED)
        res = await client.post(f"/api/v1/tasks/{task.id}/move", json={"status": DONE, "index": 0},
                                headers=get_auth_headers(depadmin))
        assert res.status_code == 200
        assert res.json()["task"]["status"] == DONE
        assert res.json()["task"]["done_at"] is not None

        res = await client.get("/api/v1/tasks/board", headers=get_auth_headers(test_user))
        board = res.json()
        assert list(board.keys()) == [IN_PROGRESS, REVIEW, DONE]
        assert [t["name"] for t in board[DONE]] == ["Ship it"]


@pytest.mark.asyncio
class TestEdit:
    async def test_edit_records_one_entry_per_field(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Draft")
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={
            "name": "Final", "comments": "<p>Done soon</p>",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 200
        data = res.json()
        assert data["changed"] is True
        history = data["task"]["history"]
        assert [h["field"] for h in history[1:]] == ["name", "comments"]
        assert history[1]["timestamp"] == history[2]["timestamp"]

    async def test_comments_are_sanitised(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Draft")
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={
            "comments": '<p>ok</p><script>alert(1)</script><img src=x onerror=alert(1)>'
                        '<a href="javascript:alert(1)" onclick="x">link</a>',
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 200
        comments = res.json()["task"]["comments"]
        assert comments.startswith("<p>ok</p>")
        for payload in ("script", "onerror", "onclick", "javascript", "<img"):
            assert payload not in comments
        assert "link</a>" in comments

    async def test_unchanged_save_is_noop(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Same")
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={"name": "Same", "comments": ""},
                                 headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["changed"] is False
        assert len(res.json()["task"]["history"]) == 1

    async def test_blank_name_rejected(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Named")
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={"name": ""}, headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_status_edit_clears_review_flag(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Submit")
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={"status": REVIEW},
                                 headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["task"]["status"] == REVIEW
        assert res.json()["task"]["is_reviewed"] is False

    async def test_admin_sends_back_for_rework(self, client: AsyncClient, db_session, test_user, depadmin):
        task = await make_task(db_session, test_user, "Redo", status=TaskStatus.TO_BE_REVIEWED)
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={"status": IN_PROGRESS},
                                 headers=get_auth_headers(depadmin))
        assert res.json()["task"]["is_reviewed"] is True

    async def test_transitions(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Options")
        res = await client.get(f"/api/v1/tasks/{task.id}/transitions", headers=get_auth_headers(test_user))
        assert res.json() == {
            "task_id": task.id,
            "current": IN_PROGRESS,
            "allowed": [IN_PROGRESS, REVIEW],
            "can_edit": True,
        }


@pytest.mark.asyncio
class TestArchive:
    async def test_sweep_archives_stale_done(self, client: AsyncClient, db_session, test_user, depadmin):
        await make_task(db_session, test_user, "Old", status=TaskStatus.DONE, order=0,
                        done_at=utcnow() - timedelta(hours=49))
        await make_task(db_session, test_user, "Recent", status=TaskStatus.DONE, order=1,
                        done_at=utcnow() - timedelta(hours=10))
        headers = get_auth_headers(depadmin)

        res = await client.post("/api/v1/tasks/archive-sweep", headers=headers)
        assert res.status_code == 200
        assert res.json() == {"archived": 1}

        archive = (await client.get("/api/v1/tasks/archive", headers=headers)).json()
        assert [t["name"] for t in archive] == ["Old"]
        assert archive[0]["archived_on"] is not None
        assert archive[0]["done_at"] is None

        done = (await client.get("/api/v1/tasks", params={"status": DONE}, headers=headers)).json()
        assert [(t["name"], t["order"]) for t in done] == [("Recent", 0)]

        res = await client.post("/api/v1/tasks/archive-sweep", headers=headers)
        assert res.json() == {"archived": 0}

    async def test_users_cannot_sweep(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/tasks/archive-sweep", headers=get_auth_headers(test_user))
        assert res.status_code == 403

    async def test_reopen(self, client: AsyncClient, db_session, test_user, depadmin):
        await make_task(db_session, test_user, "Active")
        task = await make_task(db_session, test_user, "Back again", status=TaskStatus.ARCHIVED)

        res = await client.post(f"/api/v1/tasks/{task.id}/reopen", headers=get_auth_headers(depadmin))
        assert res.status_code == 200
        data = res.json()
        assert data["status"] == IN_PROGRESS
        assert data["order"] == 1
        assert data["is_reviewed"] is True

    async def test_archived_task_is_read_only(self, client: AsyncClient, db_session, test_user, sysadmin):
        task = await make_task(db_session, test_user, "Frozen", status=TaskStatus.ARCHIVED)
        res = await client.patch(f"/api/v1/tasks/{task.id}", json={"name": "Thawed"},
                                 headers=get_auth_headers(sysadmin))
        assert res.status_code == 403

    async def test_users_cannot_reopen(self, client: AsyncClient, db_session, test_user):
        task = await make_task(db_session, test_user, "Gone", status=TaskStatus.ARCHIVED)
        res = await client.post(f"/api/v1/tasks/{task.id}/reopen", headers=get_auth_headers(test_user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestDelete:
    async def test_delete_renumbers_column(self, client: AsyncClient, db_session, test_user):
        a = await make_task(db_session, test_user, "A", order=0)
        await make_task(db_session, test_user, "B", order=1)
        headers = get_auth_headers(test_user)

        res = await client.delete(f"/api/v1/tasks/{a.id}", headers=headers)
        assert res.status_code == 200
        tasks = (await client.get("/api/v1/tasks", headers=headers)).json()
        assert [(t["name"], t["order"]) for t in tasks] == [("B", 0)]

    async def test_delete_all_requires_confirmation(self, client: AsyncClient, db_session, test_user, sysadmin):
        await make_task(db_session, test_user, "A")
        headers = get_auth_headers(sysadmin)

        res = await client.delete("/api/v1/tasks", headers=headers)
        assert res.status_code == 400

        res = await client.delete("/api/v1/tasks", params={"confirm": "DELETE-ALL"}, headers=headers)
        assert res.json() == {"deleted": 1}

    async def test_depadmin_cannot_delete_all(self, client: AsyncClient, depadmin):
        res = await client.delete("/api/v1/tasks", params={"confirm": "DELETE-ALL"},
                                  headers=get_auth_headers(depadmin))
        assert res.status_code == 403


@pytest.mark.asyncio
async def test_export(client: AsyncClient, db_session, test_user):
    await make_task(db_session, test_user, "Exported")
    res = await client.get("/api/v1/tasks/export", headers=get_auth_headers(test_user))
    assert res.status_code == 200
    assert "attachment" in res.headers["content-disposition"]
    data = res.json()
    assert data["count"] == 1
    assert data["tasks"][0]["history"][0]["field"] == "status"
