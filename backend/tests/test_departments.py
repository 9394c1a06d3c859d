# tests/test_departments.py — Department registry tests
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers, make_task


@pytest.mark.asyncio
async def test_list_departments(client: AsyncClient, test_user, marketing):
    res = await client.get("/api/v1/departments", headers=get_auth_headers(test_user))
    assert res.status_code == 200
    assert [d["name"] for d in res.json()] == ["Engineering", "Marketing"]


@pytest.mark.asyncio
async def test_create_department(client: AsyncClient, sysadmin):
    res = await client.post("/api/v1/departments", json={"name": "Finance", "depcolor": "#f59e0b"},
                            headers=get_auth_headers(sysadmin))
    assert res.status_code == 201
    assert res.json()["name"] == "Finance"
    assert res.json()["depcolor"] == "#f59e0b"


@pytest.mark.asyncio
async def test_duplicate_name_is_case_insensitive(client: AsyncClient, sysadmin, engineering):
    res = await client.post("/api/v1/departments", json={"name": "engineering"},
                            headers=get_auth_headers(sysadmin))
    assert res.status_code == 409


@pytest.mark.asyncio
async def test_invalid_colour(client: AsyncClient, sysadmin):
    res = await client.post("/api/v1/departments", json={"name": "Legal", "depcolor": "red"},
                            headers=get_auth_headers(sysadmin))
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_depadmin_cannot_create(client: AsyncClient, depadmin):
    res = await client.post("/api/v1/departments", json={"name": "Shadow IT"},
                            headers=get_auth_headers(depadmin))
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_rename_carries_over(client: AsyncClient, db_session, sysadmin, test_user, engineering):
    await make_task(db_session, test_user, "Build")
    headers = get_auth_headers(sysadmin)

    res = await client.patch(f"/api/v1/departments/{engineering.id}", json={"name": "R&D"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["name"] == "R&D"

    user = (await client.get(f"/api/v1/users/{test_user.id}", headers=headers)).json()
    assert user["department"] == "R&D"
    tasks = (await client.get("/api/v1/tasks", headers=headers)).json()
    assert tasks[0]["department"] == "R&D"
    assert tasks[0]["depcolor"] == "#3b82f6"


@pytest.mark.asyncio
async def test_recolour(client: AsyncClient, sysadmin, engineering):
    res = await client.patch(f"/api/v1/departments/{engineering.id}", json={"depcolor": "#000000"},
                             headers=get_auth_headers(sysadmin))
    assert res.json()["depcolor"] == "#000000"


@pytest.mark.asyncio
async def test_delete_in_use_department(client: AsyncClient, sysadmin, test_user, engineering):
    res = await client.delete(f"/api/v1/departments/{engineering.id}", headers=get_auth_headers(sysadmin))
    assert res.status_code == 409


@pytest.mark.asyncio
async def test_delete_unused_department(client: AsyncClient, sysadmin, marketing):
    headers = get_auth_headers(sysadmin)
    res = await client.delete(f"/api/v1/departments/{marketing.id}", headers=headers)
    assert res.status_code == 200
    res = await client.get("/api/v1/departments", headers=headers)
    assert res.json() == []
