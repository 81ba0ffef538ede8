"""
HTTP API tests: system endpoints, caller identity, task flows, error envelope.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient, ASGITransport

from taskgraph.core.database import get_session
from taskgraph.main import app
from taskgraph.models.base import utcnow


@pytest.fixture
async def client(session_maker):
    async def _session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = _session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-User-Id": str(uuid.uuid4())}


def _at(days: float) -> str:
    return (utcnow().replace(microsecond=0) + timedelta(days=days)).isoformat()


async def _create(client, headers, title, days, **fields):
    response = await client.post(
        "/api/v1/tasks/",
        json={"title": title, "scheduled_time": _at(days), **fields},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Health endpoint should return status ok."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_ready_check(client: AsyncClient):
    """Ready endpoint should return status ready."""
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


@pytest.mark.asyncio
async def test_api_root(client: AsyncClient):
    """API v1 root should return version and endpoint list."""
    response = await client.get("/api/v1/")
    assert response.status_code == 200
    data = response.json()
    assert data["api"] == "v1"
    assert "/tasks" in data["endpoints"]
    assert "/notifications" in data["endpoints"]


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_user_header(client: AsyncClient):
    response = await client.get("/api/v1/tasks/")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_malformed_user_header(client: AsyncClient):
    response = await client.get("/api/v1/tasks/", headers={"X-User-Id": "not-a-uuid"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_tasks_are_scoped_to_caller(client: AsyncClient, headers):
    task = await _create(client, headers, "Private", 1)

    other = {"X-User-Id": str(uuid.uuid4())}
    assert (await client.get("/api/v1/tasks/", headers=other)).json() == []
    response = await client.get(f"/api/v1/tasks/{task['id']}", headers=other)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Task flows
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_subtask_completion_flow(client: AsyncClient, headers):
    parent = await _create(client, headers, "Move house", 3)
    child = await _create(client, headers, "Pack boxes", 1, parent_task_id=parent["id"])

    response = await client.post(f"/api/v1/tasks/{parent['id']}/complete", headers=headers)
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "BLOCKED_BY_CHILDREN"
    assert error["details"]["titles"] == ["Pack boxes"]

    response = await client.post(f"/api/v1/tasks/{child['id']}/complete", headers=headers)
    assert response.status_code == 200
    assert response.json()["completed"] is True

    response = await client.get(f"/api/v1/tasks/{parent['id']}", headers=headers)
    assert response.json()["completed"] is True


@pytest.mark.asyncio
async def test_tree_endpoint(client: AsyncClient, headers):
    parent = await _create(client, headers, "Parent", 2)
    await _create(client, headers, "Child", 1, parent_task_id=parent["id"])

    response = await client.get("/api/v1/tasks/tree", headers=headers)
    assert response.status_code == 200
    tree = response.json()
    assert [n["title"] for n in tree] == ["Parent"]
    assert [n["title"] for n in tree[0]["children"]] == ["Child"]


@pytest.mark.asyncio
async def test_blocking_flow(client: AsyncClient, headers):
    a = await _create(client, headers, "A", 1)
    b = await _create(client, headers, "B", 2)

    response = await client.post(
        "/api/v1/tasks/blocking",
        json={"blocking_task_id": a["id"], "blocked_task_id": b["id"]},
        headers=headers,
    )
    assert response.status_code == 201

    response = await client.get(f"/api/v1/tasks/{b['id']}/dependencies", headers=headers)
    chain = response.json()
    assert [t["id"] for t in chain["blocked_by"]] == [a["id"]]
    assert chain["is_available"] is False

    response = await client.post(
        "/api/v1/tasks/blocking",
        json={"blocking_task_id": b["id"], "blocked_task_id": a["id"]},
        headers=headers,
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CIRCULAR_DEPENDENCY"

    response = await client.post(f"/api/v1/tasks/{b['id']}/complete", headers=headers)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "BLOCKED_BY_DEPENDENCY"

    response = await client.delete(f"/api/v1/tasks/blocking/{a['id']}/{b['id']}", headers=headers)
    assert response.status_code == 204
    response = await client.get(f"/api/v1/tasks/{b['id']}/availability", headers=headers)
    assert response.json()["is_available"] is True


@pytest.mark.asyncio
async def test_recurring_template_flow(client: AsyncClient, headers):
    template = await _create(
        client, headers, "Standup", 0.5, recurrence_pattern="daily", recurrence_interval=1
    )

    response = await client.get(f"/api/v1/tasks/{template['id']}/instances", headers=headers)
    assert response.status_code == 200
    instances = response.json()
    assert len(instances) >= 2
    assert all(i["parent_recurrency_id"] == template["id"] for i in instances)

    response = await client.post(
        "/api/v1/tasks/",
        json={
            "title": "Nested standup",
            "scheduled_time": _at(0.1),
            "parent_task_id": template["id"],
        },
        headers=headers,
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_RELATIONSHIP"

    response = await client.delete(f"/api/v1/tasks/{template['id']}", headers=headers)
    assert response.status_code == 204
    assert (await client.get("/api/v1/tasks/", headers=headers)).json() == []


@pytest.mark.asyncio
async def test_scheduled_range(client: AsyncClient, headers):
    await _create(client, headers, "Soon", 1)
    await _create(client, headers, "Later", 10)

    response = await client.get(
        "/api/v1/tasks/scheduled",
        params={"start": _at(0), "end": _at(2)},
        headers=headers,
    )
    assert [t["title"] for t in response.json()] == ["Soon"]


@pytest.mark.asyncio
async def test_validation_error_for_empty_title(client: AsyncClient, headers):
    response = await client.post(
        "/api/v1/tasks/", json={"title": "", "scheduled_time": _at(1)}, headers=headers
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_instance_reschedule_onto_sibling_conflicts(client: AsyncClient, headers):
    template = await _create(
        client, headers, "Standup", 0.5, recurrence_pattern="daily", recurrence_interval=1
    )
    instances = (
        await client.get(f"/api/v1/tasks/{template['id']}/instances", headers=headers)
    ).json()

    response = await client.patch(
        f"/api/v1/tasks/{instances[0]['id']}",
        json={"scheduled_time": instances[1]["scheduled_time"]},
        headers=headers,
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "DUPLICATE_RELATIONSHIP"


# ---------------------------------------------------------------------------
# Notification inbox
# ---------------------------------------------------------------------------


async def _inbox(client, headers, **params):
    response = await client.get("/api/v1/notifications/", params=params, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.asyncio
async def test_inbox_lists_task_notices(client: AsyncClient, headers):
    task = await _create(client, headers, "Write report", 1)

    inbox = await _inbox(client, headers)
    assert {n["type"] for n in inbox} == {"task_created", "task_reminder"}
    assert all(n["task_id"] == task["id"] for n in inbox)
    assert all(n["is_read"] is False for n in inbox)

    created = await _inbox(client, headers, type="task_created")
    assert [n["message"] for n in created] == ['New task "Write report" has been created']
    assert created[0]["priority"] == "low"
    assert [n["id"] for n in await _inbox(client, headers, priority="low")] == [created[0]["id"]]


@pytest.mark.asyncio
async def test_inbox_newest_first(client: AsyncClient, headers):
    first = await _create(client, headers, "First", 1)
    second = await _create(client, headers, "Second", 2)

    created = await _inbox(client, headers, type="task_created")
    assert [n["task_id"] for n in created] == [second["id"], first["id"]]


@pytest.mark.asyncio
async def test_mark_read_and_unread_count(client: AsyncClient, headers):
    await _create(client, headers, "Write report", 1)
    inbox = await _inbox(client, headers)

    response = await client.get("/api/v1/notifications/unread-count", headers=headers)
    assert response.json() == {"count": len(inbox)}

    target = inbox[0]["id"]
    response = await client.patch(f"/api/v1/notifications/{target}/read", headers=headers)
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    response = await client.get("/api/v1/notifications/unread-count", headers=headers)
    assert response.json() == {"count": len(inbox) - 1}
    assert [n["id"] for n in await _inbox(client, headers, is_read=True)] == [target]

    response = await client.patch("/api/v1/notifications/mark-all-read", headers=headers)
    assert response.json() == {"updated": len(inbox) - 1}
    response = await client.get("/api/v1/notifications/unread-count", headers=headers)
    assert response.json() == {"count": 0}


@pytest.mark.asyncio
async def test_delete_notification(client: AsyncClient, headers):
    await _create(client, headers, "Write report", 1)
    inbox = await _inbox(client, headers)
    target = inbox[0]["id"]

    response = await client.delete(f"/api/v1/notifications/{target}", headers=headers)
    assert response.status_code == 204

    response = await client.get(f"/api/v1/notifications/{target}", headers=headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
    assert len(await _inbox(client, headers)) == len(inbox) - 1


@pytest.mark.asyncio
async def test_inbox_is_scoped_to_caller(client: AsyncClient, headers):
    await _create(client, headers, "Private", 1)
    target = (await _inbox(client, headers))[0]["id"]
    other = {"X-User-Id": str(uuid.uuid4())}

    assert await _inbox(client, other) == []
    response = await client.get("/api/v1/notifications/unread-count", headers=other)
    assert response.json() == {"count": 0}
    for method, path in (
        ("GET", f"/api/v1/notifications/{target}"),
        ("PATCH", f"/api/v1/notifications/{target}/read"),
        ("DELETE", f"/api/v1/notifications/{target}"),
    ):
        response = await client.request(method, path, headers=other)
        assert response.status_code == 404

    response = await client.patch("/api/v1/notifications/mark-all-read", headers=other)
    assert response.json() == {"updated": 0}
    assert all(n["is_read"] is False for n in await _inbox(client, headers))
