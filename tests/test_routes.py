import httpx
import pytest

from app.core.exceptions import AuthorizationError, StoreError
from app.main import app as api

from conftest import OTHER, OWNER

HEADERS = {"X-User-Id": OWNER}


@pytest.fixture()
async def client(service):
    api.state.task_service = service
    transport = httpx.ASGITransport(app=api)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    del api.state.task_service


async def create(client, **payload):
    response = await client.post("/tasks/", json=payload, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["cache"]["backend"] == "MemoryCacheBackend"


async def test_owner_header_is_required(client):
    response = await client.get("/tasks/")
    assert response.status_code == 422


async def test_create_and_get(client):
    task = await create(client, title="Write report", priority="high", tags=["Work"])

    response = await client.get(f"/tasks/{task['id']}", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["tags"] == ["work"]
    assert response.json()["owner_id"] == OWNER


async def test_other_owner_gets_404(client):
    task = await create(client, title="private")

    for method, path in [
        ("GET", f"/tasks/{task['id']}"),
        ("PATCH", f"/tasks/{task['id']}"),
        ("DELETE", f"/tasks/{task['id']}"),
        ("POST", f"/tasks/{task['id']}/complete"),
    ]:
        kwargs = {"json": {"title": "x"}} if method == "PATCH" else {}
        response = await client.request(method, path, headers={"X-User-Id": OTHER}, **kwargs)
        assert response.status_code == 404, (method, path)


async def test_invalid_body_is_422(client):
    response = await client.post("/tasks/", json={"title": ""}, headers=HEADERS)
    assert response.status_code == 422


async def test_foreign_category_is_422_not_404(client, make_category):
    task = await create(client, title="mine")
    category = await make_category("Theirs", owner_id=OTHER)

    response = await client.patch(
        f"/tasks/{task['id']}", json={"category_id": category.id}, headers=HEADERS
    )

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"
    assert "Category" in response.json()["detail"]


async def test_list_with_query_filters(client):
    await create(client, title="a", priority="high", tags=["work"])
    await create(client, title="b", priority="low")

    response = await client.get(
        "/tasks/",
        params={"priority": ["high", "medium"], "tag": "work", "sort_by": "title", "sort_dir": "asc"},
        headers=HEADERS,
    )

    body = response.json()
    assert response.status_code == 200
    assert body["total"] == 1
    assert body["items"][0]["title"] == "a"
    assert body["limit"] == 20


async def test_inverted_range_is_422(client):
    response = await client.get(
        "/tasks/",
        params={"due_from": "2026-05-01T00:00:00Z", "due_to": "2026-04-01T00:00:00Z"},
        headers=HEADERS,
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


async def test_search_and_stats(client):
    await create(client, title="Quarterly report")
    await create(client, title="Other")

    search = await client.get("/tasks/search", params={"q": "REPORT"}, headers=HEADERS)
    stats = await client.get("/tasks/stats", headers=HEADERS)

    assert search.json()["total"] == 1
    assert stats.json()["total"] == 2


async def test_lifecycle(client):
    task = await create(client, title="t")
    path = f"/tasks/{task['id']}"

    patched = await client.patch(path, json={"status": "in_progress"}, headers=HEADERS)
    completed = await client.post(f"{path}/complete", headers=HEADERS)
    deleted = await client.delete(path, headers=HEADERS)
    missing = await client.get(path, headers=HEADERS)
    restored = await client.post(f"{path}/restore", headers=HEADERS)
    copy = await client.post(f"{path}/duplicate", headers=HEADERS)

    assert patched.json()["status"] == "in_progress"
    assert completed.json()["completed_at"] is not None
    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert restored.json()["deleted_at"] is None
    assert copy.status_code == 201
    assert copy.json()["title"] == "Copy of t"


async def test_bulk_routes(client):
    mine = await create(client, title="mine")
    response = await client.post(
        "/tasks/bulk/update",
        json={"task_ids": [mine["id"], "nope"], "changes": {"priority": "high"}},
        headers=HEADERS,
    )
    body = response.json()
    assert response.status_code == 200
    assert body["succeeded"] == [mine["id"]]
    assert body["failed_count"] == 1

    response = await client.post("/tasks/bulk/delete", json={"task_ids": [mine["id"]]}, headers=HEADERS)
    assert response.json()["succeeded_count"] == 1


async def test_reorder_route(client):
    t1 = await create(client, title="t1")
    t2 = await create(client, title="t2")

    response = await client.post(
        "/tasks/reorder",
        json={"orders": [{"id": t1["id"], "sort_order": 3}, {"id": t2["id"], "sort_order": 1}]},
        headers=HEADERS,
    )
    listing = await client.get(
        "/tasks/", params={"sort_by": "sort_order", "sort_dir": "asc"}, headers=HEADERS
    )

    assert response.status_code == 204
    assert [t["id"] for t in listing.json()["items"]] == [t2["id"], t1["id"]]


async def test_store_failure_maps_to_503(client, service, monkeypatch):
    async def failing(*args, **kwargs):
        raise StoreError("create", [])

    monkeypatch.setattr(service, "create_task", failing)

    response = await client.post("/tasks/", json={"title": "t"}, headers=HEADERS)

    assert response.status_code == 503
    assert response.json() == {"error": "store_error", "detail": "Store operation 'create' failed"}


async def test_authorization_error_maps_to_403(client, service, monkeypatch):
    async def forbidden(*args, **kwargs):
        raise AuthorizationError("no")

    monkeypatch.setattr(service, "delete", forbidden)

    response = await client.delete("/tasks/some-id", headers=HEADERS)

    assert response.status_code == 403
