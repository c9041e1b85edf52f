import asyncio
import time

import httpx
import pytest

import storage.prompt as prompt_storage
from admin.app import create_app
from admin.schemas import RuntimeControl
from admin.store import clear_events
from conftest import moscow

AUTH = {"X-Admin-Token": "test-token"}


@pytest.fixture
async def client(db):
    clear_events()
    app = create_app(RuntimeControl(shutdown_event=asyncio.Event(), started_at=time.time()))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://admin") as c:
        yield c


async def test_healthz_needs_no_token(client):
    response = await client.get("/healthz")
    assert response.status_code == 200
    assert response.text == "ok"

    health = (await client.get("/api/v1/health")).json()
    assert health["status"] == "ok"
    assert health["db_connected"] is True


@pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": "wrong"}, {"Authorization": "Bearer wrong"}])
async def test_api_requires_token(client, headers):
    response = await client.get("/api/v1/metrics", headers=headers)
    assert response.status_code == 401


async def test_bearer_token_is_accepted(client):
    response = await client.get("/api/v1/overview", headers={"Authorization": "Bearer test-token"})
    assert response.status_code == 200
    assert response.json()["counts"]["users"] == 0


async def test_metrics_include_loop_status(client):
    body = (await client.get("/api/v1/metrics", headers=AUTH)).json()
    assert set(body["components"]) == {"db", "telegram", "dispatch", "escalation"}
    assert "send_failures" in body["runtime"]


async def test_user_schedule(client, make_user):
    user = await make_user(tz_name="Asia/Tokyo", start="10:00", end="18:00", daily_count=3)

    response = await client.get(f"/api/v1/users/{user.user_id}/schedule", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["timezone"] == "Asia/Tokyo"
    assert body["window"] == {"start_minute": 600, "end_minute": 1080}
    assert body["escalation"]["is_escalating"] is False
    assert body["next_due_at_local"] is None

    missing = await client.get("/api/v1/users/9999/schedule", headers=AUTH)
    assert missing.status_code == 404


async def test_update_settings(client, make_user):
    user = await make_user()

    response = await client.put(
        f"/api/v1/users/{user.user_id}/settings",
        json={"daily_count": 3, "start_time": "10:00", "end_time": "16:00"},
        headers=AUTH,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["daily_count"] == 3
    assert body["window"] == {"start_minute": 600, "end_minute": 960}
    assert body["next_due_at"] is not None


@pytest.mark.parametrize(
    "payload",
    [
        {"start_time": "20:00", "end_time": "10:00"},
        {"daily_count": 0},
        {"timezone": "Mars/Olympus"},
        {"policy_override": {"max_level": 0}},
    ],
)
async def test_invalid_settings_are_422(client, make_user, payload):
    user = await make_user()
    response = await client.put(f"/api/v1/users/{user.user_id}/settings", json=payload, headers=AUTH)
    assert response.status_code == 422


async def test_update_unknown_user_is_404(client):
    response = await client.put("/api/v1/users/9999/settings", json={"enabled": False}, headers=AUTH)
    assert response.status_code == 404


async def test_prompt_responses(client, make_user):
    user = await make_user()
    record = await prompt_storage.create_prompt(user.user_id, moscow(12))

    first = await client.post(f"/api/v1/prompts/{record.prompt_id}/started", headers=AUTH)
    assert first.json() == {"ok": True, "changed": True}
    second = await client.post(f"/api/v1/prompts/{record.prompt_id}/started", headers=AUTH)
    assert second.json() == {"ok": True, "changed": False}

    completed = await client.post(f"/api/v1/prompts/{record.prompt_id}/completed", headers=AUTH)
    assert completed.json()["changed"] is True

    events = (await client.get("/api/v1/events", params={"event": "prompt.started"}, headers=AUTH)).json()
    assert [item["payload"]["prompt_id"] for item in events["items"]] == [record.prompt_id]


async def test_prompt_skip_with_reason(client, make_user):
    user = await make_user()
    record = await prompt_storage.create_prompt(user.user_id, moscow(12))

    response = await client.post(
        f"/api/v1/prompts/{record.prompt_id}/skipped", json={"reason": "in a meeting"}, headers=AUTH
    )
    assert response.json()["changed"] is True
    assert (await prompt_storage.get_prompt(record.prompt_id)).missed_reason == "in a meeting"


async def test_list_prompts(client, make_user):
    user = await make_user()
    other = await make_user()
    for hour in (10, 12, 14):
        await prompt_storage.create_prompt(user.user_id, moscow(hour))
    await prompt_storage.create_prompt(other.user_id, moscow(11))

    body = (await client.get("/api/v1/prompts", params={"user_id": user.user_id, "limit": 2}, headers=AUTH)).json()
    assert len(body["items"]) == 2
    assert all(item["user_id"] == user.user_id for item in body["items"])
    assert set(body["items"][0]) == {
        "prompt_id", "user_id", "sent_at", "started_at", "completed_at", "missed_reason",
        "is_escalation", "escalation_level", "scheduled_for",
    }

    everything = (await client.get("/api/v1/prompts", headers=AUTH)).json()
    assert len(everything["items"]) == 4
