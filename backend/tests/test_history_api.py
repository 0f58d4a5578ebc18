from __future__ import annotations

import asyncio
import json

from sse_utils import parse_sse_events, snapshot_items


def _seed_text(client, headers, symptoms: str) -> None:
    response = client.post("/api/analyze-text", headers=headers, json={"symptoms": symptoms})
    assert response.status_code == 200


def test_history_lists_newest_first_with_limit(client, auth_headers, fake_gateway):
    headers = auth_headers("user-a")
    for symptoms in ("first", "second", "third"):
        _seed_text(client, headers, symptoms)

    response = client.get("/api/history", headers=headers)
    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["symptoms"] for item in items] == ["third", "second", "first"]
    assert all(item["type"] == "text" for item in items)
    assert all(item["id"].startswith("rec_") for item in items)

    limited = client.get("/api/history", headers=headers, params={"limit": 2})
    assert [item["symptoms"] for item in limited.json()["items"]] == ["third", "second"]


def test_history_is_scoped_per_user(client, auth_headers, fake_gateway):
    _seed_text(client, auth_headers("user-a"), "fever")

    response = client.get("/api/history", headers=auth_headers("user-b"))
    assert response.status_code == 200
    assert response.json() == {"items": []}

    assert client.get("/api/history").status_code == 401


def test_edit_history_updates_symptoms_only(client, auth_headers, backend_module, fake_gateway):
    headers = auth_headers("user-a")
    _seed_text(client, headers, "fever")
    record = backend_module.container.history.list_records("user-a")[0]

    response = client.patch(f"/api/history/{record['id']}", headers=headers, json={"symptoms": "  fever and rash "})
    assert response.status_code == 200
    updated = response.json()
    assert updated["id"] == record["id"]
    assert updated["symptoms"] == "fever and rash"
    assert updated["answer"] == record["answer"]
    assert updated["createdAt"] == record["createdAt"]
    assert [call[0] for call in fake_gateway.calls] == ["text"]


def test_edit_history_rejects_blank_and_non_text_records(client, auth_headers, backend_module, fake_gateway):
    headers = auth_headers("user-a")
    _seed_text(client, headers, "fever")
    image_response = client.post(
        "/api/analyze-image",
        headers=headers,
        files={"image": ("rash.png", b"png-bytes", "image/png")},
    )
    assert image_response.status_code == 200
    records = backend_module.container.history.list_records("user-a")
    image_record = next(record for record in records if record["type"] == "image")
    text_record = next(record for record in records if record["type"] == "text")

    blank = client.patch(f"/api/history/{text_record['id']}", headers=headers, json={"symptoms": "   "})
    assert blank.status_code == 400
    assert blank.json()["detail"] == "Symptoms required"

    image_edit = client.patch(f"/api/history/{image_record['id']}", headers=headers, json={"symptoms": "itchy"})
    assert image_edit.status_code == 404

    foreign = client.patch(f"/api/history/{text_record['id']}", headers=auth_headers("user-b"), json={"symptoms": "x"})
    assert foreign.status_code == 404

    unchanged = backend_module.container.history.get_record("user-a", text_record["id"])
    assert unchanged["symptoms"] == "fever"


def test_delete_history_is_idempotent_and_scoped(client, auth_headers, backend_module, fake_gateway):
    headers = auth_headers("user-a")
    _seed_text(client, headers, "fever")
    record_id = backend_module.container.history.list_records("user-a")[0]["id"]

    foreign = client.delete(f"/api/history/{record_id}", headers=auth_headers("user-b"))
    assert foreign.status_code == 200
    assert foreign.json() == {"deleted": False}

    first = client.delete(f"/api/history/{record_id}", headers=headers)
    assert first.json() == {"deleted": True}
    second = client.delete(f"/api/history/{record_id}", headers=headers)
    assert second.status_code == 200
    assert second.json() == {"deleted": False}
    assert backend_module.container.history.list_records("user-a") == []


def test_history_stream_pushes_snapshots_and_unsubscribes(backend_module, fake_gateway):
    history = backend_module.container.history

    async def _collect() -> list[str]:
        stream = backend_module._history_events("user-a", heartbeat_seconds=5)
        chunks = [await stream.__anext__()]
        history.add_record(user_id="user-a", record_type="text", symptoms="cough", answer="Likely a cold.")
        history.add_record(user_id="user-b", record_type="text", symptoms="other", answer="n/a")
        chunks.append(await stream.__anext__())
        assert history.listener_count("user-a") == 1
        await stream.aclose()
        return chunks

    chunks = asyncio.run(_collect())
    events = parse_sse_events("".join(chunks))
    assert [event["event"] for event in events] == ["snapshot", "snapshot"]
    assert json.loads(events[0]["data"]) == {"items": []}
    initial, after_add = snapshot_items(events)
    assert initial == []
    assert [item["symptoms"] for item in after_add] == ["cough"]
    assert history.listener_count("user-a") == 0


def test_history_stream_emits_keep_alive_when_idle(backend_module):
    async def _collect() -> list[str]:
        stream = backend_module._history_events("user-a", heartbeat_seconds=0.01)
        chunks = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        return chunks

    first, second = asyncio.run(_collect())
    assert first.startswith("event: snapshot")
    assert second == ": keep-alive\n\n"
    assert [event["event"] for event in parse_sse_events(first + second)] == ["snapshot"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_edit_history_rejects_malformed_body_with_400(client, auth_headers, backend_module, fake_gateway):
    headers = auth_headers("user-a")
    _seed_text(client, headers, "fever")
    record_id = backend_module.container.history.list_records("user-a")[0]["id"]

    for kwargs in ({}, {"json": {"symptoms": 7}}, {"json": "fever"}):
        response = client.patch(f"/api/history/{record_id}", headers=headers, **kwargs)
        assert response.status_code == 400
    assert backend_module.container.history.get_record("user-a", record_id)["symptoms"] == "fever"
