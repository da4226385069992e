import json

import pytest
from fastapi.testclient import TestClient

import api_server
from utils import email_utils


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(api_server, "API_KEY", None)
    api_server.app.dependency_overrides[api_server.get_db_engine] = lambda: engine
    yield TestClient(api_server.app)
    api_server.app.dependency_overrides.clear()


@pytest.fixture
def event_id(client):
    resp = client.post("/api/events", json={
        "title": "Onam Fest", "date": "2026-09-05T18:00:00", "isPublicDownload": True,
    })
    assert resp.status_code == 201
    return resp.json()["id"]


def _add(client, event_id, name, reg_no, email, phone="9876543210"):
    resp = client.post("/api/registrations/manual", json={
        "eventId": event_id, "name": name, "regNo": reg_no, "email": email, "phone": phone,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["registration"]


def _sse_events(text):
    return [json.loads(chunk[len("data: "):]) for chunk in text.split("\n\n") if chunk.startswith("data: ")]


def test_health(client):
    assert client.get("/api/health").json() == {"ok": True}


def test_event_roundtrip(client, event_id):
    body = client.get(f"/api/events/{event_id}").json()
    assert body["title"] == "Onam Fest"
    assert body["isPublicDownload"] is True

    resp = client.patch(f"/api/events/{event_id}/settings", json={"isPublicDownload": False})
    assert resp.json()["isPublicDownload"] is False

    resp = client.put(f"/api/events/{event_id}/template", json={
        "imagePath": "tickets/onam.png",
        "qrPosition": {"x": 10, "y": 20, "width": 150, "height": 150},
        "namePosition": {"x": 10, "y": 200, "fontSize": 30},
    })
    tpl = resp.json()["ticketTemplate"]
    assert tpl["qr_position"] == {"x": 10, "y": 20, "width": 150, "height": 150}
    assert tpl["name_position"]["font_size"] == 30


def test_unknown_event_is_404_with_error_body(client):
    resp = client.get("/api/events/999")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Event not found"}


def test_email_template_defaults_and_update(client, event_id):
    body = client.get("/api/emails/template", params={"eventId": event_id}).json()
    assert body["subject"] == "Your Ticket for {{eventTitle}}"

    client.patch("/api/emails/template", json={"eventId": event_id, "subject": "Ticket: {{name}}", "body": "Hi"})
    body = client.get("/api/emails/template", params={"eventId": event_id}).json()
    assert body == {"subject": "Ticket: {{name}}", "body": "Hi"}


def test_preview_then_bulk_create(client, event_id):
    csv = b"Name,Reg No,Email\nMeera,R1,meera@x.com\nRavi,R1,ravi@x.com\nDevi,R3,bad-email\n"
    resp = client.post(
        "/api/registrations/preview",
        data={"eventId": str(event_id)},
        files={"file": ("roster.csv", csv, "text/csv")},
    )
    assert resp.status_code == 200
    preview = resp.json()
    assert [r["email"] for r in preview["valid"]] == ["meera@x.com"]
    assert [r["reason"] for r in preview["rejected"]] == ["Duplicate RegNo in file", "Invalid or missing Email"]

    resp = client.post("/api/registrations/bulk-create", json={
        "eventId": event_id,
        "registrations": [{"name": r["name"], "regNo": r["reg_no"], "email": r["email"]} for r in preview["valid"]],
    })
    assert resp.status_code == 201
    assert resp.json()["insertedCount"] == 1

    # same rows again: nothing new
    resp = client.post("/api/registrations/bulk-create", json={
        "eventId": event_id, "registrations": [{"name": "Meera", "regNo": "R1", "email": "meera@x.com"}],
    })
    assert resp.json()["insertedCount"] == 0


def test_list_and_delete_events(client, event_id):
    other = client.post("/api/events", json={"title": "Diwali", "date": "2026-11-01T19:00:00"}).json()["id"]
    assert [e["id"] for e in client.get("/api/events").json()["events"]] == [other, event_id]

    _add(client, event_id, "Meera", "R1", "meera@x.com")
    client.post("/api/attendance/mark", json={"eventId": event_id, "email": "meera@x.com"})

    resp = client.delete(f"/api/events/{event_id}")
    assert resp.status_code == 200
    assert client.get(f"/api/events/{event_id}").status_code == 404
    assert client.get(f"/api/attendance/{event_id}").status_code == 404
    assert [e["id"] for e in client.get("/api/events").json()["events"]] == [other]

    assert client.delete(f"/api/events/{event_id}").json() == {"error": "Event not found"}


def test_public_events_lists_downloadable_only(client, event_id, monkeypatch):
    client.post("/api/events", json={"title": "Diwali", "date": "2026-11-01T19:00:00"})
    monkeypatch.setattr(api_server, "API_KEY", "s3cret")

    body = client.get("/api/public/events").json()
    assert [e["title"] for e in body["events"]] == ["Onam Fest"]
    assert "ticketTemplate" not in body["events"][0]
    assert client.get("/api/public/events", params={"eventId": event_id}).json()["events"][0]["id"] == event_id
    assert client.get("/api/public/events", params={"eventId": 999}).json() == {"events": []}


def test_upload_inserts_valid_rows(client, event_id):
    csv = b"Name,Reg No,Email\nMeera,R1,meera@x.com\nRavi,R2,not-an-email\n"
    resp = client.post(
        "/api/registrations/upload",
        data={"eventId": str(event_id)},
        files={"file": ("roster.csv", csv, "text/csv")},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["insertedCount"] == 1
    assert [r["reason"] for r in body["rejected"]] == ["Invalid or missing Email"]
    assert [r["email"] for r in client.get(f"/api/registrations/{event_id}").json()["registrations"]] == [
        "meera@x.com"
    ]


def test_corrupt_spreadsheet_upload_is_400(client, event_id):
    resp = client.post(
        "/api/registrations/upload",
        data={"eventId": str(event_id)},
        files={"file": ("roster.xlsx", b"PK\x03\x04garbage", "application/octet-stream")},
    )
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Could not read file")


def test_manual_conflict_is_409(client, event_id):
    _add(client, event_id, "Meera", "R1", "meera@x.com")
    resp = client.post("/api/registrations/manual", json={
        "eventId": event_id, "name": "Meera", "regNo": "R1", "email": "meera2@x.com",
    })
    assert resp.status_code == 409
    assert resp.json() == {"error": "RegNo already registered"}


def test_list_and_delete(client, event_id):
    meera = _add(client, event_id, "Meera", "R1", "meera@x.com")
    _add(client, event_id, "Ravi", "R2", "ravi@x.com")

    listed = client.get(f"/api/registrations/{event_id}").json()["registrations"]
    assert {r["email"] for r in listed} == {"meera@x.com", "ravi@x.com"}
    assert all("token" not in r for r in listed)

    resp = client.request("DELETE", "/api/registrations", json={"eventId": event_id, "registrationIds": [meera["id"]]})
    assert resp.json() == {"deletedCount": 1}
    assert len(client.get(f"/api/registrations/{event_id}").json()["registrations"]) == 1


def test_scan_flow(client, event_id):
    reg = _add(client, event_id, "Meera", "R1", "meera@x.com")
    token = client.post(f"/api/registrations/{event_id}/assign-token", json={"registrationId": reg["id"]}).json()["token"]
    again = client.post(f"/api/registrations/{event_id}/assign-token", json={"registrationId": reg["id"]}).json()["token"]
    assert token == again

    status = client.post("/api/tickets/verify", json={"qrPayload": token, "eventId": event_id}).json()["ticket"]
    assert status["has_attended"] is False
    assert status["name"] == "Meera"

    resp = client.post("/api/attendance/verify-qr", json={"qrPayload": token, "eventId": event_id})
    assert resp.status_code == 200
    marked = resp.json()["attendance"]
    assert marked["source"] == "scanner"
    assert marked["eventTitle"] == "Onam Fest"

    resp = client.post("/api/attendance/verify-qr", json={"qrPayload": token, "eventId": event_id})
    assert resp.status_code == 409
    body = resp.json()
    assert body["alreadyMarked"] is True
    assert body["markedAt"].startswith(marked["markedAt"][:19])

    resp = client.post("/api/attendance/verify-qr", json={"qrPayload": "unknown-token-xyz", "eventId": event_id})
    assert resp.status_code == 404


def test_wrong_event_is_400(client, event_id):
    other = client.post("/api/events", json={"title": "Diwali", "date": "2026-11-01T19:00:00"}).json()["id"]
    reg = _add(client, event_id, "Meera", "R1", "meera@x.com")
    token = client.post(f"/api/registrations/{event_id}/assign-token", json={"registrationId": reg["id"]}).json()["token"]

    resp = client.post("/api/tickets/verify", json={"qrPayload": token, "eventId": other})
    assert resp.status_code == 400
    assert resp.json() == {"error": "This ticket belongs to a different event"}


def test_counter_mark_and_list(client, event_id):
    _add(client, event_id, "Meera", "R1", "meera@x.com")
    resp = client.post("/api/attendance/mark", json={"eventId": event_id, "email": "Meera@x.com"})
    assert resp.status_code == 200
    assert resp.json()["attendance"]["source"] == "counter"

    assert client.post("/api/attendance/mark", json={"eventId": event_id, "email": "meera@x.com"}).status_code == 409
    assert client.post("/api/attendance/mark", json={"eventId": event_id, "email": "x@x.com"}).status_code == 404

    body = client.get(f"/api/attendance/{event_id}").json()
    assert body["count"] == 1


def test_public_ticket_rate_limit(client, event_id):
    _add(client, event_id, "Meera", "R1", "meera@x.com")
    payload = {"eventId": event_id, "email": "meera@x.com", "phone": "9876543210"}

    for _ in range(2):
        resp = client.post("/api/public/ticket", json=payload)
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert "Meera_Onam_Fest.png" in resp.headers["content-disposition"]

    resp = client.post("/api/public/ticket", json=payload)
    assert resp.status_code == 429
    assert 1 <= int(resp.headers["retry-after"]) <= 60
    assert "error" in resp.json()


def test_public_ticket_disabled(client, event_id):
    _add(client, event_id, "Meera", "R1", "meera@x.com")
    client.patch(f"/api/events/{event_id}/settings", json={"isPublicDownload": False})
    resp = client.post("/api/public/ticket", json={"eventId": event_id, "email": "meera@x.com", "phone": "9876543210"})
    assert resp.status_code == 403


def test_send_streams_progress_and_complete(client, event_id, monkeypatch):
    monkeypatch.setattr(email_utils, "EMAIL_DRY_RUN", True)
    for i in range(3):
        _add(client, event_id, f"Guest {i}", f"R{i}", f"guest{i}@x.com")

    resp = client.post("/api/emails/send", json={"eventId": event_id, "batchSize": 20})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = _sse_events(resp.text)
    assert [e["type"] for e in events] == ["progress", "complete"]
    assert events[-1]["data"] == {"sent": 3, "failed": 0, "total": 3}

    # nothing left to send
    resp = client.post("/api/emails/send", json={"eventId": event_id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No registrations found to send emails to"}


def test_extension_sync(client):
    registered = client.get("/api/registrations/extension-sync", params={"action": "register"}).json()
    token = registered["token"]
    assert registered["status"] == "registered"

    assert client.get("/api/registrations/extension-sync", params={"token": token}).json() == {"status": "waiting"}

    rows = [{"name": "Meera", "id": "P1", "email": "meera@x.com"}]
    resp = client.post("/api/registrations/extension-sync", json={"token": token, "registrations": rows})
    assert resp.json()["count"] == 1

    assert client.get("/api/registrations/extension-sync", params={"token": token}).json() == {
        "status": "ready", "data": rows,
    }

    resp = client.post("/api/registrations/extension-sync", json={"token": "nope", "registrations": rows})
    assert resp.status_code == 404


def test_api_key(client, monkeypatch):
    monkeypatch.setattr(api_server, "API_KEY", "s3cret")
    assert client.get("/api/events/1").status_code == 401
    assert client.get("/api/events/1", headers={"X-API-Key": "s3cret"}).status_code == 404
    assert client.get("/api/events/1", headers={"Authorization": "Bearer s3cret"}).status_code == 404
    # health stays open
    assert client.get("/api/health").status_code == 200
