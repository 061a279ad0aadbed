from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import room_inspection.api.app as app_module
from conftest import make_jpeg
from room_inspection.config.settings import PipelineSettings

ADMIN = {"X-Admin": "true"}
TODAY = "2026-10-19"


@pytest.fixture()
def client(pipeline, tmp_path, monkeypatch):
    settings = PipelineSettings(database_path=tmp_path / "inspection_test.db", blob_directory=tmp_path / "photos")
    monkeypatch.setattr(app_module, "_settings", settings)
    monkeypatch.setattr(app_module, "_pipeline", pipeline)

    with TestClient(app_module.app) as c:
        yield c


def _upload(client, occupant="s1", photo=None, room="301"):
    photo = photo if photo is not None else make_jpeg(captured_at=datetime(2026, 10, 19, 21, 55))
    return client.post(
        "/inspections",
        files={"image": ("room.jpg", photo, "image/jpeg")},
        data={"room": room},
        headers={"X-Occupant-Id": occupant},
    )


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Room Inspection API"

    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "healthy"
    assert body["admission"] == "OPEN"
    assert body["scoring"]["configured"]


def test_admission(client):
    res = client.get("/admission")
    assert res.status_code == 200
    body = res.json()
    assert body["allowed"]
    assert body["status"] == "OPEN"
    assert body["active_config"]["start_time"] == "21:00"


def test_submit_and_fetch_today(client):
    res = _upload(client)
    assert res.status_code == 201
    body = res.json()
    assert body["decision"] == "ACCEPTED"
    assert body["numeric_score"] == 8
    assert body["status"] == "PASS"

    res = client.get("/inspections/today", headers={"X-Occupant-Id": "s1"})
    assert res.status_code == 200
    assert res.json()["submission_id"] == body["submission_id"]


def test_duplicate_submission_is_conflict(client):
    assert _upload(client).status_code == 201
    res = _upload(client)
    assert res.status_code == 409
    assert res.json()["rejection_code"] == "DUPLICATE"


def test_submission_outside_window_is_forbidden(client, clock):
    clock.set(datetime(2026, 10, 19, 20, 30))
    res = _upload(client)
    assert res.status_code == 403
    assert res.json()["rejection_code"] == "ADMISSION"


def test_submission_validation(client):
    assert client.post(
        "/inspections", files={"image": ("room.jpg", make_jpeg(), "image/jpeg")}, data={"room": "301"}
    ).status_code == 401
    assert _upload(client, photo=b"").status_code == 400
    assert _upload(client, photo=b"plain text").status_code == 400


def test_today_without_submission_is_404(client):
    assert client.get("/inspections/today", headers={"X-Occupant-Id": "s9"}).status_code == 404


def test_ledger_lifecycle(client):
    roster = [
        {"occupant_id": "s1", "room_identifier": "301", "occupant_name": "Kim"},
        {"occupant_id": "s2", "room_identifier": "302"},
    ]
    assert client.post(f"/admin/attendance/{TODAY}", json=roster).status_code == 403

    res = client.post(f"/admin/attendance/{TODAY}", json=roster, headers=ADMIN)
    assert res.status_code == 201
    assert res.json()["created"] == 2

    assert client.post(f"/admin/attendance/{TODAY}", json=roster, headers=ADMIN).status_code == 409

    _upload(client)
    res = client.get(f"/attendance/{TODAY}")
    assert res.status_code == 200
    body = res.json()
    assert body["statistics"]["submitted"] == 1
    assert body["statistics"]["submission_rate"] == 50.0

    res = client.get(f"/attendance/{TODAY}/export", params={"return_format": "csv"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert "attendance_2026-10-19.csv" in res.headers["content-disposition"]

    assert client.get(f"/attendance/{TODAY}/export", params={"return_format": "pdf"}).status_code == 422

    assert client.delete(f"/admin/attendance/{TODAY}", headers=ADMIN).json()["deleted"] == 2
    assert client.get(f"/attendance/{TODAY}").status_code == 404
    assert client.get(f"/attendance/{TODAY}/export").status_code == 404


def test_admin_review(client):
    submission_id = _upload(client).json()["submission_id"]

    res = client.post(f"/admin/inspections/{submission_id}/comment", json={"comment": "Nice work"}, headers=ADMIN)
    assert res.status_code == 200
    assert res.json()["admin_comment"] == "Nice work"

    res = client.patch(f"/admin/inspections/{submission_id}", json={"numeric_score": 3}, headers=ADMIN)
    assert res.status_code == 200
    assert res.json()["status"] == "FAIL"

    assert client.patch(f"/admin/inspections/{submission_id}", json={}, headers=ADMIN).status_code == 400
    assert client.patch("/admin/inspections/999", json={"numeric_score": 5}, headers=ADMIN).status_code == 404


def test_save_admission_config(client):
    payload = {
        "name": "Exam week",
        "start_time": "19:00",
        "end_time": "20:00",
        "specific_date": TODAY,
    }
    res = client.post("/admin/configs", json=payload, headers=ADMIN)
    assert res.status_code == 201
    assert res.json()["id"] is not None

    body = client.get("/admission").json()
    assert body["status"] == "CLOSED"
    assert body["active_config"]["name"] == "Exam week"

    bad = dict(payload, name="fenced", geofence_enabled=True)
    assert client.post("/admin/configs", json=bad, headers=ADMIN).status_code == 400
    assert client.post("/admin/configs", json=dict(payload, start_time="25:00"), headers=ADMIN).status_code == 400


def test_inspection_listing_and_statistics(client):
    _upload(client, occupant="s1")
    _upload(client, occupant="s2", photo=make_jpeg(captured_at=datetime(2026, 10, 19, 21, 58), software="VSCO"))

    assert client.get("/admin/inspections").status_code == 403

    res = client.get("/admin/inspections", params={"inspection_date": TODAY}, headers=ADMIN)
    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 2
    assert {item["occupant_id"] for item in body["inspections"]} == {"s1", "s2"}
    assert all(item["forensics"] is not None for item in body["inspections"])

    stats = client.get("/admin/inspections/statistics", headers=ADMIN).json()
    assert stats["date"] == TODAY
    assert (stats["total"], stats["passed"], stats["failed"]) == (2, 1, 1)
    assert stats["pass_rate"] == 50.0


def test_reject_inspection_allows_resubmission(client):
    roster = [{"occupant_id": "s1", "room_identifier": "301"}]
    client.post(f"/admin/attendance/{TODAY}", json=roster, headers=ADMIN)
    submission_id = _upload(client).json()["submission_id"]

    res = client.post(f"/admin/inspections/{submission_id}/reject", json={"reason": "wrong room"}, headers=ADMIN)
    assert res.status_code == 200
    assert res.json()["rejected"]

    entry = client.get(f"/attendance/{TODAY}").json()["entries"][0]
    assert entry["status"] == "PENDING"
    assert entry["notes"] == "Rejected by administrator: wrong room"

    assert client.get("/inspections/today", headers={"X-Occupant-Id": "s1"}).status_code == 404
    assert _upload(client).status_code == 201
    assert client.post(f"/admin/inspections/{submission_id}/reject", json={"reason": "x"}, headers=ADMIN).status_code == 404


def test_edit_attendance_entry(client):
    roster = [{"occupant_id": "s1", "room_identifier": "301"}]
    client.post(f"/admin/attendance/{TODAY}", json=roster, headers=ADMIN)
    entry_id = client.get(f"/attendance/{TODAY}").json()["entries"][0]["id"]

    res = client.patch(
        f"/admin/attendance/entries/{entry_id}",
        json={"notes": "Excused: hospital visit", "status": "PASS"},
        headers=ADMIN,
    )
    assert res.status_code == 200
    assert res.json()["notes"] == "Excused: hospital visit"
    assert res.json()["status"] == "PASS"

    assert client.patch(f"/admin/attendance/entries/{entry_id}", json={}, headers=ADMIN).status_code == 400
    assert client.patch(f"/admin/attendance/entries/{entry_id}", json={"score": 12}, headers=ADMIN).status_code == 422
    assert client.patch("/admin/attendance/entries/999", json={"notes": "x"}, headers=ADMIN).status_code == 404


def test_template_upload_and_comparison_submission(client):
    reference = make_jpeg(software="reference")
    res = client.post(
        "/admin/templates",
        files={"image": ("reference.jpg", reference, "image/jpeg")},
        data={"name": "Double room", "room_type": "double", "is_default": "true"},
        headers=ADMIN,
    )
    assert res.status_code == 201
    assert res.json()["room_type"] == "DOUBLE"
    assert res.json()["is_default"]

    templates = client.get("/admin/templates", headers=ADMIN).json()["templates"]
    assert [t["name"] for t in templates] == ["Double room"]

    bad = client.post(
        "/admin/templates",
        files={"image": ("reference.jpg", reference, "image/jpeg")},
        data={"name": "Suite", "room_type": "SUITE"},
        headers=ADMIN,
    )
    assert bad.status_code == 400

    photo = make_jpeg(captured_at=datetime(2026, 10, 19, 21, 55))
    res = client.post(
        "/inspections",
        files={"image": ("room.jpg", photo, "image/jpeg")},
        data={"room": "301", "room_type": "DOUBLE"},
        headers={"X-Occupant-Id": "s1"},
    )
    assert res.status_code == 201
    assert res.json()["numeric_score"] == 9


def test_submission_with_unknown_room_type_is_bad_request(client):
    res = client.post(
        "/inspections",
        files={"image": ("room.jpg", make_jpeg(), "image/jpeg")},
        data={"room": "301", "room_type": "castle"},
        headers={"X-Occupant-Id": "s1"},
    )
    assert res.status_code == 400
