from datetime import timedelta

from .conftest import NOW


def payload(**overrides):
    data = {
        "title": "Dentist",
        "message": "Bring insurance card",
        "notificationDateTime": (NOW + timedelta(hours=3)).isoformat(),
        "notificationMethod": "email",
        "category": "health",
        "tags": ["appointments"],
    }
    data.update(overrides)
    return data


def test_create_returns_camel_case_reminder(client):
    response = client.post("/api/reminders", json=payload())
    assert response.status_code == 201
    body = response.json()
    assert body["title"] == "Dentist"
    assert body["notificationStatus"] == "pending"
    assert body["notificationMethod"] == "email"
    assert body["timezone"] == "Asia/Tokyo"
    assert body["notificationDateTime"].startswith("2025-01-15T12:00:00")
    assert body["id"]


def test_create_past_reminder_is_rejected(client):
    response = client.post("/api/reminders", json=payload(notificationDateTime=(NOW - timedelta(hours=1)).isoformat()))
    assert response.status_code == 400
    assert "future" in response.json()["error"]


def test_create_without_title_is_rejected(client):
    response = client.post("/api/reminders", json=payload(title=""))
    assert response.status_code == 400
    assert response.json() == {"error": "Title is required"}


def test_create_with_non_object_body_is_rejected(client):
    response = client.post("/api/reminders", json=["Dentist"])
    assert response.status_code == 400
    assert "error" in response.json()


def test_get_update_delete_lifecycle(client):
    reminder_id = client.post("/api/reminders", json=payload()).json()["id"]

    response = client.get(f"/api/reminders/{reminder_id}")
    assert response.status_code == 200
    assert response.json()["message"] == "Bring insurance card"

    response = client.put(f"/api/reminders/{reminder_id}", json={"message": "Moved to 3pm", "tags": None})
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Moved to 3pm"
    assert body["tags"] == []
    assert body["title"] == "Dentist"

    response = client.put(f"/api/reminders/{reminder_id}", json={"title": "   "})
    assert response.status_code == 400

    response = client.delete(f"/api/reminders/{reminder_id}")
    assert response.status_code == 204
    assert client.get(f"/api/reminders/{reminder_id}").status_code == 404
    assert client.delete(f"/api/reminders/{reminder_id}").status_code == 404


def test_unknown_reminder_is_404(client):
    response = client.get("/api/reminders/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "Reminder not found"}
    assert client.put("/api/reminders/does-not-exist", json={"title": "x"}).status_code == 404


def test_list_filters(client, json_repository):
    email = client.post("/api/reminders", json=payload()).json()
    hook = client.post(
        "/api/reminders",
        json=payload(notificationMethod="webhook", category="work", notificationDateTime=(NOW + timedelta(days=2)).isoformat()),
    ).json()
    json_repository.update(hook["id"], {"notificationStatus": "sent"})

    def ids(**params):
        response = client.get("/api/reminders", params=params)
        assert response.status_code == 200
        return [r["id"] for r in response.json()]

    assert ids() == [email["id"], hook["id"]]
    assert ids(category="work") == [hook["id"]]
    assert ids(status="sent") == [hook["id"]]
    assert ids(notificationMethod="email") == [email["id"]]
    assert ids(method="webhook") == [hook["id"]]
    assert ids(upcoming=4) == [email["id"]]


def test_list_rejects_bad_filters(client):
    assert client.get("/api/reminders", params={"status": "done"}).status_code == 400
    assert client.get("/api/reminders", params={"method": "sms"}).status_code == 400
    response = client.get("/api/reminders", params={"upcoming": 0})
    assert response.status_code == 400
    assert "error" in response.json()


def test_meta_endpoints(client):
    client.post("/api/reminders", json=payload(category="health", tags=["b", "a"]))
    client.post("/api/reminders", json=payload(category="work", tags=["a"], notificationMethod="webhook"))

    assert client.get("/api/reminders/meta/categories").json() == ["health", "work"]
    assert client.get("/api/reminders/meta/tags").json() == ["a", "b"]

    stats = client.get("/api/reminders/meta/stats").json()
    assert stats["total"] == 2
    assert stats["pending"] == 2
    assert stats["notificationMethods"] == {"webhook": 1, "email": 1}
    assert stats["scheduler"]["running"] is False


def test_test_notification_endpoint(client, http):
    response = client.post("/api/reminders/test/webhook")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["message"] == "Test webhook notification sent successfully"
    assert len(http.calls) == 1

    http.status_code = 500
    response = client.post("/api/reminders/test/webhook")
    assert response.json()["success"] is False
    assert response.json()["message"] == "Failed to send test webhook notification"

    response = client.post("/api/reminders/test/pager")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid notification method. Must be webhook or email"}


def test_health_reports_counts(client):
    client.post("/api/reminders", json=payload())
    body = client.get("/health").json()
    assert body["status"] == "OK"
    assert body["database"] == "JSON File Storage"
    assert body["reminderCount"] == 1
    assert body["pendingReminders"] == 1
    assert "warning" not in body


def test_health_survives_unreadable_storage(client, json_repository):
    json_repository.collection.path.parent.mkdir(parents=True, exist_ok=True)
    json_repository.collection.path.write_text("garbage", encoding="utf-8")

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["warning"] == "Could not access database"

    response = client.get("/api/reminders")
    assert response.status_code == 500
    assert response.json() == {"error": "Storage error"}


def test_startup_recovers_in_flight_reminders(app_settings, reminder_settings, json_repository, dispatcher, clock):
    from fastapi.testclient import TestClient

    from app.main import create_app

    stuck = json_repository.create(payload(repeatSettings={"interval": "daily"}))
    json_repository.claim(stuck.id)

    app = create_app(app_settings, reminder_settings, repository=json_repository, dispatcher=dispatcher, clock=clock)
    with TestClient(app) as test_client:
        body = test_client.get(f"/api/reminders/{stuck.id}").json()
        reminders = test_client.get("/api/reminders").json()

    assert body["notificationStatus"] == "failed"
    assert body["dispatchDetail"] == "interrupted before completion"
    successor = next(r for r in reminders if r["id"] != stuck.id)
    assert successor["parentReminderId"] == stuck.id
    assert successor["notificationStatus"] == "pending"
    assert successor["repeatSettings"]["occurrenceCount"] == 2
