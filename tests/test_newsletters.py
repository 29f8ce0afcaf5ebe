import base64
from datetime import timedelta

import pytest

import settings
from database import create_document, utcnow
from newsletters import unsubscribe_token


def subscribe(client, email="reader@example.com", headers=None, **extra):
    payload = {"email": email, "name": "Reader", **extra}
    return client.post("/api/newsletters/subscribe", json=payload, headers=headers)


def verified_subscriber(email="reader@example.com", group_ids=(), subscribed=True):
    return create_document("subscriber", {
        "email": email,
        "name": "Reader",
        "preferred_language": "en",
        "group_ids": list(group_ids),
        "subscribed": subscribed,
        "verified": True,
        "subscribed_at": utcnow(),
    })


def test_subscribe_sends_verification(client, mongo):
    r = subscribe(client, "Reader@Example.com", headers={"Accept-Language": "nl-NL,nl;q=0.9"})
    assert r.json()["success"] is True

    subscriber = mongo["subscriber"].find_one()
    assert subscriber["email"] == "reader@example.com"
    assert subscriber["preferred_language"] == "nl"
    assert subscriber["verified"] is False
    assert len(subscriber["verification_token"]) == 64

    message = mongo["emailoutbox"].find_one({"template": "newsletter-verification"})
    assert subscriber["verification_token"] in message["context"]["verify_url"]


def test_subscribe_again_refreshes_token(client, mongo):
    subscribe(client, group_ids=["tires"])
    first = mongo["subscriber"].find_one()["verification_token"]
    subscribe(client, group_ids=["deals", "tires"])
    subscriber = mongo["subscriber"].find_one()
    assert subscriber["verification_token"] != first
    assert subscriber["group_ids"] == ["tires", "deals"]
    assert mongo["subscriber"].count_documents({}) == 1


def test_verify_redirects_and_welcomes(client, mongo):
    subscribe(client)
    token = mongo["subscriber"].find_one()["verification_token"]

    r = client.get("/api/newsletters/verify", params={"token": token}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == f"{settings.APP_URL}/newsletter/verification-success"

    subscriber = mongo["subscriber"].find_one()
    assert subscriber["verified"] is True
    assert subscriber["subscribed"] is True
    assert subscriber["verification_token"] is None
    assert mongo["emailoutbox"].count_documents({"template": "newsletter-welcome"}) == 1

    again = client.get("/api/newsletters/verify", params={"token": token}, follow_redirects=False)
    assert again.status_code == 400


def test_verify_rejects_expired_token(client, mongo):
    subscribe(client)
    mongo["subscriber"].update_one({}, {"$set": {"verification_expires": utcnow() - timedelta(minutes=1)}})
    token = mongo["subscriber"].find_one()["verification_token"]
    r = client.get("/api/newsletters/verify", params={"token": token}, follow_redirects=False)
    assert r.json() == {"error": "Invalid or expired verification token"}
    assert client.get("/api/newsletters/verify").status_code == 400


def test_resubscribe_after_unsubscribe(client, mongo):
    verified_subscriber(subscribed=False)
    r = subscribe(client)
    assert r.json()["message"] == "Welcome back! You have been re-subscribed"
    assert mongo["subscriber"].find_one()["subscribed"] is True


def test_unsubscribe_link(client, mongo):
    subscriber_id = verified_subscriber()
    subscriber = mongo["subscriber"].find_one()
    token = unsubscribe_token(subscriber)
    assert base64.b64decode(token).decode() == f"{subscriber_id}:reader@example.com"

    r = client.get("/api/newsletters/unsubscribe", params={"token": token}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].endswith("/newsletter/unsubscribe?success=true")
    assert mongo["subscriber"].find_one()["subscribed"] is False
    assert mongo["emailoutbox"].count_documents({"template": "newsletter-unsubscribed"}) == 1


@pytest.mark.parametrize("token, error", [
    (None, "missing-token"),
    ("not base64!", "invalid-token"),
    (base64.b64encode(b"no-separator").decode(), "invalid-token"),
    (base64.b64encode(b"65f000000000000000000000:reader@example.com").decode(), "subscriber-not-found"),
])
def test_unsubscribe_link_errors(client, token, error):
    params = {"token": token} if token else {}
    r = client.get("/api/newsletters/unsubscribe", params=params, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].endswith(f"error={error}")


def test_unsubscribe_by_email(client, mongo):
    verified_subscriber()
    assert client.post("/api/newsletters/unsubscribe", json={"email": "reader@example.com"}).json()["success"] is True
    assert client.post("/api/newsletters/unsubscribe", json={"email": "other@example.com"}).status_code == 404


def test_subscribe_rate_limit(client):
    for i in range(settings.NEWSLETTER_RATE_LIMIT):
        assert subscribe(client, f"reader{i}@example.com").status_code == 200
    r = subscribe(client, "late@example.com")
    assert r.status_code == 429


def test_send_newsletter_to_group(client, mongo, admin_headers):
    verified_subscriber("a@example.com", group_ids=["winter"])
    verified_subscriber("b@example.com", group_ids=["summer"])
    verified_subscriber("c@example.com", group_ids=["winter"], subscribed=False)

    newsletter = client.post(
        "/api/newsletters",
        json={"title": "Winter", "subject": "Winter tires", "content": "<p>Stock up</p>", "group_ids": ["winter"]},
        headers=admin_headers,
    ).json()
    assert newsletter["status"] == "DRAFT"

    r = client.post(f"/api/newsletters/{newsletter['id']}/send", headers=admin_headers)
    assert r.json()["sent_count"] == 1
    assert [m["to"] for m in mongo["emailoutbox"].find({"template": "newsletter"})] == ["a@example.com"]

    again = client.post(f"/api/newsletters/{newsletter['id']}/send", headers=admin_headers)
    assert again.status_code == 400
    edit = client.put(f"/api/newsletters/{newsletter['id']}", json={"title": "Edited"}, headers=admin_headers)
    assert edit.status_code == 400


def test_schedule_and_cron(client, mongo, admin_headers, user_headers, monkeypatch):
    verified_subscriber()
    due = (utcnow() - timedelta(minutes=5)).isoformat() + "Z"
    later = (utcnow() + timedelta(days=1)).isoformat() + "Z"
    for title, when in (("Due", due), ("Later", later)):
        r = client.post(
            "/api/newsletters",
            json={"title": title, "subject": title, "content": "Hello", "scheduled_for": when},
            headers=admin_headers,
        )
        assert r.json()["status"] == "SCHEDULED"

    assert client.post("/api/newsletters/cron").status_code == 401
    assert client.post("/api/newsletters/cron", headers=user_headers).status_code == 403

    monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")
    r = client.post("/api/newsletters/cron", headers={"X-Cron-Secret": "s3cret"})
    assert r.json()["processed"] == 1
    assert mongo["newsletter"].find_one({"title": "Due"})["status"] == "SENT"
    assert mongo["newsletter"].find_one({"title": "Later"})["status"] == "SCHEDULED"


def test_update_schedule(client, admin_headers):
    newsletter = client.post(
        "/api/newsletters", json={"title": "T", "subject": "S", "content": "C"}, headers=admin_headers
    ).json()
    later = (utcnow() + timedelta(days=2)).isoformat()
    r = client.put(f"/api/newsletters/{newsletter['id']}", json={"scheduled_for": later}, headers=admin_headers)
    assert r.json()["status"] == "SCHEDULED"
    r = client.put(f"/api/newsletters/{newsletter['id']}", json={"scheduled_for": None}, headers=admin_headers)
    assert r.json()["status"] == "DRAFT"


def test_subscribers_and_stats(client, admin_headers):
    verified_subscriber("a@example.com")
    verified_subscriber("b@example.com", subscribed=False)
    create_document("newsletter", {"title": "Old", "subject": "Old", "content": "x", "status": "SENT", "sent_at": utcnow(), "open_rate": 40.0, "click_rate": 10.0})
    create_document("newsletter", {"title": "Older", "subject": "Older", "content": "x", "status": "SENT", "sent_at": utcnow() - timedelta(days=60), "open_rate": 20.0})

    r = client.get("/api/newsletters/subscribers", params={"subscribed": True}, headers=admin_headers)
    assert [s["email"] for s in r.json()["subscribers"]] == ["a@example.com"]
    assert "verification_token" not in r.json()["subscribers"][0]

    stats = client.get("/api/newsletters/stats", headers=admin_headers).json()
    assert stats == {
        "total_subscribers": 1,
        "new_subscribers": 1,
        "sent_newsletters": 2,
        "recent_newsletters": 1,
        "open_rate": 30.0,
        "click_rate": 10.0,
    }
