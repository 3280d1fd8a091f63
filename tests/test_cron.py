# Cron endpoint tests: shared-secret auth and the sweep stats envelope.
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

CRON_PATH = "/api/cron/process-scheduled-messages"


def cron_headers(secret: str = "test-cron-secret") -> dict[str, str]:
    return {"Authorization": f"Bearer {secret}"}


# No CRON_SECRET configured: refuse to run at all
def test_cron_not_configured(client: TestClient, monkeypatch):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    r = client.get(CRON_PATH, headers=cron_headers())
    assert r.status_code == 500
    assert r.json() == {"error": "Cron job is not configured"}


def test_cron_rejects_bad_or_missing_token(client: TestClient):
    assert client.get(CRON_PATH, headers=cron_headers("wrong")).status_code == 401
    r = client.get(CRON_PATH)
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    assert client.get(CRON_PATH, headers={"Authorization": "test-cron-secret"}).status_code == 401


# Nothing scheduled: zero stats, still a success
def test_cron_empty_run(client: TestClient):
    r = client.get(CRON_PATH, headers=cron_headers())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["stats"] == {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
    assert datetime.fromisoformat(body["timestamp"].replace("Z", "+00:00")).tzinfo is not None


# A reminder whose fire time was half an hour ago goes out through the endpoint; POST works too
def test_cron_sends_due_message(client: TestClient, org, make_property, make_booking, make_template, make_trigger, transport):
    fire_at = datetime.now(timezone.utc) - timedelta(minutes=30)
    check_in = fire_at.date() + timedelta(days=1)
    make_booking(make_property(), check_in=check_in, check_out=check_in + timedelta(days=2))
    make_trigger(
        make_template(title="Pre-arrival Info"),
        trigger_type="time_based",
        offset_value=1,
        offset_unit="days",
        reference="before_checkin",
        send_time=fire_at.time().replace(second=0, microsecond=0),
    )

    r = client.post(CRON_PATH, headers=cron_headers())
    assert r.status_code == 200, r.text
    assert r.json()["stats"] == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0}
    assert [e["subject"] for e in transport.sent] == ["Check-in Tomorrow - Sunset Villa"]

    # Next tick inside the same hour finds the pair already delivered
    r = client.get(CRON_PATH, headers=cron_headers())
    assert r.json()["stats"] == {"processed": 1, "sent": 0, "failed": 0, "skipped": 1}
    assert transport.calls == 1
