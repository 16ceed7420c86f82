"""
Tests for the dispatch trigger API.

These tests verify the FastAPI endpoints with every collaborator swapped in
through dependency overrides.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_channels, get_clock, get_store
from shared.config import Settings, get_settings
from shared.data_store import DataStore
from shared.models import AnchorKey, Channel, DeliveryStatus, EventKind, SendMode
from shared.store import StoreUnavailableError

CRON = {"Authorization": "Bearer s3cret"}


class DownStore(DataStore):
    """Store that cannot open a run, as if the database were down."""

    def __init__(self):
        super().__init__(load_fixtures=False)

    def start_run(self, kind, now):
        raise StoreUnavailableError("connection refused")


@pytest.fixture
def api_settings() -> Settings:
    return Settings(_env_file=None, cron_secret="s3cret", operator_session_tokens=["op-token"])


@pytest.fixture
def api_client(store, channels, clock, api_settings):
    """Create a test client with fresh state."""
    app.dependency_overrides[get_settings] = lambda: api_settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_channels] = lambda: channels
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealthEndpoint:
    def test_health_check(self, api_client):
        """Test that health endpoint returns healthy."""
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestTriggerAuth:
    """Only the scheduler's secret or an operator session may trigger a run."""

    def test_no_credentials(self, api_client):
        assert api_client.get("/cron/send-alerts").status_code == 401

    def test_wrong_secret(self, api_client):
        response = api_client.get("/cron/send-alerts", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_bearer_secret(self, api_client):
        assert api_client.get("/cron/send-alerts", headers=CRON).status_code == 200

    def test_post_also_accepted(self, api_client):
        assert api_client.post("/cron/send-alerts", headers=CRON).status_code == 200

    def test_operator_session_header(self, api_client):
        response = api_client.get("/cron/send-alerts", headers={"X-Operator-Session": "op-token"})
        assert response.status_code == 200

    def test_operator_session_cookie(self, api_client):
        api_client.cookies.set("session", "op-token")
        assert api_client.get("/cron/send-alerts").status_code == 200

    def test_unknown_session(self, api_client):
        response = api_client.get("/cron/send-alerts", headers={"X-Operator-Session": "stolen"})
        assert response.status_code == 401

    def test_no_secret_configured(self, api_client):
        app.dependency_overrides[get_settings] = lambda: Settings(_env_file=None)

        response = api_client.get("/cron/send-alerts", headers={"Authorization": "Bearer "})

        assert response.status_code == 401


class TestTriggerReport:
    def test_report_shape(self, api_client, store, channels, make_event, make_subscriber):
        make_subscriber("alice")
        make_event(id=1)

        response = api_client.get("/cron/send-alerts", headers=CRON)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["events_fetched"] == 1
        assert data["events_claimed"] == 1
        assert data["subscribers_fetched"] == 1
        assert data["events"][0]["sent_instant"] == 1
        assert data["digests"] == {"attempted": 0, "sent": 0, "failed": 0, "skipped": 0}
        assert data["preference_map_version"] == 2
        assert channels.email.find_message_to("alice@example.com") is not None

    def test_limit_and_event_id(self, api_client, make_event):
        for _ in range(3):
            make_event()

        limited = api_client.get("/cron/send-alerts?limit=2", headers=CRON).json()
        single = api_client.get("/cron/send-alerts?event_id=3", headers=CRON).json()

        assert limited["events_fetched"] == 2
        assert [e["event_id"] for e in single["events"]] == [3]

    def test_invalid_limit(self, api_client):
        assert api_client.get("/cron/send-alerts?limit=0", headers=CRON).status_code == 422

    def test_failures_still_return_200(self, api_client, channels, make_event, make_subscriber):
        channels.email.fail_recipients.add("alice@example.com")
        channels.email.raise_errors = True
        make_subscriber("alice")
        make_event(id=1)

        response = api_client.get("/cron/send-alerts", headers=CRON)

        assert response.status_code == 200
        assert response.json()["events"][0]["status"] == "FAILED"

    def test_store_outage_is_503(self, api_client):
        app.dependency_overrides[get_store] = lambda: DownStore()

        response = api_client.get("/cron/send-alerts", headers=CRON)

        assert response.status_code == 503
        assert response.json() == {"ok": False, "error": "Store unavailable"}


class TestOperatorEndpoints:
    def test_latest_run(self, api_client):
        assert api_client.get("/runs/latest", headers=CRON).status_code == 404

        api_client.get("/cron/send-alerts", headers=CRON)
        response = api_client.get("/runs/latest", headers=CRON)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["kind"] == "ALERT_SENDER"

    def test_operator_endpoints_need_auth(self, api_client):
        assert api_client.get("/runs/latest").status_code == 401
        assert api_client.get("/dead-letters").status_code == 401

    def test_dead_letter_requeue(self, api_client, store, make_event, now):
        event = make_event(id=1)
        anchor = store.create_anchor(
            AnchorKey(
                subscriber_id="dee",
                kind=EventKind.BILL_STATUS_CHANGED,
                channel=Channel.EMAIL,
                target="dee@example.com",
                send_mode=SendMode.DIGEST,
            ),
            now,
        )
        delivery = store.create_delivery(event.id, anchor.id, now)
        store.close_deliveries([delivery.id], DeliveryStatus.FAILED, now, "boom")
        record = store.add_dead_letter(
            "digest", "boom", now, anchor_id=anchor.id, delivery_ids=[delivery.id]
        )

        listed = api_client.get("/dead-letters", headers=CRON).json()
        assert [r["id"] for r in listed] == [record.id]

        response = api_client.post(f"/dead-letters/{record.id}/requeue", headers=CRON)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "dead_letter_id": record.id, "requeued": 1}
        assert store.get_delivery(delivery.id).status == DeliveryStatus.QUEUED

        again = api_client.post(f"/dead-letters/{record.id}/requeue", headers=CRON)
        assert again.status_code == 409
        assert api_client.get("/dead-letters", headers=CRON).json() == []
        assert len(api_client.get("/dead-letters?include_resolved=true", headers=CRON).json()) == 1

    def test_requeue_unknown(self, api_client):
        assert api_client.post("/dead-letters/99/requeue", headers=CRON).status_code == 404
