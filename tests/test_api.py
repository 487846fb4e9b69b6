"""Tests for the HTTP API."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.app import app
from api.deps import get_db, get_readonly_db

from conftest import BUYER_ID, SELLER_ID

ALL_REQUIRED = ["purchase-agreement", "ownership-proof", "seller-id-card", "tax-documents"]


@pytest.fixture
def client(db_session):
    def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_readonly_db] = override_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def listing_id(client):
    response = client.post("/listings", json={
        "owner_id": SELLER_ID,
        "title": "Loft with balcony",
        "price": 180000,
        "photos": ["https://img.test/loft.jpg"],
    })
    assert response.status_code == 200
    return response.json()["listing"]["id"]


def _post(client, listing_id, step, **body):
    return client.post(f"/listings/{listing_id}/purchase/{step}", json=body)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        assert response.json()["checks"]["database"]["connected"] is True


class TestPurchaseRoutes:

    def test_full_purchase(self, client, listing_id):
        response = _post(client, listing_id, "propose", caller_id=SELLER_ID, buyer_id=BUYER_ID)
        assert response.status_code == 200
        assert response.json()["listing"]["state"] == "proposed_to_buyer"

        response = _post(client, listing_id, "confirm-buyer", caller_id=BUYER_ID)
        assert response.status_code == 200
        assert response.json()["degraded"] is False

        response = _post(client, listing_id, "confirm-documents", caller_id=SELLER_ID, documents=ALL_REQUIRED)
        assert response.status_code == 200

        response = _post(client, listing_id, "handover", caller_id=SELLER_ID, handover_date="2026-11-02")
        assert response.status_code == 200
        assert response.json()["listing"]["handover_date"] == "2026-11-02"

        response = _post(client, listing_id, "complete", caller_id=SELLER_ID)
        assert response.status_code == 200
        assert response.json()["listing"]["state"] == "completed"

        purchases = client.get(f"/participants/{BUYER_ID}/purchases").json()
        assert [p["listing_id"] for p in purchases] == [listing_id]

        seller_view = client.get(f"/participants/{SELLER_ID}/listings/{listing_id}").json()
        assert seller_view["title"] == "Loft with balcony"

    def test_listing_read_and_filter(self, client, listing_id):
        assert client.get(f"/listings/{listing_id}").json()["owner_id"] == SELLER_ID

        listed = client.get("/listings", params={"owner_id": SELLER_ID}).json()
        assert listing_id in [row["id"] for row in listed]

    def test_update_listing(self, client, listing_id):
        response = client.patch(f"/listings/{listing_id}", json={"caller_id": SELLER_ID, "price": 175000})
        assert response.status_code == 200
        assert response.json()["listing"]["price"] == 175000


class TestErrorMapping:

    def test_conflict(self, client, listing_id):
        _post(client, listing_id, "propose", caller_id=SELLER_ID, buyer_id=BUYER_ID)

        response = _post(client, listing_id, "propose", caller_id=SELLER_ID, buyer_id="buyer-2")

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_missing_documents(self, client, listing_id):
        _post(client, listing_id, "propose", caller_id=SELLER_ID, buyer_id=BUYER_ID)
        _post(client, listing_id, "confirm-buyer", caller_id=BUYER_ID)

        response = _post(client, listing_id, "confirm-documents", caller_id=SELLER_ID, documents=["purchase-agreement"])

        assert response.status_code == 400
        assert "tax-documents" in response.json()["details"]["missing"]

    def test_not_found(self, client):
        response = client.get("/listings/999999")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_permission_denied(self, client, listing_id):
        response = _post(client, listing_id, "propose", caller_id="stranger", buyer_id=BUYER_ID)
        assert response.status_code == 403

    def test_request_validation(self, client, listing_id):
        response = _post(client, listing_id, "cancel", caller_id=SELLER_ID, initiator="agent")
        assert response.status_code == 422


class TestInspectionRoutes:

    @pytest.fixture
    def confirmed_id(self, client, listing_id):
        _post(client, listing_id, "propose", caller_id=SELLER_ID, buyer_id=BUYER_ID)
        _post(client, listing_id, "confirm-buyer", caller_id=BUYER_ID)
        return listing_id

    def test_checklist_and_notifications(self, client, confirmed_id):
        response = client.post(f"/listings/{confirmed_id}/checklist", json={
            "caller_id": BUYER_ID, "title": "Heating",
        })
        assert response.status_code == 200
        item_id = response.json()["id"]

        response = client.post(f"/checklist/{item_id}/status", json={"caller_id": SELLER_ID, "status": "issue"})
        assert response.json()["status"] == "issue"

        response = client.post(f"/checklist/{item_id}/status", json={"caller_id": SELLER_ID, "status": "passed"})
        assert response.status_code == 409

        feed = client.get(f"/listings/{confirmed_id}/notifications", params={"role": "seller"}).json()
        assert feed["unread"] >= 1
        ids = [n["id"] for n in feed["notifications"]]

        response = client.post(f"/listings/{confirmed_id}/notifications/read", json={
            "caller_id": SELLER_ID, "notification_ids": ids,
        })
        assert response.json()["updated"] == feed["unread"]

    def test_defect_routes(self, client, confirmed_id):
        response = client.post(f"/listings/{confirmed_id}/defects", json={
            "caller_id": BUYER_ID, "title": "Cracked tile", "expected_completion": "2026-11-20",
        })
        assert response.status_code == 200
        issue_id = response.json()["id"]

        response = client.post(f"/defects/{issue_id}/status", json={"caller_id": SELLER_ID, "status": "in-progress"})
        assert response.json()["status"] == "in-progress"

        defects = client.get(f"/listings/{confirmed_id}/defects", params={"status": "in-progress"}).json()
        assert [d["id"] for d in defects] == [issue_id]

    def test_photos_need_storage(self, client, confirmed_id):
        issue_id = client.post(f"/listings/{confirmed_id}/defects", json={
            "caller_id": BUYER_ID, "title": "Dent",
        }).json()["id"]

        response = client.post(
            f"/defects/{issue_id}/photos",
            data={"caller_id": BUYER_ID, "kind": "before"},
            files=[("files", ("dent.jpg", b"\xff\xd8fake", "image/jpeg"))],
        )

        assert response.status_code == 503

    def test_events(self, client, confirmed_id):
        events = client.get(f"/listings/{confirmed_id}/events").json()["events"]
        assert events[0]["event_type"] == "buyer_confirmed"

        assert client.get("/listings/999999/events").status_code == 404
