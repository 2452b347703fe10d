"""
Tests for the registry API.

Validates:
- Webhook shared-secret check
- Signup events drive provisioning only after confirmation
- Authorization decisions over HTTP
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from rbi_registry.api import app as api
from rbi_registry.geography.hierarchy import HierarchyStore
from rbi_registry.provisioning.queue import ProvisioningQueue
from rbi_registry.provisioning.service import ProvisioningService
from tests.factories import SAMPLE_TREE, FakeDirectory, make_db, seed

SECRET = "test-secret"
HEADERS = {"X-Webhook-Secret": SECRET}


def account_event(event_type: str, identity_id: str, code: str | None, confirmed: bool = True):
    record = {
        "id": identity_id,
        "email": f"{identity_id}@example.ph",
        "user_metadata": {"firstName": "Maria", "lastName": "Reyes"},
    }
    if code is not None:
        record["user_metadata"]["requestedJurisdictionCode"] = code
    if confirmed:
        record["email_confirmed_at"] = "2024-03-01T08:00:00Z"
    return {"type": event_type, "record": record}


class TestRegistryAPI:
    def setup_method(self):
        api.state.__init__()
        self.db = make_db()
        self.store = HierarchyStore(self.db)
        seed(self.store, SAMPLE_TREE)
        self.directory = FakeDirectory()
        service = ProvisioningService(self.db, self.store, self.directory, sleep=lambda s: None)
        api.state.db = self.db
        api.state.store = self.store
        api.state.provisioning = service
        api.state.queue = ProvisioningQueue(service)
        api.state.webhook_secret = SECRET
        self.client = TestClient(api.app)
        self.client.__enter__()

    def teardown_method(self):
        self.client.__exit__(None, None, None)
        api.state.__init__()

    def test_health(self):
        resp = self.client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["database_available"] is True

    def test_webhook_requires_secret(self):
        resp = self.client.post("/webhooks/identity", json=account_event("account.created", "u1", "010203004"))
        assert resp.status_code == 401
        resp = self.client.post(
            "/webhooks/identity",
            json=account_event("account.created", "u1", "010203004"),
            headers={"X-Webhook-Secret": "wrong"},
        )
        assert resp.status_code == 401

    def test_unconfirmed_signup_only_registered(self):
        resp = self.client.post(
            "/webhooks/identity",
            json=account_event("account.created", "u1", "010203004", confirmed=False),
            headers=HEADERS,
        )
        assert resp.status_code == 202
        assert resp.json() == {"status": "registered", "state": "pending_confirmation"}
        assert api.state.provisioning.get_profile("u1") is None

    def test_confirmed_signup_provisioned(self):
        self.client.post(
            "/webhooks/identity",
            json=account_event("account.created", "u1", "010203004", confirmed=False),
            headers=HEADERS,
        )
        resp = self.client.post(
            "/webhooks/identity",
            json=account_event("account.confirmed", "u1", "010203004"),
            headers=HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "provisioned"
        assert resp.json()["state"] == "role_assigned"
        assert resp.json()["role_id"] == 5

    def test_confirmation_without_metadata(self):
        created = self.client.post(
            "/webhooks/identity",
            json=account_event("account.created", "u1", "010203004", confirmed=False),
            headers=HEADERS,
        )
        assert created.status_code == 202
        bare = {
            "type": "account.confirmed",
            "record": {
                "id": "u1",
                "email": "u1@example.ph",
                "email_confirmed_at": "2024-03-01T08:00:00Z",
            },
        }
        resp = self.client.post("/webhooks/identity", json=bare, headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["state"] == "role_assigned"
        assert api.state.provisioning.get_profile("u1").jurisdiction_code == "010203004"

    def test_duplicate_delivery_is_harmless(self):
        event = account_event("account.confirmed", "u1", "010203004")
        first = self.client.post("/webhooks/identity", json=event, headers=HEADERS)
        second = self.client.post("/webhooks/identity", json=event, headers=HEADERS)
        assert first.json()["role_id"] == second.json()["role_id"] == 5

    def test_missing_jurisdiction_rejected(self):
        resp = self.client.post(
            "/webhooks/identity",
            json=account_event("account.created", "u1", None),
            headers=HEADERS,
        )
        assert resp.status_code == 422

    def test_unknown_event_type(self):
        resp = self.client.post(
            "/webhooks/identity",
            json=account_event("account.deleted", "u1", "010203004"),
            headers=HEADERS,
        )
        assert resp.status_code == 400

    def test_lagging_identity_requeued(self):
        self.directory.misses["u1"] = 100
        resp = self.client.post(
            "/webhooks/identity",
            json=account_event("account.confirmed", "u1", "010203004"),
            headers=HEADERS,
        )
        assert resp.status_code == 202
        assert resp.json()["status"] == "requeued"
        assert len(api.state.queue) == 1

    def _provision(self, identity_id: str, code: str) -> None:
        self.client.post(
            "/webhooks/identity",
            json=account_event("account.confirmed", identity_id, code),
            headers=HEADERS,
        )

    @pytest.mark.parametrize("code,allowed", [("010203004", True), ("010203005", False)])
    def test_authorize(self, code, allowed):
        self._provision("u1", "010203004")
        resp = self.client.post("/authorize", json={
            "profile_id": "u1",
            "operation": "write",
            "record": {"entity_type": "residents", "geo_code": code},
        })
        assert resp.json()["allowed"] is allowed
        assert resp.status_code == (200 if allowed else 403)
        if not allowed:
            assert resp.json()["reason"] == "out_of_scope"

    def test_authorize_unknown_profile(self):
        resp = self.client.post("/authorize", json={
            "profile_id": "ghost",
            "operation": "read",
            "record": {"entity_type": "residents", "geo_code": "010203004"},
        })
        assert resp.status_code == 404

    def test_authorize_unresolved_jurisdiction(self):
        self._provision("u1", "010203005")
        self.store.deactivate_node("010203005")
        resp = self.client.post("/authorize", json={
            "profile_id": "u1",
            "operation": "read",
            "record": {"entity_type": "residents", "geo_code": "010203005"},
        })
        assert resp.status_code == 409

    def test_profile_scope(self):
        self._provision("u1", "010203")
        resp = self.client.get("/profiles/u1/scope")
        assert resp.status_code == 200
        assert resp.json() == {
            "level": "city",
            "code": "010203",
            "codes": ["010203004", "010203005"],
        }
