"""
Tests for the Stripe webhook endpoint and the monitoring routes
"""

import json
from unittest.mock import MagicMock

import pytest
import stripe
from httpx import ASGITransport, AsyncClient

from campus.config import settings
from campus.models.tenant import SubscriptionStatus
from campus.routes.gateway_webhook import get_event_processor, get_webhook_secret
from campus.services.gateway_events import GatewayEventProcessor
from main import create_app
from utils.mock_utils import create_test_tenant


def event_body(event_id: str = "evt_1", event_type: str = "invoice.payment_failed") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "data": {"object": {"object": "invoice", "id": "in_1", "customer": "cus_1", "subscription": "sub_1"}},
        }
    ).encode()


@pytest.fixture
def construct_event(monkeypatch) -> MagicMock:
    mock = MagicMock(return_value={})
    monkeypatch.setattr(stripe.Webhook, "construct_event", mock)
    return mock


@pytest.fixture
def app(test_db, access_service):
    application = create_app()
    application.dependency_overrides[get_webhook_secret] = lambda: "whsec_test"
    application.dependency_overrides[get_event_processor] = lambda: GatewayEventProcessor(test_db, access_service)
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


class TestStripeWebhook:
    async def test_valid_event_processed(self, test_db, client, construct_event, access_service):
        tenant, _ = await create_test_tenant(test_db, subscription_id="sub_1", customer_id="cus_1")

        response = await client.post("/webhooks/stripe", content=event_body(), headers={"Stripe-Signature": "t=1,v1=abc"})

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_id": "evt_1", "action": "suspended", "duplicate": False}
        construct_event.assert_called_once_with(event_body(), "t=1,v1=abc", "whsec_test")
        assert await access_service.ledger.resolve_status(tenant) == SubscriptionStatus.suspended.value

    async def test_replayed_event_is_duplicate(self, test_db, client, construct_event):
        await create_test_tenant(test_db, subscription_id="sub_1", customer_id="cus_1")
        headers = {"Stripe-Signature": "t=1,v1=abc"}

        await client.post("/webhooks/stripe", content=event_body(), headers=headers)
        response = await client.post("/webhooks/stripe", content=event_body(), headers=headers)

        assert response.json()["duplicate"] is True

    async def test_missing_signature(self, client, construct_event):
        response = await client.post("/webhooks/stripe", content=event_body())

        assert response.status_code == 400
        construct_event.assert_not_called()

    async def test_bad_signature(self, client, monkeypatch):
        monkeypatch.setattr(
            stripe.Webhook,
            "construct_event",
            MagicMock(side_effect=stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")),
        )

        response = await client.post("/webhooks/stripe", content=event_body(), headers={"Stripe-Signature": "t=1,v1=bad"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid signature"

    async def test_secret_not_configured(self, app, monkeypatch):
        del app.dependency_overrides[get_webhook_secret]
        monkeypatch.setattr(settings, "stripe_webhook_secret", None)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            response = await http_client.post(
                "/webhooks/stripe", content=event_body(), headers={"Stripe-Signature": "t=1,v1=abc"}
            )

        assert response.status_code == 503
        assert response.json()["error"]["error_code"] == "GATEWAY_NOT_CONFIGURED"


class TestMonitoring:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "campus_cap_changes_total" in response.text
