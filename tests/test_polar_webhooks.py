"""Tests for Polar webhooks - signatures, metadata validation, idempotent crediting, HTTP mapping."""

import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_polar_processor
from api.main import app
from api.services.payment_engine import InvalidSignatureError
from api.services.polar_provider import (
    PolarWebhookProcessor,
    WebhookNotConfiguredError,
    WebhookValidationError,
    extract_order,
    verify_signature,
)

SECRET = "whsec_test_secret"


def order_event(order_id="polar-ord-1", user_id="user-1", package_id=2, credits=5,
                status="succeeded", event_type="order.created"):
    return {
        "type": event_type,
        "data": {
            "id": order_id,
            "status": status,
            "total_amount": 499,
            "currency": "usd",
            "metadata": {"userId": user_id, "packageId": package_id, "credits": credits},
        },
    }


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def encode(event: dict) -> bytes:
    return json.dumps(event).encode()


class TestSignature:
    def test_valid(self):
        body = b'{"type":"order.created"}'
        assert verify_signature(body, sign(body), SECRET) is True

    def test_prefixed(self):
        body = b"{}"
        assert verify_signature(body, f"sha256={sign(body)}", SECRET) is True
        assert verify_signature(body, f"v1,{sign(body)}", SECRET) is True

    def test_tampered_body(self):
        assert verify_signature(b'{"credits":100}', sign(b'{"credits":5}'), SECRET) is False

    def test_missing(self):
        assert verify_signature(b"{}", None, SECRET) is False
        assert verify_signature(b"{}", sign(b"{}"), None) is False


class TestExtractOrder:
    """Metadata validation for paid orders."""

    def test_paid_order(self):
        order = extract_order(order_event())

        assert order.order_id == "polar-ord-1"
        assert order.user_id == "user-1"
        assert order.credits == 5
        assert order.amount == Decimal("4.99")
        assert order.currency == "USD"

    @pytest.mark.parametrize("event", [
        order_event(status="pending"),
        order_event(event_type="order.updated"),
        order_event(event_type="checkout.created"),
    ])
    def test_ignored_events(self, event):
        assert extract_order(event) is None

    @pytest.mark.parametrize("overrides,message", [
        ({"user_id": None}, "Invalid webhook metadata"),
        ({"package_id": None}, "Invalid webhook metadata"),
        ({"package_id": 7}, "Invalid packageId"),
        ({"credits": 101, "package_id": 1}, "Invalid credits amount"),
        ({"credits": 7}, "Credits do not match package"),
    ])
    def test_invalid_metadata(self, overrides, message):
        with pytest.raises(WebhookValidationError, match=message):
            extract_order(order_event(**overrides))

    def test_string_ids_accepted(self):
        order = extract_order(order_event(package_id="4", credits="12"))
        assert order.credits == 12


class TestProcessor:
    """Processor against a real SQLite ledger."""

    @pytest.mark.asyncio
    async def test_credits_once_across_redeliveries(self, ledger, seed_user, db_state):
        await seed_user("user-1", credits=3)
        processor = PolarWebhookProcessor(ledger, SECRET)
        body = encode(order_event())

        order, first = await processor.process(body, sign(body))
        _, second = await processor.process(body, sign(body))

        assert order.credits == 5
        assert first.already_processed is False
        assert first.new_balance == 8
        assert second.already_processed is True
        assert second.transaction_id == first.transaction_id
        assert await db_state.credits("user-1") == 8

        rows = await db_state.transactions("polar-ord-1")
        assert len(rows) == 1
        assert rows[0].provider == "polar"
        assert await db_state.audit_statuses(rows[0].id) == ["COMPLETED"]

    @pytest.mark.asyncio
    async def test_not_configured(self, ledger):
        with pytest.raises(WebhookNotConfiguredError):
            await PolarWebhookProcessor(ledger, None).process(b"{}", "sig")

    @pytest.mark.asyncio
    async def test_bad_signature_writes_nothing(self, ledger, seed_user, db_state):
        await seed_user("user-1", credits=3)
        body = encode(order_event())

        with pytest.raises(InvalidSignatureError):
            await PolarWebhookProcessor(ledger, SECRET).process(body, sign(body, "wrong"))

        assert await db_state.credits("user-1") == 3
        assert await db_state.transactions() == []

    @pytest.mark.asyncio
    async def test_invalid_json(self, ledger):
        body = b"not json"
        with pytest.raises(WebhookValidationError, match="Invalid JSON"):
            await PolarWebhookProcessor(ledger, SECRET).process(body, sign(body))


class TestWebhookRoute:
    """HTTP status mapping through the FastAPI app."""

    @pytest_asyncio.fixture
    async def client(self, ledger):
        app.dependency_overrides[get_polar_processor] = lambda: PolarWebhookProcessor(ledger, SECRET)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            yield client
        app.dependency_overrides.clear()

    async def _post(self, client, event, path="/webhooks/polar", signature=None):
        body = encode(event)
        return await client.post(
            path,
            content=body,
            headers={"polar-signature": signature or sign(body), "content-type": "application/json"},
        )

    @pytest.mark.asyncio
    async def test_processed(self, client, seed_user):
        await seed_user("user-1", credits=3)

        response = await self._post(client, order_event())

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "processed": True,
            "orderId": "polar-ord-1",
            "newBalance": 8,
        }
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_legacy_path(self, client, seed_user):
        await seed_user("user-1", credits=0)

        response = await self._post(client, order_event(), path="/api/webhooks/polar")

        assert response.status_code == 200
        assert response.json()["newBalance"] == 5

    @pytest.mark.asyncio
    async def test_ignored_event(self, client):
        response = await self._post(client, order_event(status="pending"))

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": False}

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client):
        response = await self._post(client, order_event(), signature="deadbeef")

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}

    @pytest.mark.asyncio
    async def test_invalid_metadata(self, client):
        response = await self._post(client, order_event(package_id=9))

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid packageId"}

    @pytest.mark.asyncio
    async def test_unknown_user(self, client, db_state):
        response = await self._post(client, order_event(user_id="ghost"))

        assert response.status_code == 404
        assert response.json() == {"error": "User not found", "orderId": "polar-ord-1"}
        assert await db_state.transactions("polar-ord-1") == []

    @pytest.mark.asyncio
    async def test_not_configured(self, client, ledger):
        app.dependency_overrides[get_polar_processor] = lambda: PolarWebhookProcessor(ledger, None)

        response = await self._post(client, order_event())

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook not configured"}

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/webhooks/polar")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "polar-webhook"
