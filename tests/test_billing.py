"""
Tests for Stripe Billing
========================

Session mapping, webhook verification and checkout creation. The Stripe SDK
is patched; signatures are computed with the real signing scheme.
"""

import asyncio
import hashlib
import hmac
import json
import time
import pytest
from unittest.mock import MagicMock, patch

import stripe

from hosting_bridge.billing import (
    BillingEvent,
    CheckoutOrder,
    PaymentSession,
    PaymentStatus,
    StripeBilling,
)
from hosting_bridge.errors import (
    DependencyTimeout,
    DependencyUnavailable,
    InvalidSignature,
    SessionNotFound,
)

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def stripe_billing():
    return StripeBilling(
        secret_key="sk_test_fake",
        webhook_secret=WEBHOOK_SECRET,
        frontend_url="https://shop.example.com/",
    )


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestPaymentSession:
    """Mapping Stripe checkout sessions."""

    def test_paid(self):
        session = PaymentSession.from_stripe({
            "id": "cs_test_1",
            "payment_status": "paid",
            "status": "complete",
            "customer_details": {"email": "buyer@x.com"},
            "metadata": {"serverName": "Castle", "maxPlayers": 20},
            "created": 1700000000,
            "subscription": "sub_123",
        })
        assert session.is_paid
        assert session.contact_email() == "buyer@x.com"
        assert session.metadata["maxPlayers"] == "20"
        assert session.subscription_id == "sub_123"
        assert session.created_at.year == 2023

    def test_no_payment_required_counts_as_paid(self):
        session = PaymentSession.from_stripe({"id": "cs_1", "payment_status": "no_payment_required"})
        assert session.payment_status == PaymentStatus.PAID

    def test_unpaid(self):
        session = PaymentSession.from_stripe({"id": "cs_1", "payment_status": "unpaid", "status": "open"})
        assert session.payment_status == PaymentStatus.PENDING

    def test_expired(self):
        session = PaymentSession.from_stripe({"id": "cs_1", "payment_status": "unpaid", "status": "expired"})
        assert session.payment_status == PaymentStatus.FAILED

    def test_contact_email_order(self):
        session = PaymentSession(
            id="cs_1",
            payment_status=PaymentStatus.PAID,
            customer_details_email="  ",
            customer_email="direct@x.com",
            metadata={"customerEmail": "meta@x.com"},
        )
        assert session.contact_email() == "direct@x.com"

        session.customer_email = None
        assert session.contact_email() == "meta@x.com"

        session.metadata = {}
        assert session.contact_email() is None


class TestWebhookVerification:

    def test_valid_signature(self, stripe_billing):
        payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1", "object": "checkout.session"}},
        }).encode()

        event = stripe_billing.verify_webhook_signature(payload, sign(payload))

        assert isinstance(event, BillingEvent)
        assert event.type == "checkout.session.completed"
        assert event.data["id"] == "cs_test_1"

    def test_wrong_secret(self, stripe_billing):
        payload = b'{"id": "evt_1", "object": "event", "type": "x", "data": {"object": {}}}'
        with pytest.raises(InvalidSignature):
            stripe_billing.verify_webhook_signature(payload, sign(payload, secret="whsec_other"))

    def test_tampered_body(self, stripe_billing):
        payload = b'{"id": "evt_1", "object": "event", "type": "x", "data": {"object": {}}}'
        header = sign(payload)
        with pytest.raises(InvalidSignature):
            stripe_billing.verify_webhook_signature(payload.replace(b"evt_1", b"evt_2"), header)

    def test_missing_header(self, stripe_billing):
        with pytest.raises(InvalidSignature):
            stripe_billing.verify_webhook_signature(b"{}", None)

    def test_garbage_body(self, stripe_billing):
        payload = b"not json"
        with pytest.raises(InvalidSignature):
            stripe_billing.verify_webhook_signature(payload, sign(payload))


class TestCheckout:
    """Checkout session creation charges the recomputed price."""

    def create(self, stripe_billing, order, cycle, client_price):
        fake = MagicMock(return_value={"id": "cs_test_new", "url": "https://checkout.stripe.com/x"})
        with patch.object(stripe.checkout.Session, "create", fake):
            result = asyncio.run(stripe_billing.create_checkout_session(order, cycle, client_price))
        return result, fake.call_args.kwargs

    def test_game_server_checkout(self, stripe_billing):
        order = CheckoutOrder(plan_id="pro", server_name="My Castle", monthly_rate=10.0, total_ram=4)

        result, params = self.create(stripe_billing, order, "quarterly", 28.50)

        assert result["sessionId"] == "cs_test_new"
        assert result["pricing"]["finalPrice"] == pytest.approx(28.50)
        price_data = params["line_items"][0]["price_data"]
        assert price_data["unit_amount"] == 2850
        assert price_data["recurring"] == {"interval": "month", "interval_count": 3}
        assert params["success_url"] == "https://shop.example.com/success?session_id={CHECKOUT_SESSION_ID}"
        assert params["cancel_url"] == "https://shop.example.com/setup/My%20Castle?cancelled=true"
        assert params["metadata"]["totalRam"] == "4"
        assert params["metadata"]["serviceType"] == "minecraft"
        assert params["subscription_data"]["metadata"] == params["metadata"]

    def test_tampered_client_price_is_ignored(self, stripe_billing):
        order = CheckoutOrder(plan_id="pro", server_name="Cheap", monthly_rate=10.0)

        _, params = self.create(stripe_billing, order, "annual", 1.00)

        assert params["line_items"][0]["price_data"]["unit_amount"] == 10200
        assert params["metadata"]["finalPrice"] == "102.00"

    def test_bot_checkout(self, stripe_billing):
        order = CheckoutOrder(
            plan_id="starter", server_name="Helper", monthly_rate=3.0,
            service_type="discord-bot", bot_language="python", bot_framework="discord.py",
            customer_email="dev@x.com",
        )

        _, params = self.create(stripe_billing, order, "monthly", 3.0)

        assert params["success_url"].startswith("https://shop.example.com/discord-success")
        assert params["cancel_url"] == "https://shop.example.com/cancel"
        assert params["customer_email"] == "dev@x.com"
        assert params["metadata"]["botName"] == "Helper"
        assert params["metadata"]["totalRam"] == "512"
        assert params["metadata"]["language"] == "python"


class TestErrorMapping:
    """SDK exceptions become taxonomy errors."""

    def test_missing_session(self, stripe_billing):
        error = stripe.InvalidRequestError(
            "No such checkout.session: cs_nope", "id", code="resource_missing", http_status=404
        )
        with patch.object(stripe.checkout.Session, "retrieve", MagicMock(side_effect=error)):
            with pytest.raises(SessionNotFound):
                asyncio.run(stripe_billing.retrieve_session("cs_nope"))

    def test_connection_error(self, stripe_billing):
        error = stripe.APIConnectionError("network down")
        with patch.object(stripe.checkout.Session, "retrieve", MagicMock(side_effect=error)):
            with pytest.raises(DependencyUnavailable):
                asyncio.run(stripe_billing.retrieve_session("cs_1"))

    def test_timeout(self, stripe_billing):
        stripe_billing.timeout = 0.05

        def slow(*args, **kwargs):
            time.sleep(0.3)

        with patch.object(stripe.checkout.Session, "modify", slow):
            with pytest.raises(DependencyTimeout):
                asyncio.run(stripe_billing.merge_metadata("cs_1", {"serverId": "1"}))

    def test_merge_metadata_passes_updates(self, stripe_billing):
        fake = MagicMock(return_value={"id": "cs_1"})
        with patch.object(stripe.checkout.Session, "modify", fake):
            asyncio.run(stripe_billing.merge_metadata("cs_1", {"serverId": "1", "provisioningError": ""}))
        fake.assert_called_once_with("cs_1", metadata={"serverId": "1", "provisioningError": ""})
