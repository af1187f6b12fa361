"""
Hosting Bridge Billing Integration
==================================

Stripe integration for game server and Discord bot subscriptions.

Flow:
1. Storefront posts plan, billing cycle and server configuration
2. Price is recomputed server-side and a Checkout Session is created
3. Customer pays on the Stripe-hosted page
4. Webhook (push) or the success page (pull) reports the paid session
5. Provisioning runs and its result is merged into the session metadata

The Stripe SDK is synchronous; every call runs in a worker thread with an
``asyncio.wait_for`` bound on top of the SDK's own HTTP timeout.

Documentation:
- Stripe Checkout: https://docs.stripe.com/payments/checkout
- Stripe Webhooks: https://docs.stripe.com/webhooks
- Metadata: https://docs.stripe.com/metadata

Updated: October 2026
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Optional, Any, List
from urllib.parse import quote as url_quote

import stripe

from .catalog import SERVICE_DISCORD_BOT, SERVICE_MINECRAFT, DEFAULT_BOT_RAM_MB, DEFAULT_GAME_RAM_GB
from .errors import (
    DependencyTimeout,
    DependencyUnavailable,
    InvalidSignature,
    SessionNotFound,
)
from .pricing import calculate_pricing, reconcile_price, to_cents, PriceQuote

logger = logging.getLogger(__name__)

SERVICE_NAME = "stripe"


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject (or plain dict) to a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    return obj.to_dict()


class PaymentStatus(Enum):
    """Normalised payment state of a checkout session."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


@dataclass
class PaymentSession:
    """A checkout session as the provisioning workflow sees it."""
    id: str
    payment_status: PaymentStatus
    customer_details_email: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    amount_total: Optional[int] = None
    subscription_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def contact_email(self) -> Optional[str]:
        """First non-blank of: customer details email, customer_email, metadata customerEmail."""
        for candidate in (
            self.customer_details_email,
            self.customer_email,
            self.metadata.get("customerEmail"),
        ):
            if candidate and candidate.strip():
                return candidate.strip()
        return None

    @classmethod
    def from_stripe(cls, obj: Any) -> "PaymentSession":
        """Build from a Stripe checkout.Session (or its dict form)."""
        data = _as_dict(obj)

        if data.get("status") == "expired":
            status = PaymentStatus.FAILED
        elif data.get("payment_status") in ("paid", "no_payment_required"):
            status = PaymentStatus.PAID
        else:
            status = PaymentStatus.PENDING

        details = _as_dict(data.get("customer_details"))
        metadata = {
            k: "" if v is None else str(v)
            for k, v in _as_dict(data.get("metadata")).items()
        }
        created = data.get("created")
        subscription = data.get("subscription")
        if subscription is not None and not isinstance(subscription, str):
            subscription = _as_dict(subscription).get("id")

        return cls(
            id=data["id"],
            payment_status=status,
            customer_details_email=details.get("email"),
            customer_email=data.get("customer_email"),
            metadata=metadata,
            created_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
            amount_total=data.get("amount_total"),
            subscription_id=subscription,
        )


@dataclass
class BillingEvent:
    """A verified webhook event."""
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, event: Any) -> "BillingEvent":
        raw = _as_dict(event)
        payload = _as_dict(_as_dict(raw.get("data")).get("object"))
        return cls(id=raw.get("id", ""), type=raw.get("type", ""), data=payload)


@dataclass
class CheckoutOrder:
    """What the storefront is buying. Values are validated by the API layer."""
    plan_id: str
    server_name: str
    monthly_rate: float
    service_type: str = SERVICE_MINECRAFT
    customer_email: Optional[str] = None
    # Game server
    server_type: str = "paper"
    minecraft_version: str = "latest"
    total_ram: Optional[int] = None
    max_players: int = 20
    view_distance: int = 10
    enable_whitelist: bool = False
    enable_pvp: bool = True
    plugins: List[str] = field(default_factory=list)
    # Discord bot
    bot_language: str = "nodejs"
    bot_framework: str = "discord.js"

    @property
    def is_bot(self) -> bool:
        return self.service_type == SERVICE_DISCORD_BOT

    def to_metadata(self, quote: PriceQuote, final_price: float) -> Dict[str, str]:
        """Stripe-compatible metadata (all strings) read back at provisioning time."""
        metadata = {
            "serviceType": self.service_type,
            "planId": self.plan_id,
            "billingCycle": quote.cycle.name,
            "finalPrice": f"{final_price:.2f}",
            "monthlyRate": f"{self.monthly_rate:.2f}",
            "billingMultiplier": str(quote.cycle.multiplier),
            "billingDiscount": str(quote.cycle.discount),
            "serverName": self.server_name,
            "serverStatus": "pending",
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        if self.customer_email:
            metadata["customerEmail"] = self.customer_email

        if self.is_bot:
            metadata.update({
                "botName": self.server_name,
                "plan": self.plan_id,
                "language": self.bot_language,
                "framework": self.bot_framework,
                "totalRam": str(self.total_ram or DEFAULT_BOT_RAM_MB),
            })
        else:
            metadata.update({
                "selectedServerType": self.server_type,
                "minecraftVersion": self.minecraft_version,
                "totalRam": str(self.total_ram or DEFAULT_GAME_RAM_GB),
                "maxPlayers": str(self.max_players),
                "viewDistance": str(self.view_distance),
                "enableWhitelist": str(self.enable_whitelist).lower(),
                "enablePvp": str(self.enable_pvp).lower(),
                "selectedPlugins": ",".join(self.plugins),
            })
        return metadata


class StripeBilling:
    """
    Stripe billing client.

    Handles:
    - Creating checkout sessions
    - Verifying webhooks
    - Reading sessions and merging metadata onto them
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        frontend_url: str,
        timeout: float = 20.0,
    ):
        """
        Initialize billing.

        Args:
            secret_key: Stripe secret API key
            webhook_secret: Webhook signing secret
            frontend_url: Storefront base URL for success/cancel redirects
            timeout: Upper bound in seconds for every Stripe call
        """
        stripe.api_key = secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    async def _call(self, operation: str, fn, *args, **kwargs):
        """Run a blocking SDK call off the event loop and map its failures."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise DependencyTimeout(SERVICE_NAME, f"{operation} timed out after {self.timeout}s")
        except stripe.APIConnectionError as e:
            raise DependencyUnavailable(SERVICE_NAME, f"{operation} connection failed: {e}")
        except stripe.InvalidRequestError as e:
            if e.http_status == 404 or getattr(e, "code", None) == "resource_missing":
                raise SessionNotFound(f"{operation}: {e.user_message or e}")
            raise DependencyUnavailable(
                SERVICE_NAME, f"{operation} rejected: {e.user_message or e}", status_code=e.http_status
            )
        except stripe.StripeError as e:
            raise DependencyUnavailable(
                SERVICE_NAME, f"{operation} failed: {e.user_message or e}", status_code=e.http_status
            )

    # =========================================
    # CHECKOUT
    # =========================================

    async def create_checkout_session(
        self,
        order: CheckoutOrder,
        billing_cycle: str,
        client_price: float,
    ) -> Dict[str, Any]:
        """
        Create a subscription Checkout Session.

        Args:
            order: Plan and server configuration
            billing_cycle: monthly, quarterly, semiannual or annual
            client_price: Price the storefront displayed

        Returns:
            Dict with sessionId, url and the server-side pricing breakdown

        Raises:
            InvalidInput: Unknown billing cycle or non-positive rate
        """
        quote = calculate_pricing(order.monthly_rate, billing_cycle)
        final_price = reconcile_price(client_price, quote)
        cycle = quote.cycle
        metadata = order.to_metadata(quote, final_price)

        if order.is_bot:
            description = f"Discord bot hosting ({order.bot_language}/{order.bot_framework}) - {cycle.label}"
            success_path = "/discord-success"
            cancel_url = f"{self.frontend_url}/cancel"
        else:
            description = f"Minecraft server hosting - {cycle.label}"
            success_path = "/success"
            cancel_url = f"{self.frontend_url}/setup/{url_quote(order.server_name, safe='')}?cancelled=true"

        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": "usd",
                    "unit_amount": to_cents(final_price),
                    "recurring": {
                        "interval": cycle.interval,
                        "interval_count": cycle.interval_count,
                    },
                    "product_data": {
                        "name": f"{order.server_name} - {order.plan_id.capitalize()} Plan",
                        "description": description,
                    },
                },
                "quantity": 1,
            }],
            "success_url": f"{self.frontend_url}{success_path}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
        }
        if order.customer_email:
            params["customer_email"] = order.customer_email

        session = await self._call("create checkout session", stripe.checkout.Session.create, **params)
        session_id = _as_dict(session).get("id")
        logger.info(
            f"Created checkout session for {order.service_type} plan {order.plan_id} "
            f"({cycle.name}, ${final_price:.2f})",
            extra={"session_id": session_id},
        )
        return {
            "sessionId": session_id,
            "url": _as_dict(session).get("url"),
            "pricing": quote.to_dict(),
        }

    # =========================================
    # WEBHOOKS
    # =========================================

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """
        Verify webhook signature and return the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            Verified BillingEvent

        Raises:
            InvalidSignature: On any verification or parse failure
        """
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Invalid webhook signature: {e}")
        except ValueError as e:
            raise InvalidSignature(f"Invalid webhook payload: {e}")
        return BillingEvent.from_stripe(event)

    # =========================================
    # SESSIONS
    # =========================================

    async def retrieve_session(self, session_id: str) -> PaymentSession:
        """
        Fetch a checkout session.

        Raises:
            SessionNotFound: Stripe has no such session
            DependencyTimeout / DependencyUnavailable: Stripe call failed
        """
        session = await self._call(
            "retrieve session", stripe.checkout.Session.retrieve, session_id
        )
        return PaymentSession.from_stripe(session)

    async def merge_metadata(self, session_id: str, updates: Dict[str, str]) -> None:
        """Merge keys into the session metadata. Empty-string values delete a key."""
        await self._call(
            "update session metadata",
            stripe.checkout.Session.modify,
            session_id,
            metadata=updates,
        )
