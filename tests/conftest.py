"""
Hosting Bridge Test Fixtures
============================

Shared fixtures for all test modules. The billing provider and the panel
are replaced by in-memory fakes that behave like the real services for
the calls the bridge makes.
"""

import asyncio
import copy
import json
import pytest
from typing import Dict, List, Optional

from hosting_bridge.billing import BillingEvent, PaymentSession, PaymentStatus
from hosting_bridge.config import BridgeConfig, NodeTarget, PanelConfig, StripeConfig
from hosting_bridge.errors import (
    DependencyConflict,
    DependencyUnavailable,
    InvalidSignature,
    ResourceNotFound,
    SessionNotFound,
)
from hosting_bridge.intake import EventIntake
from hosting_bridge.management import InstanceManager
from hosting_bridge.orchestrator import ProvisioningOrchestrator
from hosting_bridge.panel.base import (
    Allocation,
    InstanceSpec,
    PanelAccount,
    PanelInstance,
    PowerSignal,
    ResourcePanel,
    ResourceUsage,
)
from hosting_bridge.reconciliation import BillingMetadataBackend, ReconciliationStore


GAME_NODE = 1
BOT_NODE = 2
VALID_SIGNATURE = "t=1,v1=valid"
ADMIN_KEY = "admin-test-key-0123456789abcdef0123"


# ============================================
# FAKE PANEL
# ============================================

class FakePanel(ResourcePanel):
    """In-memory Pterodactyl. Every call yields to the loop so runs can interleave."""

    def __init__(self):
        self.accounts: List[PanelAccount] = []
        self.instances: Dict[int, PanelInstance] = {}
        self.node_counts: Dict[int, int] = {GAME_NODE: 0, BOT_NODE: 0}
        self.allocations: Dict[int, List[Allocation]] = {
            GAME_NODE: [Allocation(id=100 + i, ip="10.0.0.1", port=25565 + i) for i in range(5)],
            BOT_NODE: [Allocation(id=200 + i, ip="10.0.0.2", port=30000 + i) for i in range(5)],
        }
        self.created_specs: List[InstanceSpec] = []
        self.create_account_calls = 0
        self.owner_updates: List[int] = []
        self.access_grants: List[str] = []
        self.builds: List[int] = []
        self.power_signals: List[tuple] = []

        # Failure injection
        self.reported_owner: Optional[int] = None
        self.fail_owner_update = False
        self.fail_grant = False
        self.conflict_on_create_account = False
        self.account_created_elsewhere: Optional[PanelAccount] = None

    def add_account(self, email: str, username: str = "existing1") -> PanelAccount:
        account = PanelAccount(id=len(self.accounts) + 1, email=email, username=username)
        self.accounts.append(account)
        return account

    async def find_accounts_by_email(self, email: str) -> List[PanelAccount]:
        await asyncio.sleep(0)
        return [a for a in self.accounts if a.email == email]

    async def create_account(self, email, username, password, first_name, last_name) -> PanelAccount:
        await asyncio.sleep(0)
        self.create_account_calls += 1
        if self.conflict_on_create_account:
            if self.account_created_elsewhere is not None:
                self.accounts.append(self.account_created_elsewhere)
            raise DependencyConflict("pterodactyl", "The email has already been taken.")
        if any(a.email == email for a in self.accounts):
            raise DependencyConflict("pterodactyl", "The email has already been taken.")
        return self.add_account(email, username)

    async def count_instances(self, node_id: int) -> int:
        await asyncio.sleep(0)
        return self.node_counts.get(node_id, 0)

    async def list_free_allocations(self, node_id: int) -> List[Allocation]:
        await asyncio.sleep(0)
        return [a for a in self.allocations.get(node_id, []) if not a.assigned]

    async def create_instance(self, spec: InstanceSpec) -> PanelInstance:
        await asyncio.sleep(0)
        node_id = next(
            node for node, allocs in self.allocations.items()
            if any(a.id == spec.allocation_id for a in allocs)
        )
        allocation = next(a for a in self.allocations[node_id] if a.id == spec.allocation_id)
        if allocation.assigned:
            raise DependencyConflict("pterodactyl", "The allocation is already assigned.")
        allocation.assigned = True
        self.node_counts[node_id] += 1
        self.created_specs.append(spec)

        instance_id = len(self.instances) + 1
        instance = PanelInstance(
            id=instance_id,
            uuid=f"uuid-{instance_id}",
            identifier=f"abcd{instance_id:04d}",
            name=spec.name,
            owner_id=self.reported_owner if self.reported_owner is not None else spec.owner_id,
            limits=spec.limits,
            feature_limits=spec.feature_limits,
            allocation_id=spec.allocation_id,
        )
        self.instances[instance_id] = instance
        return instance

    async def get_instance(self, instance_id: int) -> PanelInstance:
        await asyncio.sleep(0)
        if instance_id not in self.instances:
            raise ResourceNotFound(f"Server {instance_id} does not exist")
        return self.instances[instance_id]

    async def update_instance_owner(self, instance: PanelInstance, account_id: int) -> None:
        await asyncio.sleep(0)
        if self.fail_owner_update:
            raise DependencyUnavailable("pterodactyl", "owner update rejected", status_code=500)
        self.owner_updates.append(account_id)
        self.instances[instance.id].owner_id = account_id

    async def grant_access(self, instance: PanelInstance, email: str, permissions: List[str]) -> None:
        await asyncio.sleep(0)
        if self.fail_grant:
            raise DependencyUnavailable("pterodactyl", "subuser create rejected", status_code=500)
        self.access_grants.append(email)

    async def update_build(self, instance, limits, feature_limits) -> PanelInstance:
        await asyncio.sleep(0)
        stored = self.instances[instance.id]
        stored.limits = limits
        stored.feature_limits = feature_limits
        self.builds.append(instance.id)
        return stored

    async def send_power_signal(self, identifier: str, signal: PowerSignal) -> None:
        await asyncio.sleep(0)
        self.power_signals.append((identifier, signal))

    async def get_resource_usage(self, identifier: str) -> ResourceUsage:
        await asyncio.sleep(0)
        state = "offline"
        for sent, signal in self.power_signals:
            if sent == identifier:
                state = "offline" if signal == PowerSignal.STOP else "running"
        return ResourceUsage(state=state, memory_bytes=1024, uptime_ms=5000)


# ============================================
# FAKE BILLING
# ============================================

def make_session(
    session_id: str = "cs_test_123",
    email: Optional[str] = "new@x.com",
    paid: bool = True,
    metadata: Optional[Dict[str, str]] = None,
) -> PaymentSession:
    return PaymentSession(
        id=session_id,
        payment_status=PaymentStatus.PAID if paid else PaymentStatus.PENDING,
        customer_details_email=email,
        metadata=dict(metadata or {"serverName": "Test Server", "totalRam": "2"}),
    )


class FakeBilling:
    """Stripe stand-in: sessions live in a dict, metadata is merged like Stripe does."""

    def __init__(self):
        self.sessions: Dict[str, PaymentSession] = {}
        self.merge_calls = 0
        self.fail_merge = False
        self.checkouts: List[dict] = []

    def add_session(self, session: PaymentSession) -> PaymentSession:
        self.sessions[session.id] = session
        return session

    async def retrieve_session(self, session_id: str) -> PaymentSession:
        await asyncio.sleep(0)
        if session_id not in self.sessions:
            raise SessionNotFound(f"No such checkout.session: {session_id}")
        return copy.deepcopy(self.sessions[session_id])

    async def merge_metadata(self, session_id: str, updates: Dict[str, str]) -> None:
        await asyncio.sleep(0)
        self.merge_calls += 1
        if self.fail_merge:
            raise DependencyUnavailable("stripe", "metadata update failed", status_code=500)
        metadata = self.sessions[session_id].metadata
        for key, value in updates.items():
            if value == "":
                metadata.pop(key, None)
            else:
                metadata[key] = value

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        if signature != VALID_SIGNATURE:
            raise InvalidSignature("Invalid webhook signature")
        raw = json.loads(payload)
        return BillingEvent(id=raw["id"], type=raw["type"], data=raw["data"]["object"])

    async def create_checkout_session(self, order, billing_cycle, client_price):
        self.checkouts.append({
            "order": order,
            "billing_cycle": billing_cycle,
            "client_price": client_price,
        })
        return {"sessionId": "cs_test_new", "url": "https://checkout.stripe.com/c/pay/cs_test_new"}


def checkout_event(session: PaymentSession, event_type: str = "checkout.session.completed") -> bytes:
    """Webhook body for a checkout session event."""
    return json.dumps({
        "id": "evt_test_123",
        "type": event_type,
        "data": {
            "object": {
                "id": session.id,
                "object": "checkout.session",
                "payment_status": "paid" if session.is_paid else "unpaid",
                "status": "complete" if session.is_paid else "open",
                "customer_details": {"email": session.customer_details_email},
                "metadata": session.metadata,
            }
        },
    }).encode()


# ============================================
# WIRING
# ============================================

@pytest.fixture
def panel():
    return FakePanel()


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def store(billing):
    return ReconciliationStore(durable=BillingMetadataBackend(billing))


@pytest.fixture
def targets():
    return {
        "minecraft": NodeTarget(node_id=GAME_NODE, egg_id=5, max_instances=3),
        "discord-bot": NodeTarget(node_id=BOT_NODE, egg_id=15, max_instances=3),
    }


@pytest.fixture
def orchestrator(panel, store, targets):
    return ProvisioningOrchestrator(
        panel=panel,
        store=store,
        targets=targets,
        panel_url="https://panel.example.com",
        public_host="play.example.com",
        clock=lambda: 1700000000,
    )


@pytest.fixture
def intake(billing, orchestrator, store):
    return EventIntake(billing=billing, orchestrator=orchestrator, store=store)


@pytest.fixture
def test_config():
    """Test configuration with dummy values."""
    return BridgeConfig(
        stripe=StripeConfig(secret_key="sk_test_fake", webhook_secret="whsec_test_fake"),
        panel=PanelConfig(
            api_url="https://panel.example.com",
            api_key="ptla_fake",
            node_id=GAME_NODE,
            egg_id=5,
            max_servers_per_node=3,
        ),
        frontend_url="https://shop.example.com",
        admin_api_key=ADMIN_KEY,
        log_format="text",
        cors_origins=["https://shop.example.com"],
    )


# ============================================
# FASTAPI TEST CLIENT
# ============================================

@pytest.fixture
def services(test_config, billing, panel, store, orchestrator, intake):
    from hosting_bridge.api import Services

    return Services(
        config=test_config,
        billing=billing,
        panel=panel,
        store=store,
        orchestrator=orchestrator,
        intake=intake,
        manager=InstanceManager(panel),
    )


@pytest.fixture
def test_client(services):
    """FastAPI test client wired to the fakes."""
    from fastapi.testclient import TestClient
    from hosting_bridge.api import limiter
    from main import create_app

    limiter.reset()
    app = create_app(services=services)
    with TestClient(app) as client:
        yield client
