"""
Hosting Bridge HTTP API
=======================

Endpoints:
- POST /webhook - Stripe webhook (public, signature verified)
- GET /session-details/{session_id} - Provisioning status, provisions if paid
- GET /server-details/{session_id} - Same as session-details
- POST /create-checkout-session - Start a subscription checkout
- GET /health - Liveness, degraded-persistence and ownership-defect view
- GET /plans - Server plans a running server can move to

Server management (Bearer ADMIN_API_KEY):
- GET /servers/{server_id} - Panel server and its build
- POST /servers/{server_id}/upgrade - Apply a fixed plan
- POST /servers/{server_id}/resources - Custom resource update
- POST /discord-bot/{identifier}/{signal} - start, stop or restart a bot
- GET /discord-bot/{identifier}/status - Live state and resource usage

Services are attached to ``app.state.services`` by the app factory in main.py.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from slowapi import Limiter
from slowapi.util import get_remote_address

from .accounts import EMAIL_PATTERN
from .billing import CheckoutOrder, StripeBilling
from .catalog import BOT_RUNTIMES, SERVER_PLANS, SERVICE_DISCORD_BOT, SERVICE_MINECRAFT
from .config import BridgeConfig
from .errors import (
    CapacityExceeded,
    DependencyConflict,
    DependencyTimeout,
    DependencyUnavailable,
    InvalidInput,
    InvalidSignature,
    NoCapacity,
    ProvisioningError,
    ResourceNotFound,
    SessionNotFound,
    Unauthorized,
)
from .intake import EventIntake
from .management import InstanceManager
from .orchestrator import ProvisioningOrchestrator
from .panel.base import PowerSignal, ResourcePanel
from .pricing import BILLING_CYCLES
from .reconciliation import ReconciliationStore

logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

router = APIRouter()

SESSION_ID_PATTERN = re.compile(r"^cs_[A-Za-z0-9_]{1,250}$")
PENDING_RETRY_AFTER = "5"
CAPACITY_RETRY_AFTER = "300"
INSTANCE_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9-]{8,36}$")


@dataclass
class Services:
    """Everything the routes need, built once by the app factory."""
    config: BridgeConfig
    billing: StripeBilling
    panel: ResourcePanel
    store: ReconciliationStore
    orchestrator: ProvisioningOrchestrator
    intake: EventIntake
    manager: InstanceManager


def get_services(request: Request) -> Services:
    return request.app.state.services


# =========================================
# ERROR MAPPING
# =========================================

ERROR_STATUS = {
    InvalidInput: 422,
    InvalidSignature: 400,
    Unauthorized: 401,
    SessionNotFound: 404,
    ResourceNotFound: 404,
    CapacityExceeded: 503,
    NoCapacity: 503,
    DependencyTimeout: 504,
    DependencyUnavailable: 502,
    DependencyConflict: 502,
}


def status_for(error: ProvisioningError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    """Render taxonomy errors with their safe message. Provider detail stays in the logs."""
    status = status_for(exc)
    if status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {status}: {exc.message}")
    headers = {"Retry-After": CAPACITY_RETRY_AFTER} if status == 503 else None
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


def _validate_session_id(session_id: str) -> str:
    if not SESSION_ID_PATTERN.match(session_id):
        raise InvalidInput(f"Malformed session id: {session_id!r}")
    return session_id


def _validate_identifier(identifier: str) -> str:
    if not INSTANCE_IDENTIFIER_PATTERN.match(identifier):
        raise InvalidInput(f"Malformed server identifier: {identifier!r}")
    return identifier


async def require_admin(request: Request) -> None:
    """
    Check the Bearer token on a management call.

    Management is disabled (every call rejected) while ADMIN_API_KEY is unset.

    Raises:
        Unauthorized: Missing, malformed or wrong token
    """
    expected = get_services(request).config.admin_api_key
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if not expected or scheme != "Bearer" or not secrets.compare_digest(
        token.encode(), expected.encode()
    ):
        logger.warning(f"Rejected management call {request.method} {request.url.path}")
        raise Unauthorized(f"Bad admin credentials for {request.url.path}")


# =========================================
# REQUEST MODELS
# =========================================

class ServerConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    server_name: str
    total_cost: float
    service_type: str = SERVICE_MINECRAFT
    customer_email: Optional[str] = None
    selected_server_type: str = "paper"
    minecraft_version: str = "latest"
    total_ram: Optional[int] = None
    max_players: int = 20
    view_distance: int = 10
    enable_whitelist: bool = False
    enable_pvp: bool = True
    selected_plugins: List[str] = []
    language: str = "nodejs"
    framework: str = "discord.js"

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v):
        v = v.strip()
        if not v or len(v) > 100:
            raise ValueError("serverName must be 1-100 characters")
        return v

    @field_validator("total_cost")
    @classmethod
    def validate_total_cost(cls, v):
        if v <= 0:
            raise ValueError("totalCost must be a positive number")
        return v

    @field_validator("total_ram", "max_players", "view_distance")
    @classmethod
    def validate_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError("must be a positive number")
        return v

    @field_validator("service_type")
    @classmethod
    def validate_service_type(cls, v):
        valid = (SERVICE_MINECRAFT, SERVICE_DISCORD_BOT)
        if v not in valid:
            raise ValueError(f"serviceType must be one of: {', '.join(valid)}")
        return v

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v):
        if v is None or not v.strip():
            return None
        v = v.strip().lower()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v

    @field_validator("language")
    @classmethod
    def validate_language(cls, v):
        if v not in BOT_RUNTIMES:
            raise ValueError(f"language must be one of: {', '.join(BOT_RUNTIMES)}")
        return v


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan_id: str
    billing_cycle: str
    final_price: float
    server_config: ServerConfig

    @field_validator("plan_id")
    @classmethod
    def validate_plan_id(cls, v):
        v = v.strip().lower()
        if not re.match(r"^[a-z0-9_-]{1,32}$", v):
            raise ValueError("planId must be 1-32 chars: letters, numbers, hyphens, underscores")
        return v

    @field_validator("billing_cycle")
    @classmethod
    def validate_billing_cycle(cls, v):
        if v not in BILLING_CYCLES:
            raise ValueError(f"billingCycle must be one of: {', '.join(BILLING_CYCLES)}")
        return v

    @field_validator("final_price")
    @classmethod
    def validate_final_price(cls, v):
        if v <= 0:
            raise ValueError("finalPrice must be a positive number")
        return v

    def to_order(self) -> CheckoutOrder:
        cfg = self.server_config
        return CheckoutOrder(
            plan_id=self.plan_id,
            server_name=cfg.server_name,
            monthly_rate=cfg.total_cost,
            service_type=cfg.service_type,
            customer_email=cfg.customer_email,
            server_type=cfg.selected_server_type,
            minecraft_version=cfg.minecraft_version,
            total_ram=cfg.total_ram,
            max_players=cfg.max_players,
            view_distance=cfg.view_distance,
            enable_whitelist=cfg.enable_whitelist,
            enable_pvp=cfg.enable_pvp,
            plugins=cfg.selected_plugins,
            bot_language=cfg.language,
            bot_framework=cfg.framework,
        )


class UpgradeRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan_id: str

    @field_validator("plan_id")
    @classmethod
    def validate_plan_id(cls, v):
        v = v.strip().lower()
        if v not in SERVER_PLANS:
            raise ValueError(f"planId must be one of: {', '.join(SERVER_PLANS)}")
        return v


class ResourceUpdateRequest(BaseModel):
    memory: Optional[int] = None
    disk: Optional[int] = None
    cpu: Optional[int] = None
    databases: Optional[int] = None
    backups: Optional[int] = None

    @field_validator("memory", "disk", "cpu", "databases", "backups")
    @classmethod
    def validate_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError("must be a positive integer")
        return v


# =========================================
# ROUTES
# =========================================

@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    services = get_services(request)
    store = services.store
    return {
        "status": "degraded" if store.degraded_count else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stripe_configured": services.config.stripe.is_configured,
        "panel_configured": services.config.panel.is_configured,
        "degraded_persistence": store.degraded_count,
        "degraded_sessions": store.degraded_sessions(),
        "ownership_defects": services.orchestrator.ownership_defects(),
        "background_tasks": services.intake.pending_tasks,
        "management_enabled": bool(services.config.admin_api_key),
    }


@router.post("/webhook")
@limiter.limit("120/minute")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    This endpoint is PUBLIC but secured via Stripe signature verification.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    outcome = await get_services(request).intake.handle_event(payload, signature)
    return {"received": True, "handled": outcome.handled, "action": outcome.action}


async def _session_status(request: Request, session_id: str) -> JSONResponse:
    _validate_session_id(session_id)
    status = await get_services(request).intake.ensure_provisioned(session_id)
    if status.status == "pending":
        return JSONResponse(
            status_code=202,
            content=status.to_dict(),
            headers={"Retry-After": PENDING_RETRY_AFTER},
        )
    return JSONResponse(status_code=200, content=status.to_dict())


@router.get("/session-details/{session_id}")
@limiter.limit("60/minute")
async def session_details(request: Request, session_id: str):
    """Status of a checkout session; provisions the server once the session is paid."""
    return await _session_status(request, session_id)


@router.get("/server-details/{session_id}")
@limiter.limit("60/minute")
async def server_details(request: Request, session_id: str):
    return await _session_status(request, session_id)


@router.post("/create-checkout-session")
@limiter.limit("10/minute")
async def create_checkout_session(request: Request, body: CheckoutRequest):
    """Create a Stripe Checkout Session with a server-recomputed price."""
    billing = get_services(request).billing
    return await billing.create_checkout_session(
        body.to_order(),
        billing_cycle=body.billing_cycle,
        client_price=body.final_price,
    )


# =========================================
# SERVER MANAGEMENT
# =========================================

@router.get("/plans")
@limiter.limit("60/minute")
async def list_plans(request: Request):
    return {"plans": get_services(request).manager.list_plans()}


@router.get("/servers/{server_id}", dependencies=[Depends(require_admin)])
@limiter.limit("30/minute")
async def get_server(request: Request, server_id: int):
    server = await get_services(request).manager.get_server(server_id)
    return {"server": server.to_dict()}


@router.post("/servers/{server_id}/upgrade", dependencies=[Depends(require_admin)])
@limiter.limit("10/minute")
async def upgrade_server(request: Request, server_id: int, body: UpgradeRequest):
    """Move a server onto a fixed plan."""
    server = await get_services(request).manager.upgrade_plan(server_id, body.plan_id)
    return {
        "success": True,
        "message": f"Server upgraded to {body.plan_id} plan",
        "server": server.to_dict(),
    }


@router.post("/servers/{server_id}/resources", dependencies=[Depends(require_admin)])
@limiter.limit("10/minute")
async def update_server_resources(request: Request, server_id: int, body: ResourceUpdateRequest):
    """Change selected limits of a server; omitted fields keep their current value."""
    changes = body.model_dump(exclude_none=True)
    server = await get_services(request).manager.update_resources(server_id, changes)
    return {
        "success": True,
        "message": "Server resources updated",
        "server": server.to_dict(),
    }


@router.post("/discord-bot/{identifier}/{signal}", dependencies=[Depends(require_admin)])
@limiter.limit("30/minute")
async def bot_power(request: Request, identifier: str, signal: PowerSignal):
    """Start, stop or restart a bot container."""
    _validate_identifier(identifier)
    await get_services(request).manager.power(identifier, signal)
    return {"success": True, "message": f"Bot {signal.value} signal sent"}


@router.get("/discord-bot/{identifier}/status", dependencies=[Depends(require_admin)])
@limiter.limit("60/minute")
async def bot_status(request: Request, identifier: str):
    _validate_identifier(identifier)
    usage = await get_services(request).manager.status(identifier)
    return {"success": True, "data": usage.to_dict()}
