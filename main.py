"""
Hosting Bridge API
==================

Main entry point for the payment-to-provisioning bridge.

Endpoints:
- POST /webhook - Stripe webhook (public, signature verified)
- GET /session-details/{session_id} - Provisioning status (provisions when paid)
- GET /server-details/{session_id} - Alias of session-details
- POST /create-checkout-session - Create a Stripe Checkout Session
- GET /health - Health check
- GET /plans - Server plans
- /servers/..., /discord-bot/... - Server management (admin key)

Run:
    uvicorn main:create_app --factory --host 0.0.0.0 --port 3001
"""

import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from hosting_bridge import __version__
from hosting_bridge.api import Services, limiter, provisioning_error_handler, router
from hosting_bridge.billing import StripeBilling
from hosting_bridge.config import BridgeConfig, load_config
from hosting_bridge.errors import ProvisioningError
from hosting_bridge.intake import EventIntake
from hosting_bridge.logging_config import configure_logging
from hosting_bridge.management import InstanceManager
from hosting_bridge.orchestrator import ProvisioningOrchestrator
from hosting_bridge.panel import PterodactylPanel
from hosting_bridge.reconciliation import BillingMetadataBackend, ReconciliationStore

logger = logging.getLogger(__name__)


def build_services(config: BridgeConfig) -> Services:
    """Wire billing, panel, store, orchestrator, intake and manager from config."""
    billing = StripeBilling(
        secret_key=config.stripe.secret_key,
        webhook_secret=config.stripe.webhook_secret,
        frontend_url=config.frontend_url,
        timeout=config.stripe.timeout_seconds,
    )
    panel = PterodactylPanel(
        api_url=config.panel.api_url,
        api_key=config.panel.api_key,
        client_api_key=config.panel.client_api_key,
        timeout=config.panel.timeout_seconds,
    )
    store = ReconciliationStore(durable=BillingMetadataBackend(billing))
    orchestrator = ProvisioningOrchestrator(
        panel=panel,
        store=store,
        targets=config.panel.targets(),
        panel_url=config.panel.api_url,
        public_host=config.panel.public_host,
        sftp_host=config.panel.sftp_host,
    )
    intake = EventIntake(billing=billing, orchestrator=orchestrator, store=store)
    return Services(
        config=config,
        billing=billing,
        panel=panel,
        store=store,
        orchestrator=orchestrator,
        intake=intake,
        manager=InstanceManager(panel),
    )


def create_app(
    config: Optional[BridgeConfig] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Validated config; loaded from the environment when omitted
        services: Pre-built services (tests pass fakes)

    Raises:
        ConfigurationError: If required environment variables are missing
    """
    if services is not None:
        config = services.config
    elif config is None:
        load_dotenv()
        config = load_config()

    configure_logging(config.log_level, config.log_format)

    if services is None:
        services = build_services(config)

    app = FastAPI(
        title="Hosting Bridge",
        description="Stripe checkout to Pterodactyl provisioning",
        version=__version__,
    )
    app.state.services = services
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ProvisioningError, provisioning_error_handler)

    # CORS from config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        targets = config.panel.targets()
        for kind, target in targets.items():
            logger.info(
                f"{kind}: node {target.node_id}, egg {target.egg_id}, "
                f"max {target.max_instances} instances"
            )
        if not config.admin_api_key:
            logger.warning("ADMIN_API_KEY not set; server management routes will reject all calls")
        logger.info("Hosting Bridge API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Let background provisioning finish, then close the panel client."""
        await services.intake.drain()
        await services.panel.close()
        logger.info("Hosting Bridge API stopped")

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=3001)
