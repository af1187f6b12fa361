"""
Hosting Bridge Centralized Configuration
========================================

Single source of truth for all configuration values.
Reads from environment variables; ``load_config()`` is called once by the
app factory and refuses to return a config with missing required values.
"""

import os
from typing import Optional, List, Dict
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised at startup when required configuration is missing or invalid."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


@dataclass
class StripeConfig:
    secret_key: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 20.0

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)


@dataclass
class NodeTarget:
    """Where instances of one service type are placed."""
    node_id: int
    egg_id: int
    max_instances: int


@dataclass
class PanelConfig:
    api_url: str = ""
    api_key: str = ""
    client_api_key: str = ""  # Needed only for subuser access grants
    node_id: Optional[int] = None
    egg_id: Optional[int] = None
    max_servers_per_node: Optional[int] = None
    bot_node_id: Optional[int] = None
    bot_egg_id: Optional[int] = None
    max_bots_per_node: Optional[int] = None
    public_host: str = ""
    sftp_host: str = ""
    timeout_seconds: float = 15.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def targets(self) -> Dict[str, NodeTarget]:
        """Node/egg/ceiling per service type. Bots fall back to the game server node."""
        game = NodeTarget(
            node_id=self.node_id,
            egg_id=self.egg_id,
            max_instances=self.max_servers_per_node,
        )
        bot = NodeTarget(
            node_id=self.bot_node_id or self.node_id,
            egg_id=self.bot_egg_id or self.egg_id,
            max_instances=self.max_bots_per_node or self.max_servers_per_node,
        )
        return {"minecraft": game, "discord-bot": bot}


@dataclass
class BridgeConfig:
    """Master configuration for the hosting bridge."""

    stripe: StripeConfig = field(default_factory=StripeConfig)
    panel: PanelConfig = field(default_factory=PanelConfig)

    frontend_url: str = ""
    admin_api_key: str = ""  # Bearer token for the server management routes
    log_level: str = "INFO"
    log_format: str = "json"
    cors_origins: List[str] = field(default_factory=list)

    # Filled by from_env() when a numeric variable can't be parsed
    parse_errors: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load configuration from environment variables."""
        errors: List[str] = []

        def _int(name: str) -> Optional[int]:
            raw = os.environ.get(name, "").strip()
            if not raw:
                return None
            try:
                return int(raw)
            except ValueError:
                errors.append(f"{name} must be an integer (got {raw!r})")
                return None

        def _float(name: str, default: float) -> float:
            raw = os.environ.get(name, "").strip()
            if not raw:
                return default
            try:
                return float(raw)
            except ValueError:
                errors.append(f"{name} must be a number (got {raw!r})")
                return default

        frontend_url = os.environ.get("FRONTEND_URL", "").rstrip("/")
        origins = os.environ.get("CORS_ORIGINS", "")

        return cls(
            stripe=StripeConfig(
                secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
                webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
                timeout_seconds=_float("STRIPE_TIMEOUT_SECONDS", 20.0),
            ),
            panel=PanelConfig(
                api_url=os.environ.get("PTERODACTYL_API_URL", "").rstrip("/"),
                api_key=os.environ.get("PTERODACTYL_API_KEY", ""),
                client_api_key=os.environ.get("PTERODACTYL_CLIENT_API_KEY", ""),
                node_id=_int("PTERODACTYL_NODE_ID"),
                egg_id=_int("PTERODACTYL_EGG_ID"),
                max_servers_per_node=_int("MAX_SERVERS_PER_NODE"),
                bot_node_id=_int("PTERODACTYL_BOT_NODE_ID"),
                bot_egg_id=_int("PTERODACTYL_BOT_EGG_ID"),
                max_bots_per_node=_int("MAX_BOTS_PER_NODE"),
                public_host=os.environ.get("PANEL_PUBLIC_HOST", ""),
                sftp_host=os.environ.get("SFTP_HOST", ""),
                timeout_seconds=_float("PANEL_TIMEOUT_SECONDS", 15.0),
            ),
            frontend_url=frontend_url,
            admin_api_key=os.environ.get("ADMIN_API_KEY", ""),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins else ([frontend_url] if frontend_url else [])
            ),
            parse_errors=errors,
        )

    def validate(self) -> List[str]:
        """
        Check required values.

        Returns:
            List of human-readable problems; empty when the config is usable.
        """
        errors = list(self.parse_errors)
        required = {
            "STRIPE_SECRET_KEY": self.stripe.secret_key,
            "STRIPE_WEBHOOK_SECRET": self.stripe.webhook_secret,
            "PTERODACTYL_API_URL": self.panel.api_url,
            "PTERODACTYL_API_KEY": self.panel.api_key,
            "PTERODACTYL_NODE_ID": self.panel.node_id,
            "PTERODACTYL_EGG_ID": self.panel.egg_id,
            "MAX_SERVERS_PER_NODE": self.panel.max_servers_per_node,
            "FRONTEND_URL": self.frontend_url,
        }
        for name, value in required.items():
            if value is None or value == "":
                # A parse failure already produced a more specific message
                if not any(e.startswith(name) for e in errors):
                    errors.append(f"{name} is required")

        if self.panel.max_servers_per_node is not None and self.panel.max_servers_per_node < 1:
            errors.append("MAX_SERVERS_PER_NODE must be at least 1")
        if self.stripe.timeout_seconds <= 0:
            errors.append("STRIPE_TIMEOUT_SECONDS must be positive")
        if self.panel.timeout_seconds <= 0:
            errors.append("PANEL_TIMEOUT_SECONDS must be positive")
        if self.admin_api_key and len(self.admin_api_key) < 32:
            errors.append("ADMIN_API_KEY must be at least 32 characters")
        return errors


def load_config() -> BridgeConfig:
    """
    Load and validate configuration from the environment.

    Raises:
        ConfigurationError: listing every missing or invalid field
    """
    config = BridgeConfig.from_env()
    errors = config.validate()
    if errors:
        raise ConfigurationError(errors)
    return config
