"""
Hosting Bridge Catalog
======================

What we sell and how it maps onto panel resources.

Two service types are provisioned from checkout metadata:

- ``minecraft``: Java game server. ``totalRam`` is in GB.
- ``discord-bot``: bot runtime container. ``totalRam`` is in MB.

Server plans are the fixed tiers a running server can be upgraded to.

Updated: October 2026
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional

from .panel.base import InstanceSpec, InstanceLimits, FeatureLimits

SERVICE_MINECRAFT = "minecraft"
SERVICE_DISCORD_BOT = "discord-bot"

DEFAULT_GAME_RAM_GB = 2
DEFAULT_BOT_RAM_MB = 512
DEFAULT_MAX_PLAYERS = 20
DEFAULT_SERVER_TYPE = "paper"
DEFAULT_VERSION = "latest"

MINECRAFT_IMAGE = "ghcr.io/pterodactyl/yolks:java_17"
MINECRAFT_STARTUP = "java -Xms128M -Xmx{{SERVER_MEMORY}}M -jar {{SERVER_JARFILE}}"


@dataclass(frozen=True)
class BotRuntime:
    image: str
    startup: str


BOT_RUNTIMES: Dict[str, Dict[str, BotRuntime]] = {
    "nodejs": {
        "discord.js": BotRuntime("ghcr.io/pterodactyl/yolks:nodejs_18", "node index.js"),
        "eris": BotRuntime("ghcr.io/pterodactyl/yolks:nodejs_18", "node index.js"),
    },
    "python": {
        "discord.py": BotRuntime("ghcr.io/pterodactyl/yolks:python_3.11", "python main.py"),
        "py-cord": BotRuntime("ghcr.io/pterodactyl/yolks:python_3.11", "python main.py"),
    },
    "java": {
        "jda": BotRuntime("ghcr.io/pterodactyl/yolks:java_17", "java -jar bot.jar"),
    },
    "csharp": {
        "discord.net": BotRuntime("ghcr.io/pterodactyl/yolks:dotnet_6", "dotnet run"),
    },
}

DEFAULT_BOT_LANGUAGE = "nodejs"
DEFAULT_BOT_FRAMEWORK = "discord.js"


@dataclass(frozen=True)
class BotPlan:
    cpu: int
    databases: int
    backups: int


# Unknown plan ids get the enterprise tier
BOT_PLANS: Dict[str, BotPlan] = {
    "starter": BotPlan(cpu=50, databases=1, backups=2),
    "pro": BotPlan(cpu=100, databases=2, backups=5),
    "enterprise": BotPlan(cpu=200, databases=5, backups=10),
}

GAME_SERVER_DATABASES = 2
GAME_SERVER_BACKUPS = 10


@dataclass(frozen=True)
class ServerPlan:
    """Fixed resource tier an existing server can be moved onto."""
    memory: int
    disk: int
    cpu: int
    databases: int
    backups: int
    swap: int = 0
    io: int = 500

    def limits(self, threads: Optional[str] = None) -> InstanceLimits:
        return InstanceLimits(
            memory=self.memory,
            disk=self.disk,
            swap=self.swap,
            io=self.io,
            cpu=self.cpu,
            threads=threads,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "memory": self.memory,
            "disk": self.disk,
            "cpu": self.cpu,
            "swap": self.swap,
            "io": self.io,
            "databases": self.databases,
            "backups": self.backups,
        }


SERVER_PLANS: Dict[str, ServerPlan] = {
    "starter": ServerPlan(memory=2048, disk=10240, cpu=100, databases=1, backups=1),
    "standard": ServerPlan(memory=4096, disk=20480, cpu=200, databases=2, backups=2),
    "premium": ServerPlan(memory=8192, disk=40960, cpu=300, databases=3, backups=3),
    "ultimate": ServerPlan(memory=16384, disk=81920, cpu=400, databases=5, backups=5),
}


def service_type(metadata: Dict[str, str]) -> str:
    """Service type recorded at checkout; older sessions carry none and are game servers."""
    if metadata.get("serviceType") == SERVICE_DISCORD_BOT:
        return SERVICE_DISCORD_BOT
    return SERVICE_MINECRAFT


def get_bot_runtime(language: str, framework: str) -> BotRuntime:
    """Runtime for a language/framework pair, falling back to Node.js + discord.js."""
    return (
        BOT_RUNTIMES.get(language, {}).get(framework)
        or BOT_RUNTIMES[DEFAULT_BOT_LANGUAGE][DEFAULT_BOT_FRAMEWORK]
    )


def _positive_int(value: Optional[str], default: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return parsed if parsed > 0 else default


def build_instance_spec(
    metadata: Dict[str, str],
    egg_id: int,
    owner_id: Optional[int] = None,
    allocation_id: Optional[int] = None,
    now: Optional[float] = None,
) -> InstanceSpec:
    """
    Turn checkout metadata into an InstanceSpec.

    Args:
        metadata: Session metadata (string values)
        egg_id: Panel egg for this service type
        owner_id: Panel account that will own the instance
        allocation_id: Allocation to bind as the default
        now: Unix time used for generated names

    Returns:
        InstanceSpec ready for ResourcePanel.create_instance
    """
    ts = int(now if now is not None else time.time())

    if service_type(metadata) == SERVICE_DISCORD_BOT:
        ram_mb = _positive_int(metadata.get("totalRam"), DEFAULT_BOT_RAM_MB)
        language = metadata.get("language") or DEFAULT_BOT_LANGUAGE
        framework = metadata.get("framework") or DEFAULT_BOT_FRAMEWORK
        runtime = get_bot_runtime(language, framework)
        plan = BOT_PLANS.get(metadata.get("plan") or metadata.get("planId") or "starter",
                             BOT_PLANS["enterprise"])
        name = metadata.get("botName") or metadata.get("serverName") or f"bot-{ts}"

        return InstanceSpec(
            name=name,
            egg_id=egg_id,
            docker_image=runtime.image,
            startup=runtime.startup,
            environment={
                "DISCORD_TOKEN": "",
                "BOT_NAME": name,
                "LANGUAGE": language,
                "FRAMEWORK": framework,
                "AUTO_RESTART": "true",
            },
            limits=InstanceLimits(memory=ram_mb, disk=ram_mb * 2, cpu=plan.cpu),
            feature_limits=FeatureLimits(
                databases=plan.databases, allocations=1, backups=plan.backups
            ),
            owner_id=owner_id,
            allocation_id=allocation_id,
        )

    ram_gb = _positive_int(metadata.get("totalRam"), DEFAULT_GAME_RAM_GB)
    memory = ram_gb * 1024

    return InstanceSpec(
        name=metadata.get("serverName") or f"server-{ts}",
        egg_id=egg_id,
        docker_image=MINECRAFT_IMAGE,
        startup=MINECRAFT_STARTUP,
        environment={
            "SERVER_JARFILE": "server.jar",
            "BUILD_NUMBER": "latest",
            "VERSION": metadata.get("minecraftVersion") or DEFAULT_VERSION,
            "SERVER_TYPE": metadata.get("selectedServerType") or DEFAULT_SERVER_TYPE,
            "SERVER_MEMORY": memory,
            "MAX_PLAYERS": _positive_int(metadata.get("maxPlayers"), DEFAULT_MAX_PLAYERS),
        },
        limits=InstanceLimits(memory=memory, disk=max(5000, ram_gb * 1000), cpu=0),
        feature_limits=FeatureLimits(
            databases=GAME_SERVER_DATABASES, allocations=1, backups=GAME_SERVER_BACKUPS
        ),
        owner_id=owner_id,
        allocation_id=allocation_id,
    )
