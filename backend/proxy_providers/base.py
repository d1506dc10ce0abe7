from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple
import math

from config import (
    FORWARDING_SECRET,
    REDIS_HOST,
    REDIS_PASSWORD_FILE,
    REDIS_PORT,
    SERVER_INTERNAL_PORT,
    CONTAINER_PREFIX,
)
from errors import ValidationError
from proxy_registry import ProxyType

FORGE_TYPES = ("forge", "neoforge")
PAPER_TYPES = ("paper", "purpur")


class ForwardingMode(str, Enum):
    NONE = "none"
    LEGACY = "legacy"
    MODERN = "modern"


class LoadBalancingStrategy(str, Enum):
    PRIORITY = "priority"
    ROUND_ROBIN = "round-robin"
    LEAST_CONNECTIONS = "least-connections"
    CUSTOM = "custom"


# Fields a per-proxy override may change
OVERRIDABLE = ("restricted_to_proxy", "forwarding_mode", "motd", "family", "weight", "player_cap", "soft_cap")


@dataclass
class ServerBinding:
    server_id: str
    server_name: str
    server_type: str
    subdomain: Optional[str] = None
    domain: Optional[str] = None
    restricted_to_proxy: bool = True
    forwarding_mode: Optional[ForwardingMode] = None
    motd: Optional[str] = None
    family: str = "default"
    weight: int = 1
    player_cap: int = 100
    soft_cap: Optional[int] = None
    target_proxies: List[str] = field(default_factory=list)
    strategy: LoadBalancingStrategy = LoadBalancingStrategy.PRIORITY
    fallback_proxies: List[str] = field(default_factory=list)
    proxy_overrides: Dict[str, dict] = field(default_factory=dict)

    @property
    def container_name(self) -> str:
        return f"{CONTAINER_PREFIX}{self.server_id}"

    @property
    def address(self) -> str:
        # Proxies reach servers over the internal network, never the host port
        return f"{self.container_name}:{SERVER_INTERNAL_PORT}"

    @property
    def forced_host(self) -> Optional[str]:
        if self.subdomain and self.domain:
            return f"{self.subdomain}.{self.domain}"
        return None

    @property
    def effective_soft_cap(self) -> int:
        if self.soft_cap is not None:
            return self.soft_cap
        return math.floor(self.player_cap * 0.8)

    def for_proxy(self, proxy_id: str) -> "ServerBinding":
        overrides = self.proxy_overrides.get(proxy_id) or {}
        unknown = set(overrides) - set(OVERRIDABLE)
        if unknown:
            raise ValidationError(f"Unsupported override(s) for {proxy_id}: {sorted(unknown)}")
        values = dict(overrides)
        if values.get("forwarding_mode") is not None:
            values["forwarding_mode"] = ForwardingMode(values["forwarding_mode"])
        return replace(self, **values)


@dataclass(frozen=True)
class GeneratorSettings:
    forwarding_secret: str = FORWARDING_SECRET
    redis_host: str = REDIS_HOST
    redis_port: int = REDIS_PORT
    redis_password_file: str = REDIS_PASSWORD_FILE


@dataclass
class ConfigFragment:
    """Everything one proxy type needs changed for one server.

    ``server_*`` entries are relative to the server's root; ``proxy_*``
    entries describe the proxy's own configuration and are only written
    when ``writes_proxy_config`` is set.
    """
    proxy_type: ProxyType
    server_key: str
    proxy_entry: Dict = field(default_factory=dict)
    proxy_sections: Dict = field(default_factory=dict)
    server_properties: Dict = field(default_factory=dict)
    server_yaml_patches: Dict[str, dict] = field(default_factory=dict)
    server_files: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    writes_proxy_config: bool = True

    def to_dict(self) -> dict:
        entry = dict(self.proxy_entry)
        if entry.get("forwarding-secret"):
            entry["forwarding-secret"] = "***"
        return {
            "proxy_type": self.proxy_type.value,
            "server_key": self.server_key,
            "proxy_entry": entry,
            "proxy_sections": self.proxy_sections,
            "server_properties": self.server_properties,
            "server_files": sorted(self.server_files),
            "server_yaml_patches": sorted(self.server_yaml_patches),
            "warnings": list(self.warnings),
            "writes_proxy_config": self.writes_proxy_config,
        }


def forwarding_properties(mode: ForwardingMode) -> Dict[str, object]:
    """server.properties keys for a forwarding mode."""
    if mode == ForwardingMode.NONE:
        return {"online-mode": True}
    return {
        "online-mode": False,
        "prevent-proxy-connections": False,
        "enforce-secure-profile": False,
        "network-compression-threshold": 256,
        "enable-query": False,
    }


def forwarding_patches(mode: ForwardingMode, server_type: str, secret: str) -> Tuple[Dict[str, dict], List[str]]:
    """Server-side YAML changes and warnings for a forwarding mode."""
    patches: Dict[str, dict] = {}
    warnings: List[str] = []
    server_type = (server_type or "").lower()
    if mode == ForwardingMode.MODERN:
        if server_type in PAPER_TYPES:
            patches["config/paper-global.yml"] = {
                "proxies": {"velocity": {"enabled": True, "online-mode": True, "secret": secret}}
            }
        elif server_type in FORGE_TYPES:
            warnings.append(f"{server_type} needs a mod such as Proxy-Compatible-Forge for modern forwarding")
        elif server_type == "fabric":
            warnings.append("Fabric needs FabricProxy-Lite for modern forwarding")
        else:
            warnings.append(f"{server_type} has no built-in modern forwarding; use legacy forwarding instead")
    elif mode == ForwardingMode.LEGACY:
        if server_type in FORGE_TYPES or server_type == "fabric" or server_type == "vanilla":
            warnings.append(f"{server_type} needs a forwarding mod to accept legacy forwarded players")
        else:
            patches["spigot.yml"] = {"settings": {"bungeecord": True}}
    return patches, warnings


class ProxyConfigProvider:
    proxy_type: ProxyType
    default_forwarding = ForwardingMode.MODERN
    allowed_forwarding: Tuple[ForwardingMode, ...] = tuple(ForwardingMode)

    def forwarding_for(self, binding: ServerBinding) -> ForwardingMode:
        mode = binding.forwarding_mode or self.default_forwarding
        if mode not in self.allowed_forwarding:
            raise ValidationError(
                f"{self.proxy_type.value} does not support {mode.value} forwarding",
                {"allowed": [m.value for m in self.allowed_forwarding]},
            )
        return mode

    def generate(self, binding: ServerBinding, settings: GeneratorSettings) -> ConfigFragment:
        raise NotImplementedError

    def apply_to_proxy_config(self, text: str, fragment: ConfigFragment) -> Tuple[str, List[str]]:
        """Return the proxy config with the fragment applied, plus any warnings."""
        raise NotImplementedError

    def remove_from_proxy_config(self, text: str, server_key: str) -> str:
        raise NotImplementedError
