"""RustyConnector: servers announce themselves to the proxy through Redis.

Deployment only writes the server's plugin config. The proxy-side family
map is returned for reference and never written.
"""
from typing import List, Tuple

import yaml

from proxy_registry import ProxyType
from .base import (
    FORGE_TYPES,
    ConfigFragment,
    ForwardingMode,
    GeneratorSettings,
    LoadBalancingStrategy,
    ProxyConfigProvider,
    ServerBinding,
    forwarding_patches,
    forwarding_properties,
)
from .providers import register_provider

SERVER_CONFIG_PATH = "plugins/RustyConnector/config.yml"
SUPPORTED_SERVER_TYPES = ("paper", "purpur", "spigot", "bukkit")

LOAD_BALANCERS = {
    LoadBalancingStrategy.ROUND_ROBIN: "ROUND_ROBIN",
    LoadBalancingStrategy.LEAST_CONNECTIONS: "LEAST_CONNECTION",
}


class RustyConnectorProvider(ProxyConfigProvider):
    proxy_type = ProxyType.RUSTY_CONNECTOR
    default_forwarding = ForwardingMode.MODERN
    allowed_forwarding = (ForwardingMode.LEGACY, ForwardingMode.MODERN)

    def generate(self, binding: ServerBinding, settings: GeneratorSettings) -> ConfigFragment:
        mode = self.forwarding_for(binding)
        patches, warnings = forwarding_patches(mode, binding.server_type, settings.forwarding_secret)
        server_type = (binding.server_type or "").lower()
        if server_type not in SUPPORTED_SERVER_TYPES:
            warnings.append(f"RustyConnector has no server plugin for {server_type}; registration will not happen")
        if server_type in FORGE_TYPES:
            warnings.append(f"{server_type} servers need a forwarding compatibility mod behind RustyConnector")

        server_config = {
            "server": {
                "id": binding.server_id,
                "name": binding.server_name,
                "family": binding.family,
                "weight": binding.weight,
                "player-cap": binding.player_cap,
                "soft-cap": binding.effective_soft_cap,
            },
            "redis": {
                "host": settings.redis_host,
                "port": settings.redis_port,
                "password-file": settings.redis_password_file,
            },
            "connection": {
                "timeout": 30,
                "heartbeat-interval": 5,
                "registration-retry": 3,
            },
            "features": {
                "auto-register": True,
                "unregister-on-shutdown": True,
                "player-sync": True,
            },
        }

        families = {
            binding.family: {
                "display-name": binding.family,
                "load-balancer": LOAD_BALANCERS.get(binding.strategy, "LEAST_CONNECTION"),
                "weighted": binding.weight != 1,
            }
        }

        return ConfigFragment(
            proxy_type=self.proxy_type,
            server_key=binding.server_id,
            proxy_entry={
                "name": binding.server_id,
                "display-name": binding.server_name,
                "family": binding.family,
                "restricted": binding.restricted_to_proxy,
                "player-info-forwarding-mode": mode.value,
                "forwarding-secret": settings.forwarding_secret,
            },
            proxy_sections={"families": families},
            server_properties=forwarding_properties(mode),
            server_yaml_patches=patches,
            server_files={SERVER_CONFIG_PATH: yaml.safe_dump(server_config, sort_keys=False)},
            warnings=warnings,
            writes_proxy_config=False,
        )

    def apply_to_proxy_config(self, text: str, fragment: ConfigFragment) -> Tuple[str, List[str]]:
        # Servers register themselves on boot; the proxy file stays untouched
        return text, []

    def remove_from_proxy_config(self, text: str, server_key: str) -> str:
        return text


register_provider(RustyConnectorProvider())
