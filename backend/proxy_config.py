from typing import Dict, Iterable, Optional
import logging

from errors import OrchestrationError
from proxy_providers import get_provider
from proxy_providers.base import (
    FORGE_TYPES,
    PAPER_TYPES,
    ConfigFragment,
    ForwardingMode,
    GeneratorSettings,
    ServerBinding,
)
from proxy_providers.rusty_connector import SUPPORTED_SERVER_TYPES as RUSTY_SERVER_TYPES
from proxy_registry import ProxyType

logger = logging.getLogger(__name__)


class ProxyConfigGenerator:
    """Produces the per-type configuration fragment for a server binding."""

    def __init__(self, settings: Optional[GeneratorSettings] = None):
        self.settings = settings or GeneratorSettings()

    def generate(self, proxy_type, binding: ServerBinding) -> ConfigFragment:
        provider = get_provider(ProxyType.parse(proxy_type))
        fragment = provider.generate(binding, self.settings)
        for warning in fragment.warnings:
            logger.warning(f"{fragment.proxy_type.value} config for {binding.server_id}: {warning}")
        return fragment

    def compatibility(self, binding: ServerBinding, proxy_types: Iterable) -> Dict[str, dict]:
        """Advice per proxy type for running ``binding``'s server behind it."""
        advice: Dict[str, dict] = {}
        server_type = (binding.server_type or "").lower()
        for raw in proxy_types:
            try:
                proxy_type = ProxyType.parse(raw)
                fragment = self.generate(proxy_type, binding)
            except OrchestrationError as e:
                advice[str(raw)] = {"compatible": False, "error": e.message, "recommendations": []}
                continue

            mode = fragment.proxy_entry.get("player-info-forwarding-mode")
            recommendations = []
            if server_type in FORGE_TYPES:
                if proxy_type in (ProxyType.VELOCITY, ProxyType.RUSTY_CONNECTOR) and mode == ForwardingMode.MODERN.value:
                    recommendations.append("Install Proxy-Compatible-Forge on the server")
                else:
                    recommendations.append("Install BungeeForge (or an equivalent) on the server")
            elif server_type == "fabric":
                recommendations.append("Install FabricProxy-Lite on the server")
            elif server_type in PAPER_TYPES and proxy_type in (ProxyType.BUNGEECORD, ProxyType.WATERFALL):
                recommendations.append("Consider Velocity with modern forwarding for Paper based servers")

            advice[proxy_type.value] = {
                "compatible": proxy_type != ProxyType.RUSTY_CONNECTOR or server_type in RUSTY_SERVER_TYPES,
                "forwarding_mode": mode,
                "warnings": list(fragment.warnings),
                "recommendations": recommendations,
            }
        return advice
