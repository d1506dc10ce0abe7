import logging
from typing import List, Tuple

import yaml

from proxy_registry import ProxyType
from .base import (
    FORGE_TYPES,
    ConfigFragment,
    ForwardingMode,
    GeneratorSettings,
    ProxyConfigProvider,
    ServerBinding,
    forwarding_patches,
    forwarding_properties,
)
from .providers import register_provider

logger = logging.getLogger(__name__)


class BungeeCordProvider(ProxyConfigProvider):
    """BungeeCord ``config.yml``. Player info only travels via legacy forwarding."""
    proxy_type = ProxyType.BUNGEECORD
    default_forwarding = ForwardingMode.LEGACY
    allowed_forwarding = (ForwardingMode.LEGACY,)

    def forwarding_for(self, binding: ServerBinding) -> ForwardingMode:
        if binding.forwarding_mode and binding.forwarding_mode != ForwardingMode.LEGACY:
            logger.info(f"{self.proxy_type.value} forces legacy forwarding for {binding.server_id}")
        return ForwardingMode.LEGACY

    def generate(self, binding: ServerBinding, settings: GeneratorSettings) -> ConfigFragment:
        mode = self.forwarding_for(binding)
        key = binding.server_id
        patches, warnings = forwarding_patches(mode, binding.server_type, settings.forwarding_secret)
        if (binding.server_type or "").lower() in FORGE_TYPES:
            warnings.append(
                f"{binding.server_type} behind {self.proxy_type.value} needs a forwarding compatibility mod "
                f"(e.g. BungeeForge) so forwarded player info is accepted"
            )

        sections = {
            "servers": {key: {"motd": binding.motd or binding.server_name, "address": binding.address,
                              "restricted": binding.restricted_to_proxy}},
            "priorities": [key],
        }
        if binding.forced_host:
            sections["forced_hosts"] = {binding.forced_host: key}

        return ConfigFragment(
            proxy_type=self.proxy_type,
            server_key=key,
            proxy_entry={
                "name": key,
                "display-name": binding.server_name,
                "address": binding.address,
                "restricted": binding.restricted_to_proxy,
                "player-info-forwarding-mode": mode.value,
            },
            proxy_sections=sections,
            server_properties=forwarding_properties(mode),
            server_yaml_patches=patches,
            warnings=warnings,
        )

    @staticmethod
    def _load(text: str) -> dict:
        data = yaml.safe_load(text or "") or {}
        if not isinstance(data, dict):
            raise ValueError("Proxy config.yml is not a mapping")
        return data

    def apply_to_proxy_config(self, text: str, fragment: ConfigFragment) -> Tuple[str, List[str]]:
        warnings: List[str] = []
        data = self._load(text)
        key = fragment.server_key

        servers = data.get("servers") or {}
        servers.update(fragment.proxy_sections["servers"])
        data["servers"] = servers

        listeners = data.get("listeners") or [{}]
        listener = listeners[0]
        priorities = listener.get("priorities") or []
        if key not in priorities:
            priorities.append(key)
        listener["priorities"] = priorities
        forced = fragment.proxy_sections.get("forced_hosts") or {}
        if forced:
            hosts = listener.get("forced_hosts") or {}
            hosts.update(forced)
            listener["forced_hosts"] = hosts
        data["listeners"] = listeners

        if fragment.proxy_entry.get("player-info-forwarding-mode") == ForwardingMode.LEGACY.value:
            if not data.get("ip_forward"):
                warnings.append("Enabled ip_forward on the proxy for legacy forwarding")
            data["ip_forward"] = True

        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False), warnings

    def remove_from_proxy_config(self, text: str, server_key: str) -> str:
        data = self._load(text)
        (data.get("servers") or {}).pop(server_key, None)
        for listener in data.get("listeners") or []:
            priorities = listener.get("priorities") or []
            listener["priorities"] = [p for p in priorities if p != server_key]
            hosts = listener.get("forced_hosts") or {}
            listener["forced_hosts"] = {h: s for h, s in hosts.items() if s != server_key}
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


class WaterfallProvider(BungeeCordProvider):
    """Waterfall shares BungeeCord's config format but may use either forwarding mode."""
    proxy_type = ProxyType.WATERFALL
    allowed_forwarding = (ForwardingMode.LEGACY, ForwardingMode.MODERN)

    def forwarding_for(self, binding: ServerBinding) -> ForwardingMode:
        return ProxyConfigProvider.forwarding_for(self, binding)

    def generate(self, binding: ServerBinding, settings: GeneratorSettings) -> ConfigFragment:
        fragment = super().generate(binding, settings)
        if fragment.proxy_entry["player-info-forwarding-mode"] == ForwardingMode.MODERN.value:
            fragment.proxy_entry["forwarding-secret"] = settings.forwarding_secret
            fragment.warnings.append("Modern forwarding on Waterfall requires a modern forwarding plugin")
        return fragment


register_provider(BungeeCordProvider())
register_provider(WaterfallProvider())
