import logging
import re
from typing import List, Optional, Tuple

from proxy_registry import ProxyType
from .base import (
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

SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
QUOTED_RE = re.compile(r'"([^"]*)"')


def _section_bounds(lines: List[str], name: str) -> Optional[Tuple[int, int]]:
    """(header index, end index exclusive) of a ``[name]`` table."""
    start = None
    for i, line in enumerate(lines):
        m = SECTION_RE.match(line)
        if not m:
            continue
        if start is not None:
            return start, i
        if m.group(1).strip() == name:
            start = i
    if start is None:
        return None
    return start, len(lines)


def _key_of(line: str) -> Optional[str]:
    if "=" not in line or line.lstrip().startswith("#"):
        return None
    return line.split("=", 1)[0].strip().strip('"')


def _ensure_section(lines: List[str], name: str) -> Tuple[int, int]:
    bounds = _section_bounds(lines, name)
    if bounds is None:
        if lines and lines[-1].strip():
            lines.append("")
        lines.append(f"[{name}]")
        bounds = (len(lines) - 1, len(lines))
    return bounds


def _last_content_index(lines: List[str], start: int, end: int) -> int:
    idx = start
    for i in range(start + 1, end):
        if lines[i].strip():
            idx = i
    return idx


class VelocityProvider(ProxyConfigProvider):
    proxy_type = ProxyType.VELOCITY
    default_forwarding = ForwardingMode.MODERN

    def generate(self, binding: ServerBinding, settings: GeneratorSettings) -> ConfigFragment:
        mode = self.forwarding_for(binding)
        key = binding.server_id
        patches, warnings = forwarding_patches(mode, binding.server_type, settings.forwarding_secret)
        if mode == ForwardingMode.MODERN and not settings.forwarding_secret:
            warnings.append("No forwarding secret configured; modern forwarding will reject players")
        if binding.restricted_to_proxy and mode == ForwardingMode.NONE:
            warnings.append("A server without player forwarding cannot be restricted to the proxy")

        sections = {"servers": {key: binding.address}, "try": [key]}
        if binding.forced_host:
            sections["forced-hosts"] = {binding.forced_host: [key]}

        return ConfigFragment(
            proxy_type=self.proxy_type,
            server_key=key,
            proxy_entry={
                "name": key,
                "display-name": binding.server_name,
                "address": binding.address,
                "restricted": binding.restricted_to_proxy,
                "player-info-forwarding-mode": mode.value,
                "forwarding-secret": settings.forwarding_secret,
            },
            proxy_sections=sections,
            server_properties=forwarding_properties(mode),
            server_yaml_patches=patches,
            warnings=warnings,
        )

    def apply_to_proxy_config(self, text: str, fragment: ConfigFragment) -> Tuple[str, List[str]]:
        warnings: List[str] = []
        lines = (text or "").splitlines()
        key = fragment.server_key
        address = fragment.proxy_entry["address"]

        global_mode = None
        for line in lines:
            if _key_of(line) == "player-info-forwarding-mode":
                found = QUOTED_RE.findall(line)
                global_mode = found[0] if found else None
                break
        wanted = fragment.proxy_entry.get("player-info-forwarding-mode")
        if global_mode and wanted and global_mode.lower() != wanted:
            warnings.append(f"Proxy forwards players with '{global_mode}' but the server expects '{wanted}'")

        # [servers]
        lines = [l for i, l in enumerate(lines) if not self._is_server_line(lines, i, key)]
        start, end = _ensure_section(lines, "servers")
        try_index = next((i for i in range(start + 1, end) if _key_of(lines[i]) == "try"), None)
        entry = f'{key} = "{address}"'
        if try_index is not None:
            names = QUOTED_RE.findall(lines[try_index])
            if key not in names:
                names.append(key)
            lines[try_index] = "try = [" + ", ".join(f'"{n}"' for n in names) + "]"
            lines.insert(try_index, entry)
        else:
            insert_at = _last_content_index(lines, start, end) + 1
            lines.insert(insert_at, entry)
            lines.insert(insert_at + 1, f'try = ["{key}"]')

        # [forced-hosts]
        for host, servers in (fragment.proxy_sections.get("forced-hosts") or {}).items():
            start, end = _ensure_section(lines, "forced-hosts")
            lines = [l for i, l in enumerate(lines) if not (start < i < end and _key_of(l) == host)]
            start, end = _section_bounds(lines, "forced-hosts")
            insert_at = _last_content_index(lines, start, end) + 1
            lines.insert(insert_at, f'"{host}" = [' + ", ".join(f'"{s}"' for s in servers) + "]")

        return "\n".join(lines) + "\n", warnings

    @staticmethod
    def _is_server_line(lines: List[str], index: int, key: str) -> bool:
        bounds = _section_bounds(lines, "servers")
        if bounds is None or not (bounds[0] < index < bounds[1]):
            return False
        return _key_of(lines[index]) == key

    def remove_from_proxy_config(self, text: str, server_key: str) -> str:
        lines = (text or "").splitlines()
        bounds = _section_bounds(lines, "servers")
        result: List[str] = []
        for i, line in enumerate(lines):
            if bounds and bounds[0] < i < bounds[1]:
                k = _key_of(line)
                if k == server_key:
                    continue
                if k == "try":
                    names = [n for n in QUOTED_RE.findall(line) if n != server_key]
                    line = "try = [" + ", ".join(f'"{n}"' for n in names) + "]"
            result.append(line)

        lines = result
        bounds = _section_bounds(lines, "forced-hosts")
        if bounds:
            result = []
            for i, line in enumerate(lines):
                if bounds[0] < i < bounds[1] and _key_of(line):
                    host = _key_of(line)
                    servers = [s for s in QUOTED_RE.findall(line.split("=", 1)[1]) if s != server_key]
                    if not servers:
                        continue
                    line = f'"{host}" = [' + ", ".join(f'"{s}"' for s in servers) + "]"
                result.append(line)
            lines = result
        return "\n".join(lines) + "\n"


register_provider(VelocityProvider())
