"""Catalog of the proxies servers can be deployed behind.

One ProxyRegistry is built at process start and handed to whatever needs
it. Proxies are only removed by an explicit admin call; a proxy whose
container disappears is marked unhealthy instead.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging
import threading

import yaml

from config import (
    BUNGEECORD_ENABLED,
    DEFAULT_ENVIRONMENT,
    PROXIES_ROOT,
    PROXY_LABEL,
    RUSTY_CONNECTOR_ENABLED,
    VELOCITY_ENABLED,
    WATERFALL_ENABLED,
)
from errors import UnsupportedProxyTypeError, ValidationError

logger = logging.getLogger(__name__)

PROXY_PORT = 25577


class ProxyType(str, Enum):
    VELOCITY = "velocity"
    BUNGEECORD = "bungeecord"
    WATERFALL = "waterfall"
    RUSTY_CONNECTOR = "rusty-connector"

    @classmethod
    def parse(cls, value: Union[str, "ProxyType"]) -> "ProxyType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedProxyTypeError(
                f"Unsupported proxy type '{value}'", {"supported": [t.value for t in cls]}
            ) from None


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProxyCapability:
    name: str
    supported: bool
    version: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "supported": self.supported, "version": self.version, "notes": self.notes}


def _caps(**flags) -> List[ProxyCapability]:
    return [ProxyCapability(name.replace("_", "-"), supported) for name, supported in flags.items()]


DEFAULT_CAPABILITIES: Dict[ProxyType, List[ProxyCapability]] = {
    ProxyType.VELOCITY: _caps(modern_forwarding=True, legacy_forwarding=True, plugin_support=True,
                              forced_hosts=True, dynamic_reload=True),
    ProxyType.BUNGEECORD: _caps(modern_forwarding=False, legacy_forwarding=True, plugin_support=True,
                                forced_hosts=True, dynamic_reload=False),
    ProxyType.WATERFALL: _caps(modern_forwarding=True, legacy_forwarding=True, plugin_support=True,
                               forced_hosts=True, dynamic_reload=True),
    ProxyType.RUSTY_CONNECTOR: _caps(modern_forwarding=True, legacy_forwarding=True, plugin_support=True,
                                     forced_hosts=True, dynamic_reload=True, auto_scaling=True,
                                     load_balancing=True, server_families=True),
}


@dataclass
class ProxyInstance:
    id: str
    name: str
    type: ProxyType
    host: str
    port: int = PROXY_PORT
    enabled: bool = True
    priority: int = 50
    config_path: Optional[str] = None
    container_name: Optional[str] = None
    environment_id: str = DEFAULT_ENVIRONMENT
    network_name: Optional[str] = None
    description: str = ""
    tags: List[str] = field(default_factory=list)
    capabilities: List[ProxyCapability] = field(default_factory=list)
    max_servers: Optional[int] = None
    current_servers: int = 0
    health_status: HealthStatus = HealthStatus.UNKNOWN
    health_details: List[str] = field(default_factory=list)
    last_health_check: Optional[datetime] = None
    discovered: bool = False

    def supports(self, capability: str) -> bool:
        return any(c.name == capability and c.supported for c in self.capabilities)

    @property
    def uses_static_config(self) -> bool:
        return self.type != ProxyType.RUSTY_CONNECTOR

    @property
    def container(self) -> str:
        return self.container_name or self.host

    @classmethod
    def from_dict(cls, data: dict) -> "ProxyInstance":
        if not data.get("id"):
            raise ValidationError("Proxy definition requires an id")
        proxy_type = ProxyType.parse(data.get("type", ""))

        def pick(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        caps = pick("capabilities")
        capabilities = (
            [c if isinstance(c, ProxyCapability) else ProxyCapability(**c) for c in caps]
            if caps else list(DEFAULT_CAPABILITIES[proxy_type])
        )
        return cls(
            id=str(data["id"]),
            name=pick("name", default=str(data["id"])),
            type=proxy_type,
            host=pick("host", default=str(data["id"])),
            port=int(pick("port", default=PROXY_PORT)),
            enabled=bool(pick("enabled", default=True)),
            priority=int(pick("priority", default=50)),
            config_path=pick("config_path", "configPath"),
            container_name=pick("container_name", "containerName"),
            environment_id=pick("environment_id", "environmentId", default=DEFAULT_ENVIRONMENT),
            network_name=pick("network_name", "networkName"),
            description=pick("description", default=""),
            tags=list(pick("tags", default=[])),
            capabilities=capabilities,
            max_servers=pick("max_servers", "maxServers"),
            current_servers=int(pick("current_servers", "currentServers", default=0)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "host": self.host,
            "port": self.port,
            "enabled": self.enabled,
            "priority": self.priority,
            "config_path": self.config_path,
            "container_name": self.container_name,
            "environment_id": self.environment_id,
            "network_name": self.network_name,
            "description": self.description,
            "tags": list(self.tags),
            "capabilities": [c.to_dict() for c in self.capabilities],
            "max_servers": self.max_servers,
            "current_servers": self.current_servers,
            "health_status": self.health_status.value,
            "health_details": list(self.health_details),
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "discovered": self.discovered,
        }


@dataclass
class ScanResult:
    discovered: List[str] = field(default_factory=list)
    registered: List[str] = field(default_factory=list)
    marked_unhealthy: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "discovered": list(self.discovered),
            "registered": list(self.registered),
            "marked_unhealthy": list(self.marked_unhealthy),
            "errors": list(self.errors),
        }


def default_definitions() -> List[dict]:
    """Proxies enabled through environment flags."""
    root = PROXIES_ROOT.as_posix().rstrip("/")
    defs = []
    if VELOCITY_ENABLED:
        defs.append({"id": "velocity-main", "name": "Main Velocity Proxy", "type": "velocity",
                     "host": "velocity", "priority": 100, "config_path": f"{root}/velocity/velocity.toml",
                     "description": "Primary Velocity proxy with modern forwarding"})
    if BUNGEECORD_ENABLED:
        defs.append({"id": "bungeecord-main", "name": "BungeeCord Proxy", "type": "bungeecord",
                     "host": "bungeecord", "priority": 80, "config_path": f"{root}/bungeecord/config.yml",
                     "description": "BungeeCord proxy with legacy forwarding"})
    if WATERFALL_ENABLED:
        defs.append({"id": "waterfall-main", "name": "Waterfall Proxy", "type": "waterfall",
                     "host": "waterfall", "priority": 90, "config_path": f"{root}/waterfall/config.yml",
                     "description": "Waterfall proxy"})
    if RUSTY_CONNECTOR_ENABLED:
        defs.append({"id": "rusty-connector", "name": "RustyConnector Network", "type": "rusty-connector",
                     "host": "velocity-rusty", "priority": 110,
                     "config_path": f"{root}/rusty/plugins/RustyConnector/config.yml",
                     "description": "Velocity with RustyConnector dynamic registration"})
    return defs


def infer_proxy_type(container: dict) -> Optional[ProxyType]:
    label = (container.get("labels") or {}).get(PROXY_LABEL)
    if label:
        try:
            return ProxyType.parse(label)
        except UnsupportedProxyTypeError:
            return None
    haystack = f"{container.get('name', '')} {container.get('image', '')}".lower()
    if "rusty" in haystack:
        return ProxyType.RUSTY_CONNECTOR
    if "waterfall" in haystack:
        return ProxyType.WATERFALL
    if "bungee" in haystack:
        return ProxyType.BUNGEECORD
    if "velocity" in haystack:
        return ProxyType.VELOCITY
    return None


class ProxyRegistry:
    def __init__(self, container_client=None, definitions: Optional[List[dict]] = None):
        self.container_client = container_client
        self._proxies: Dict[str, ProxyInstance] = {}
        self._lock = threading.RLock()
        for definition in definitions or []:
            self.upsert(definition)

    # ==================== Queries ====================

    def list(self, proxy_type=None, enabled: Optional[bool] = None,
             health: Optional[HealthStatus] = None, tag: Optional[str] = None) -> List[ProxyInstance]:
        wanted_type = ProxyType.parse(proxy_type) if proxy_type is not None else None
        if health is not None:
            try:
                health = HealthStatus(health)
            except ValueError:
                raise ValidationError(f"Unknown health status '{health}'") from None
        with self._lock:
            proxies = [replace(p) for p in self._proxies.values()]
        result = []
        for p in proxies:
            if wanted_type is not None and p.type != wanted_type:
                continue
            if enabled is not None and p.enabled != enabled:
                continue
            if health is not None and p.health_status != health:
                continue
            if tag is not None and tag not in p.tags:
                continue
            result.append(p)
        return sorted(result, key=lambda p: (-p.priority, p.id))

    def get(self, proxy_id: str) -> Optional[ProxyInstance]:
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            return replace(proxy) if proxy else None

    def get_by_type(self, proxy_type) -> List[ProxyInstance]:
        return self.list(proxy_type=proxy_type)

    def get_enabled(self) -> List[ProxyInstance]:
        return self.list(enabled=True)

    def __len__(self) -> int:
        return len(self._proxies)

    # ==================== Mutations ====================

    def upsert(self, config: Union[dict, ProxyInstance]) -> bool:
        """Add or update a proxy. Returns True when a new proxy was added.

        Health state is kept across updates.
        """
        proxy = config if isinstance(config, ProxyInstance) else ProxyInstance.from_dict(config)
        with self._lock:
            existing = self._proxies.get(proxy.id)
            if existing is not None:
                proxy.health_status = existing.health_status
                proxy.health_details = list(existing.health_details)
                proxy.last_health_check = existing.last_health_check
                proxy.discovered = existing.discovered
                if isinstance(config, dict) and "current_servers" not in config and "currentServers" not in config:
                    proxy.current_servers = existing.current_servers
            self._proxies[proxy.id] = proxy
        logger.info(f"{'Updated' if existing else 'Registered'} proxy {proxy.id} ({proxy.type.value})")
        return existing is None

    def set_enabled(self, proxy_id: str, enabled: bool) -> bool:
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy is None:
                return False
            proxy.enabled = enabled
        logger.info(f"Proxy {proxy_id} {'enabled' if enabled else 'disabled'}")
        return True

    def remove(self, proxy_id: str) -> bool:
        with self._lock:
            removed = self._proxies.pop(proxy_id, None)
        if removed:
            logger.info(f"Removed proxy {proxy_id}")
        return removed is not None

    def record_health(self, proxy_id: str, status: HealthStatus, details: Optional[List[str]] = None,
                      when: Optional[datetime] = None) -> None:
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy is None:
                return
            proxy.health_status = HealthStatus(status)
            proxy.health_details = list(details or [])
            proxy.last_health_check = when or datetime.utcnow()

    def adjust_server_count(self, proxy_id: str, delta: int) -> None:
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy is not None:
                proxy.current_servers = max(0, proxy.current_servers + delta)

    # ==================== Reporting ====================

    def statistics(self) -> dict:
        with self._lock:
            proxies = list(self._proxies.values())
        by_type = {t.value: 0 for t in ProxyType}
        by_health = {h.value: 0 for h in HealthStatus}
        for p in proxies:
            by_type[p.type.value] += 1
            by_health[p.health_status.value] += 1
        return {
            "total_proxies": len(proxies),
            "enabled_proxies": sum(1 for p in proxies if p.enabled),
            "counts_by_type": by_type,
            "counts_by_health": by_health,
        }

    # ==================== Loading and discovery ====================

    def load_definitions(self, path: Union[str, Path]) -> int:
        """Seed from a YAML file of the form ``{proxies: [...]}``. Returns the count loaded."""
        path = Path(path)
        if not path.exists():
            logger.info(f"No proxy definitions at {path}")
            return 0
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        count = 0
        for definition in data.get("proxies", []) or []:
            try:
                self.upsert(definition)
                count += 1
            except (UnsupportedProxyTypeError, ValidationError) as e:
                logger.warning(f"Skipping proxy definition {definition!r}: {e}")
        return count

    def scan_and_register(self, environment_id: str = DEFAULT_ENVIRONMENT) -> ScanResult:
        result = ScanResult()
        if self.container_client is None:
            result.errors.append("No container orchestrator configured")
            return result
        try:
            containers = self.container_client.list_containers(environment_id, running_only=True)
        except Exception as e:
            logger.error(f"Proxy discovery in {environment_id} failed: {e}")
            result.errors.append(str(e))
            return result

        seen = set()
        for container in containers:
            proxy_type = infer_proxy_type(container)
            if proxy_type is None:
                continue
            name = container.get("name", "")
            seen.add(name)
            result.discovered.append(name)
            with self._lock:
                known = next((p for p in self._proxies.values() if p.container == name), None)
                if known is not None:
                    known.environment_id = environment_id
                    if known.health_status == HealthStatus.UNHEALTHY and known.discovered:
                        known.health_status = HealthStatus.UNKNOWN
                    continue
                taken = self._proxies.get(name)
                if taken is not None:
                    result.errors.append(
                        f"{name}: id already used by proxy '{taken.id}' (container {taken.container})")
                    logger.warning(f"Discovered container {name} collides with proxy {taken.id}; not registered")
                    continue
                try:
                    self._proxies[name] = ProxyInstance(
                        id=name,
                        name=name,
                        type=proxy_type,
                        host=name,
                        enabled=False,
                        container_name=name,
                        environment_id=environment_id,
                        network_name=(container.get("networks") or [None])[0],
                        capabilities=list(DEFAULT_CAPABILITIES[proxy_type]),
                        description=f"Discovered {proxy_type.value} proxy",
                        discovered=True,
                    )
                    result.registered.append(name)
                except Exception as e:
                    result.errors.append(f"{name}: {e}")

        with self._lock:
            for proxy in self._proxies.values():
                if proxy.environment_id != environment_id or proxy.container in seen:
                    continue
                if proxy.health_status != HealthStatus.UNHEALTHY:
                    proxy.health_status = HealthStatus.UNHEALTHY
                    proxy.health_details = ["Container not found during discovery scan"]
                    proxy.last_health_check = datetime.utcnow()
                    result.marked_unhealthy.append(proxy.id)

        logger.info(f"Proxy scan of {environment_id}: {len(result.discovered)} found, "
                    f"{len(result.registered)} new, {len(result.marked_unhealthy)} vanished")
        return result
