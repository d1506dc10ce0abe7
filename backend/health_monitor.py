from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging
import math
import socket
import time

from config import HEALTH_WORKERS, PROXY_PROBE_TIMEOUT
from database import DatabaseSession, SessionLocal
from models import Server
from proxy_registry import HealthStatus, ProxyInstance, ProxyRegistry

logger = logging.getLogger(__name__)

# container state -> Server.status
CONTAINER_STATUS_MAP = {
    "running": "online",
    "restarting": "starting",
    "created": "offline",
    "paused": "paused",
    "exited": "offline",
    "dead": "crashed",
}


def tcp_probe(host: str, port: int, timeout: float) -> float:
    """Open and close a TCP connection. Returns the round trip in milliseconds."""
    started = time.monotonic()
    with socket.create_connection((host, port), timeout=timeout):
        pass
    return (time.monotonic() - started) * 1000


@dataclass
class ProxyHealth:
    proxy_id: str
    status: HealthStatus
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def details(self) -> List[str]:
        if self.error:
            return [self.error]
        if self.latency_ms is not None:
            return [f"Reachable in {self.latency_ms:.0f}ms"]
        return []

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "details": self.details,
            "latency_ms": round(self.latency_ms, 1) if self.latency_ms is not None else None,
            "error": self.error,
        }


@dataclass
class HealthReport:
    overall: HealthStatus
    proxies: Dict[str, ProxyHealth] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "overall": self.overall.value,
            "proxies": {pid: h.to_dict() for pid, h in self.proxies.items()},
            "checked_at": self.checked_at.isoformat(),
        }


def overall_status(results: List[ProxyHealth]) -> HealthStatus:
    healthy = sum(1 for r in results if r.status == HealthStatus.HEALTHY)
    if healthy == 0:
        return HealthStatus.UNHEALTHY
    if healthy < len(results):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    def __init__(self, registry: ProxyRegistry, probe: Callable[[str, int, float], float] = tcp_probe,
                 timeout: float = PROXY_PROBE_TIMEOUT, workers: int = HEALTH_WORKERS,
                 container_client=None, session_factory=SessionLocal):
        self.registry = registry
        self.probe = probe
        self.timeout = timeout
        self.workers = max(1, workers)
        self.container_client = container_client
        self.session_factory = session_factory

    def _check(self, proxy: ProxyInstance) -> ProxyHealth:
        try:
            latency = self.probe(proxy.host, proxy.port, self.timeout)
            return ProxyHealth(proxy.id, HealthStatus.HEALTHY, latency_ms=latency)
        except Exception as e:
            return ProxyHealth(proxy.id, HealthStatus.UNHEALTHY, error=str(e) or e.__class__.__name__)

    def _await(self, future, proxy: ProxyInstance, started: Dict[str, float], window: float,
               cutoff: float) -> ProxyHealth:
        """Wait for one probe. Its window starts when the probe starts, not when it was queued."""
        poll = max(self.timeout / 4, 0.01)
        while True:
            begun = started.get(proxy.id)
            deadline = begun + window if begun is not None else cutoff
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                error = "Health check timed out" if begun is not None else "Health check never started"
                return ProxyHealth(proxy.id, HealthStatus.UNHEALTHY, error=error)
            try:
                return future.result(timeout=remaining if begun is not None else min(remaining, poll))
            except FutureTimeout:
                continue

    def check_all(self) -> HealthReport:
        """Probe every enabled proxy concurrently and record the results."""
        proxies = self.registry.get_enabled()
        results: Dict[str, ProxyHealth] = {}
        if proxies:
            workers = min(self.workers, len(proxies))
            window = self.timeout * 2
            started: Dict[str, float] = {}

            def timed(proxy: ProxyInstance) -> ProxyHealth:
                started[proxy.id] = time.monotonic()
                return self._check(proxy)

            executor = ThreadPoolExecutor(max_workers=workers)
            try:
                futures = {executor.submit(timed, p): p for p in proxies}
                # Queued probes get one window for every batch of workers ahead of them
                cutoff = time.monotonic() + window * math.ceil(len(proxies) / workers)
                for future, proxy in futures.items():
                    results[proxy.id] = self._await(future, proxy, started, window, cutoff)
            finally:
                # A hung probe must not hold up the report
                executor.shutdown(wait=False)

        report = HealthReport(overall_status(list(results.values())), results)
        for proxy_id, health in results.items():
            self.registry.record_health(proxy_id, health.status, health.details, report.checked_at)
            if health.status != HealthStatus.HEALTHY:
                logger.warning(f"Proxy {proxy_id} is {health.status.value}: {health.error}")
        logger.info(f"Proxy health check: {report.overall.value} ({len(results)} checked)")
        return report

    def check_servers(self) -> Dict[str, str]:
        """Sync Server.status with container state. Returns the servers that changed."""
        if self.container_client is None:
            return {}
        changed: Dict[str, str] = {}
        with DatabaseSession(self.session_factory) as db:
            for server in db.query(Server).all():
                try:
                    state = self.container_client.state(server.container_name, server.environment_id)
                except Exception as e:
                    logger.warning(f"Could not read state of {server.container_name}: {e}")
                    continue
                if state is None:
                    status = "offline"
                elif state.get("health") == "unhealthy":
                    status = "unhealthy"
                elif state.get("status") == "exited" and state.get("exit_code") not in (None, 0):
                    status = "crashed"
                else:
                    status = CONTAINER_STATUS_MAP.get(state.get("status"), "offline")
                if server.status != status:
                    changed[server.unique_id] = status
                    server.status = status
        for server_id, status in changed.items():
            logger.info(f"Server {server_id} is now {status}")
        return changed
