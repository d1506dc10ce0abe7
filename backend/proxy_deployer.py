from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging
import threading
import time

from config import DNS_DOMAIN, FILE_READY_INTERVAL, FILE_READY_MAX_ATTEMPTS
from database import DatabaseSession, SessionLocal
from errors import ServerNotFoundError, ValidationError
from models import Server, ServerProxyBinding
from proxy_config import ProxyConfigGenerator
from proxy_providers import get_provider
from proxy_providers.base import ForwardingMode, LoadBalancingStrategy, ServerBinding
from proxy_registry import HealthStatus, ProxyInstance, ProxyRegistry
from retry import RetryPolicy, retry_until
import server_files

logger = logging.getLogger(__name__)

HEALTH_RANK = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.DEGRADED: 2,
    HealthStatus.UNHEALTHY: 3,
}


@dataclass
class ProxyDeployResult:
    proxy_id: str
    success: bool
    error: Optional[str] = None
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": self.success, "error": self.error, "details": list(self.details)}


@dataclass
class DeploymentResult:
    server_id: str
    strategy: LoadBalancingStrategy
    results: Dict[str, ProxyDeployResult] = field(default_factory=dict)
    primary_proxy: Optional[str] = None
    fallback_proxies: List[str] = field(default_factory=list)
    details: List[str] = field(default_factory=list)
    removed: Dict[str, ProxyDeployResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return any(r.success for r in self.results.values())

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "success": self.success,
            "strategy": self.strategy.value,
            "results": {pid: r.to_dict() for pid, r in self.results.items()},
            "primary_proxy": self.primary_proxy,
            "fallback_proxies": list(self.fallback_proxies),
            "removed": {pid: r.to_dict() for pid, r in self.removed.items()},
            "details": list(self.details),
        }


def binding_from_server(server: Server, target_proxies: Optional[List[str]] = None,
                        strategy=LoadBalancingStrategy.PRIORITY, fallback_proxies: Optional[List[str]] = None,
                        proxy_overrides: Optional[Dict[str, dict]] = None, restricted_to_proxy: bool = True,
                        forwarding_mode: Optional[str] = None, domain: str = DNS_DOMAIN, **extra) -> ServerBinding:
    try:
        strategy = LoadBalancingStrategy(strategy)
        mode = ForwardingMode(forwarding_mode) if forwarding_mode else None
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return ServerBinding(
        server_id=server.unique_id,
        server_name=server.server_name,
        server_type=server.server_type,
        subdomain=server.subdomain_name,
        domain=domain or None,
        restricted_to_proxy=restricted_to_proxy,
        forwarding_mode=mode,
        target_proxies=list(target_proxies or []),
        strategy=strategy,
        fallback_proxies=list(fallback_proxies or []),
        proxy_overrides=dict(proxy_overrides or {}),
        **extra,
    )


class MultiProxyDeployer:
    def __init__(self, registry: ProxyRegistry, generator: ProxyConfigGenerator, container_client, file_store,
                 session_factory=SessionLocal, readiness: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.registry = registry
        self.generator = generator
        self.container_client = container_client
        self.file_store = file_store
        self.session_factory = session_factory
        self.readiness = readiness or RetryPolicy(max_attempts=FILE_READY_MAX_ATTEMPTS, interval=FILE_READY_INTERVAL)
        self.sleep = sleep
        self._server_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._round_robin = 0

    def _lock_for(self, server_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._server_locks.setdefault(server_id, threading.Lock())

    def _load_server(self, server_id: str, owner_email: Optional[str], is_admin: bool = False) -> Server:
        with DatabaseSession(self.session_factory) as db:
            query = db.query(Server).filter(Server.unique_id == server_id)
            if not is_admin:
                query = query.filter(Server.owner_email == owner_email)
            server = query.first()
        if server is None:
            raise ServerNotFoundError(f"Server {server_id} not found")
        return server

    def build_binding(self, server_id: str, owner_email: Optional[str], is_admin: bool = False,
                      **options) -> ServerBinding:
        return binding_from_server(self._load_server(server_id, owner_email, is_admin), **options)

    # ==================== Target selection ====================

    def order_targets(self, proxies: List[ProxyInstance], strategy: LoadBalancingStrategy) -> List[ProxyInstance]:
        by_priority = sorted(proxies, key=lambda p: (HEALTH_RANK[p.health_status], -p.priority, p.id))
        if strategy == LoadBalancingStrategy.PRIORITY:
            return by_priority
        if strategy == LoadBalancingStrategy.LEAST_CONNECTIONS:
            return sorted(proxies, key=lambda p: (p.current_servers, HEALTH_RANK[p.health_status], -p.priority))
        if strategy == LoadBalancingStrategy.ROUND_ROBIN:
            if not by_priority:
                return by_priority
            with self._locks_guard:
                offset = self._round_robin % len(by_priority)
                self._round_robin += 1
            return by_priority[offset:] + by_priority[:offset]
        return list(proxies)

    def _resolve_targets(self, binding: ServerBinding, result: DeploymentResult) -> List[ProxyInstance]:
        if not binding.target_proxies:
            return self.registry.get_enabled()
        targets = []
        for proxy_id in binding.target_proxies:
            proxy = self.registry.get(proxy_id)
            if proxy is None:
                result.results[proxy_id] = ProxyDeployResult(proxy_id, False, "Proxy not found")
            elif not proxy.enabled:
                result.results[proxy_id] = ProxyDeployResult(proxy_id, False, "Proxy is disabled")
            else:
                targets.append(proxy)
        return targets

    # ==================== Deployment ====================

    def deploy(self, binding: ServerBinding, owner_email: Optional[str], is_admin: bool = False) -> DeploymentResult:
        server = self._load_server(binding.server_id, owner_email, is_admin)
        result = DeploymentResult(binding.server_id, binding.strategy)

        with self._lock_for(binding.server_id):
            targets = self.order_targets(self._resolve_targets(binding, result), binding.strategy)
            if not targets and not result.results:
                result.details.append("No enabled proxies to deploy to")
            for proxy in targets:
                result.results[proxy.id] = self._deploy_to(proxy, binding, server)

            successes = [p.id for p in targets if result.results[p.id].success]
            if successes:
                result.primary_proxy = successes[0]
                result.fallback_proxies = successes[1:]
                for proxy_id in binding.fallback_proxies:
                    proxy = self.registry.get(proxy_id)
                    if proxy and proxy.enabled and proxy_id not in successes:
                        result.fallback_proxies.append(proxy_id)
            result.details.append(f"Deployed to {len(successes)}/{len(result.results)} proxies")

            before = self._bound_proxies(binding.server_id)
            for proxy_id in before:
                if proxy_id in successes:
                    continue
                error = self._remove_from(proxy_id, binding.server_id)
                result.removed[proxy_id] = ProxyDeployResult(proxy_id, error is None, error)
                if error is None:
                    result.details.append(f"Removed from {proxy_id}, no longer part of the binding")
            self._store_binding(binding, result, successes, before)

        logger.info(f"Deployment of {binding.server_id}: primary={result.primary_proxy} "
                    f"fallbacks={result.fallback_proxies}")
        return result

    def _wait_for_layout(self, server: Server) -> None:
        marker = f"{server.files_root}/server.properties"
        retry_until(lambda: self.file_store.exists(marker), self.readiness,
                    description=f"server files for {server.unique_id}", sleep=self.sleep)

    def _deploy_to(self, proxy: ProxyInstance, binding: ServerBinding, server: Server) -> ProxyDeployResult:
        outcome = ProxyDeployResult(proxy.id, False)
        step = "generate"
        stopped = False
        env = server.environment_id
        try:
            fragment = self.generator.generate(proxy.type, binding.for_proxy(proxy.id))
            outcome.details.extend(fragment.warnings)

            step = "wait_for_files"
            self._wait_for_layout(server)

            step = "stop_server"
            has_container = self.container_client.find_by_identifier(server.container_name, env) is not None
            if has_container:
                self.container_client.stop(server.container_name, env)
                stopped = True
                outcome.details.append("Server stopped")
            else:
                outcome.details.append("Server container not created yet; config applies on first start")

            step = "write_server_config"
            self._write_server_files(server, fragment)
            outcome.details.append("Server configuration written")

            if proxy.uses_static_config and fragment.writes_proxy_config:
                step = "write_proxy_config"
                if not proxy.config_path:
                    raise ValidationError(f"Proxy {proxy.id} has no config path")
                provider = get_provider(proxy.type)
                current = self.file_store.get_file_contents(proxy.config_path)
                updated, warnings = provider.apply_to_proxy_config(current, fragment)
                self.file_store.upload_file(proxy.config_path, updated)
                outcome.details.extend(warnings)
                outcome.details.append(f"Added {fragment.server_key} to {proxy.config_path}")

                step = "restart_proxy"
                self.container_client.restart(proxy.container, proxy.environment_id)
                outcome.details.append("Proxy restarted")
            else:
                outcome.details.append("Server registers itself with the proxy on boot")

            if stopped:
                step = "start_server"
                self.container_client.start(server.container_name, env)
                stopped = False
                outcome.details.append("Server started")
            outcome.success = True
        except Exception as e:
            outcome.error = f"{step}: {e}"
            logger.error(f"Deploying {server.unique_id} to {proxy.id} failed at {step}: {e}")
            if stopped:
                # The server should not stay down because a proxy edit failed
                try:
                    self.container_client.start(server.container_name, env)
                    outcome.details.append("Server restarted after failure")
                except Exception as start_err:
                    outcome.details.append(f"Server could not be restarted: {start_err}")
        return outcome

    def _write_server_files(self, server: Server, fragment) -> None:
        root = server.files_root
        props_path = f"{root}/server.properties"
        current = self.file_store.get_file_contents(props_path) if self.file_store.exists(props_path) else ""
        self.file_store.upload_file(props_path, server_files.merge_properties(current, fragment.server_properties))

        for rel, patch in fragment.server_yaml_patches.items():
            path = f"{root}/{rel}"
            text = self.file_store.get_file_contents(path) if self.file_store.exists(path) else ""
            self.file_store.upload_file(path, server_files.merge_yaml(text, patch))

        for rel, content in fragment.server_files.items():
            self.file_store.upload_file(f"{root}/{rel}", content)

    def _bound_proxies(self, server_id: str) -> List[str]:
        """Proxies currently routing to the server, per the stored binding."""
        with DatabaseSession(self.session_factory) as db:
            row = db.query(ServerProxyBinding).filter(ServerProxyBinding.server_id == server_id).first()
            return [pid for pid, r in ((row.last_results or {}) if row else {}).items() if r.get("success")]

    def _store_binding(self, binding: ServerBinding, result: DeploymentResult, successes: List[str],
                       before: List[str]) -> None:
        last_results = {pid: r.to_dict() for pid, r in result.results.items()}
        # Proxies that could not be cleaned still route to the server
        for pid, removal in result.removed.items():
            if not removal.success:
                last_results[pid] = {"success": True, "error": removal.error, "details": ["stale"]}
        with DatabaseSession(self.session_factory) as db:
            previous = db.query(ServerProxyBinding).filter(ServerProxyBinding.server_id == binding.server_id).first()
            if previous is not None:
                db.delete(previous)
                db.flush()
            db.add(ServerProxyBinding(
                server_id=binding.server_id,
                target_proxy_ids=[p for p in result.results],
                strategy=binding.strategy.value,
                fallback_proxy_ids=list(result.fallback_proxies),
                primary_proxy_id=result.primary_proxy,
                proxy_overrides=dict(binding.proxy_overrides),
                restricted=binding.restricted_to_proxy,
                forwarding_mode=binding.forwarding_mode.value if binding.forwarding_mode else None,
                last_results=last_results,
            ))
        for proxy_id in set(successes) - set(before):
            self.registry.adjust_server_count(proxy_id, 1)

    # ==================== Removal ====================

    def _remove_from(self, proxy_id: str, server_id: str) -> Optional[str]:
        """Take the server out of one proxy. Returns the error, or None on success."""
        proxy = self.registry.get(proxy_id)
        if proxy is None:
            return None
        if proxy.uses_static_config and proxy.config_path:
            try:
                provider = get_provider(proxy.type)
                current = self.file_store.get_file_contents(proxy.config_path)
                self.file_store.upload_file(proxy.config_path, provider.remove_from_proxy_config(current, server_id))
                self.container_client.restart(proxy.container, proxy.environment_id)
            except Exception as e:
                logger.error(f"Removing {server_id} from {proxy_id} failed: {e}")
                return str(e)
        self.registry.adjust_server_count(proxy_id, -1)
        return None

    def undeploy(self, server_id: str) -> dict:
        """Remove a server from every static proxy it was deployed to."""
        report = {"cleaned": [], "errors": []}
        with self._lock_for(server_id):
            for proxy_id in self._bound_proxies(server_id):
                if self.registry.get(proxy_id) is None:
                    continue
                error = self._remove_from(proxy_id, server_id)
                if error:
                    report["errors"].append(f"{proxy_id}: {error}")
                    continue
                report["cleaned"].append(proxy_id)

            if not report["errors"]:
                with DatabaseSession(self.session_factory) as db:
                    db.query(ServerProxyBinding).filter(
                        ServerProxyBinding.server_id == server_id).delete(synchronize_session=False)
        return report

    # ==================== Compatibility ====================

    def test_compatibility(self, server_id: str, proxy_types: List[str], owner_email: Optional[str],
                           is_admin: bool = False) -> Dict[str, dict]:
        server = self._load_server(server_id, owner_email, is_admin)
        return self.generator.compatibility(binding_from_server(server), proxy_types)
