"""Process-wide collaborators, built once at startup and kept on ``app.state``."""
from dataclasses import dataclass
from typing import Optional
import logging

from fastapi import Request

from bulk_operations import BulkOperationRunner
from config import DNS_DOMAIN, DNS_TARGET_HOST, PROXIES_CONFIG_PATH
from container_client import DockerOrchestratorClient
from database import SessionLocal
from decommission import DecommissionOrchestrator
from dns_client import PorkbunClient
from download_manager import ArtifactDownloader
from file_store import LocalFileStore
from health_monitor import HealthMonitor
from port_allocator import PortAllocator
from provisioning import ProvisioningOrchestrator
from proxy_config import ProxyConfigGenerator
from proxy_deployer import MultiProxyDeployer
from proxy_registry import ProxyRegistry, default_definitions
from update_manager import ImageUpdateManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    container_client: object
    file_store: object
    dns_client: Optional[object]
    registry: ProxyRegistry
    allocator: PortAllocator
    provisioning: ProvisioningOrchestrator
    generator: ProxyConfigGenerator
    deployer: MultiProxyDeployer
    decommission: DecommissionOrchestrator
    health: HealthMonitor
    bulk: BulkOperationRunner
    updates: ImageUpdateManager


def build_services(session_factory=SessionLocal, container_client=None, file_store=None, dns_client=None,
                   downloader=None, registry: Optional[ProxyRegistry] = None, proxies_config=PROXIES_CONFIG_PATH,
                   dns_domain: str = DNS_DOMAIN, dns_target: str = DNS_TARGET_HOST,
                   deployer_sleep=None) -> Services:
    container_client = container_client or DockerOrchestratorClient()
    file_store = file_store or LocalFileStore()
    if dns_client is None:
        porkbun = PorkbunClient()
        dns_client = porkbun if porkbun.configured else None
    if dns_client is None:
        logger.info("Porkbun credentials not set; DNS records will not be managed")
    downloader = downloader or ArtifactDownloader()

    if registry is None:
        registry = ProxyRegistry(container_client, default_definitions())
        if proxies_config:
            registry.load_definitions(proxies_config)

    allocator = PortAllocator(container_client, session_factory)
    generator = ProxyConfigGenerator()
    deployer_kwargs = {"sleep": deployer_sleep} if deployer_sleep else {}
    deployer = MultiProxyDeployer(registry, generator, container_client, file_store, session_factory,
                                  **deployer_kwargs)
    decommission = DecommissionOrchestrator(allocator, container_client, file_store, dns_client, deployer,
                                            session_factory, dns_domain)
    return Services(
        container_client=container_client,
        file_store=file_store,
        dns_client=dns_client,
        registry=registry,
        allocator=allocator,
        provisioning=ProvisioningOrchestrator(allocator, container_client, file_store, downloader, dns_client,
                                              session_factory, dns_domain, dns_target),
        generator=generator,
        deployer=deployer,
        decommission=decommission,
        health=HealthMonitor(registry, container_client=container_client, session_factory=session_factory),
        bulk=BulkOperationRunner(container_client, file_store, decommission, session_factory),
        updates=ImageUpdateManager(container_client, session_factory),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
