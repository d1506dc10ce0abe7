from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from typing import Dict, List, Optional

from auth import require_admin, require_auth
from config import DEFAULT_ENVIRONMENT
from models import User
from proxy_registry import ProxyType
from services import Services, get_services

router = APIRouter(prefix="/proxies", tags=["proxies"])


class ProxyDefinition(BaseModel):
    name: Optional[str] = None
    type: str
    host: str
    port: int = 25577
    enabled: bool = True
    priority: int = 50
    config_path: Optional[str] = None
    container_name: Optional[str] = None
    environment_id: str = DEFAULT_ENVIRONMENT
    network_name: Optional[str] = None
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    max_servers: Optional[int] = None


class DeployRequest(BaseModel):
    target_proxies: List[str] = Field(default_factory=list)
    strategy: str = "priority"
    fallback_proxies: List[str] = Field(default_factory=list)
    proxy_overrides: Dict[str, dict] = Field(default_factory=dict)
    restricted_to_proxy: bool = True
    forwarding_mode: Optional[str] = None
    motd: Optional[str] = None
    family: str = "default"
    weight: int = 1
    player_cap: int = 100
    soft_cap: Optional[int] = None


class CompatibilityRequest(BaseModel):
    proxy_types: List[str] = Field(default_factory=lambda: [t.value for t in ProxyType])


def _not_found(proxy_id: str):
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Proxy {proxy_id} not found")


# ==================== Catalog ====================

@router.get("")
def list_proxies(
    type: Optional[str] = Query(None),
    enabled: Optional[bool] = Query(None),
    health: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    proxies = services.registry.list(proxy_type=type, enabled=enabled, health=health, tag=tag)
    return {"proxies": [p.to_dict() for p in proxies], "total": len(proxies)}


@router.get("/statistics")
def proxy_statistics(
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    return services.registry.statistics()


@router.get("/health")
def proxy_health(
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """Probe every enabled proxy now."""
    return services.health.check_all().to_dict()


@router.put("/{proxy_id}")
def upsert_proxy(
    proxy_id: str,
    payload: ProxyDefinition,
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    definition = payload.model_dump()
    definition["id"] = proxy_id
    created = services.registry.upsert(definition)
    return {"created": created, "proxy": services.registry.get(proxy_id).to_dict()}


@router.post("/{proxy_id}/enable")
def enable_proxy(
    proxy_id: str,
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if not services.registry.set_enabled(proxy_id, True):
        raise _not_found(proxy_id)
    return {"id": proxy_id, "enabled": True}


@router.post("/{proxy_id}/disable")
def disable_proxy(
    proxy_id: str,
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if not services.registry.set_enabled(proxy_id, False):
        raise _not_found(proxy_id)
    return {"id": proxy_id, "enabled": False}


@router.delete("/{proxy_id}")
def delete_proxy(
    proxy_id: str,
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if not services.registry.remove(proxy_id):
        raise _not_found(proxy_id)
    return {"id": proxy_id, "deleted": True}


@router.post("/scan")
def scan_proxies(
    environment_id: str = Query(DEFAULT_ENVIRONMENT),
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.registry.scan_and_register(environment_id).to_dict()


# ==================== Deployment ====================

@router.post("/deploy/{server_id}")
def deploy_server(
    server_id: str,
    payload: DeployRequest,
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    binding = services.deployer.build_binding(server_id, current_user.email, current_user.is_admin,
                                              **payload.model_dump())
    result = services.deployer.deploy(binding, current_user.email, is_admin=current_user.is_admin)
    return result.to_dict()


@router.post("/compatibility/{server_id}")
def proxy_compatibility(
    server_id: str,
    payload: Optional[CompatibilityRequest] = None,
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    payload = payload or CompatibilityRequest()
    return services.deployer.test_compatibility(server_id, payload.proxy_types, current_user.email,
                                                is_admin=current_user.is_admin)
