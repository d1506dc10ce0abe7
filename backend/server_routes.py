from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from auth import require_auth
from config import DEFAULT_ENVIRONMENT
from decommission import DeleteOptions
from models import User
from provisioning import ProvisioningRequest
from services import Services, get_services

router = APIRouter(prefix="/servers", tags=["servers"])


class CreateServerRequest(BaseModel):
    server_name: str
    server_type: str
    version: str
    memory_mb: int = 2048
    subdomain: Optional[str] = None
    environment_id: str = DEFAULT_ENVIRONMENT
    needs_rcon: bool = True
    preferred_port: Optional[int] = None
    server_config: Dict[str, Any] = Field(default_factory=dict)


class BulkRequest(BaseModel):
    action: str  # start, stop, restart, delete
    server_ids: List[str]


# ==================== Lifecycle ====================

@router.post("", status_code=status.HTTP_201_CREATED)
def create_server(
    payload: CreateServerRequest,
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """Provision a server. Nothing is left behind when this fails."""
    outcome = services.provisioning.create_server(
        current_user.email,
        ProvisioningRequest(**payload.model_dump()),
        is_admin=current_user.is_admin,
    )
    return outcome.to_dict()


@router.delete("/{identifier}")
def delete_server(
    identifier: str,
    force: bool = Query(True),
    remove_volumes: bool = Query(True),
    archive_files: bool = Query(True),
    reason: Optional[str] = Query(None),
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """Delete a server. Answers 207 when some cleanup step needs attention."""
    result = services.decommission.delete_server(
        identifier,
        current_user.email,
        DeleteOptions(force=force, remove_volumes=remove_volumes, archive_files=archive_files, reason=reason),
        is_admin=current_user.is_admin,
    )
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.post("/bulk")
def bulk_operation(
    payload: BulkRequest,
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    result = services.bulk.run(payload.action, payload.server_ids, current_user.email,
                               is_admin=current_user.is_admin)
    return result.to_dict()


# ==================== Subdomains ====================

@router.get("/subdomain/{name}/availability")
def subdomain_availability(
    name: str,
    current_user: User = Depends(require_auth),
    services: Services = Depends(get_services),
):
    check = services.provisioning.validate_subdomain(name, is_admin=current_user.is_admin)
    return {"subdomain": name.strip().lower(), "available": check.valid, **check.to_dict()}
