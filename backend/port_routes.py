from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from typing import List, Optional

from auth import require_admin
from config import DEFAULT_ENVIRONMENT
from models import User
from services import Services, get_services

router = APIRouter(prefix="/ports", tags=["ports"])


class ReservePortsRequest(BaseModel):
    target_email: str
    ports: List[int]


class PortRange(BaseModel):
    start: int
    end: int
    description: str = ""


class ReserveRangesRequest(BaseModel):
    target_email: str
    ranges: List[PortRange]


@router.post("/reserve")
def reserve_ports(
    payload: ReservePortsRequest,
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    result = services.allocator.reserve_for_user(current_user.email, payload.target_email, payload.ports)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return result.to_dict()


@router.post("/reserve-ranges")
def reserve_port_ranges(
    payload: ReserveRangesRequest,
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    result = services.allocator.reserve_ranges_for_user(
        current_user.email, payload.target_email, [r.model_dump() for r in payload.ranges])
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return result.to_dict()


@router.get("/usage")
def port_usage(
    environment_id: str = Query(DEFAULT_ENVIRONMENT),
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.allocator.usage_report(environment_id)


@router.get("/{port}/availability")
def port_availability(
    port: int,
    environment_id: str = Query(DEFAULT_ENVIRONMENT),
    owner_email: Optional[str] = Query(None),
    current_user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Check a port as seen by ``owner_email`` (the caller when omitted)."""
    check = services.allocator.is_available(port, owner_email or current_user.email, environment_id)
    return check.to_dict()
