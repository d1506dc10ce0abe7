"""Entry points for the external scheduler. Authenticated with INTERNAL_API_KEY."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List, Optional

from auth import require_internal_key
from services import Services, get_services

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal_key)])


class UpdateRunRequest(BaseModel):
    server_ids: Optional[List[str]] = None


@router.post("/updates/run")
def run_image_updates(
    payload: Optional[UpdateRunRequest] = None,
    services: Services = Depends(get_services),
):
    server_ids = payload.server_ids if payload else None
    return services.updates.run(server_ids).to_dict()


@router.post("/updates/cancel")
def cancel_image_updates(services: Services = Depends(get_services)):
    return {"cancelled": services.updates.cancel()}


@router.post("/monitoring/run")
def run_monitoring(services: Services = Depends(get_services)):
    report = services.health.check_all()
    changed = services.health.check_servers()
    return {"proxies": report.to_dict(), "servers_changed": changed}
