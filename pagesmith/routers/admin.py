from typing import Optional

from fastapi import APIRouter, Depends

from ..deps import Services, get_services, require_admin
from ..schemas import ConfigRead, ConfigUpdate

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/config", response_model=ConfigRead)
async def read_config(services: Services = Depends(get_services)):
    return await services.config.get_config()


@router.put("/config", response_model=ConfigRead)
async def update_config(body: ConfigUpdate, services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_unset=True)
    return await services.config.update_config(**changes)


@router.get("/circuits")
async def circuit_status(service: Optional[str] = None, services: Services = Depends(get_services)):
    return services.breaker.get_status(service)


@router.post("/circuits/reset")
async def circuit_reset(service: Optional[str] = None, services: Services = Depends(get_services)):
    services.breaker.reset(service)
    return {"success": True}
