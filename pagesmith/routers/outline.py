from fastapi import APIRouter, Depends, Request

from ..deps import Services, current_rate_limit, get_services, get_user_id, limiter
from ..schemas import OutlineRequest, OutlineResponse

router = APIRouter(prefix="/api/outline", tags=["outline"])


@router.post("", response_model=OutlineResponse)
@limiter.limit(current_rate_limit)
async def create_outline(
    request: Request,
    body: OutlineRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    result = await services.orchestrator.generate_outline(
        user_id, body.topic, body.user_images, task_id=body.task_id
    )
    return {"success": True, **result}
