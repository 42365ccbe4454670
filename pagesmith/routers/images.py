from typing import List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..deps import Services, current_rate_limit, get_services, get_user_id, limiter
from ..schemas import GenerateImagesRequest, RegenerateImageRequest, VersionRead
from ..services.events import SSE_HEADERS, EventChannel

router = APIRouter(prefix="/api/images", tags=["images"])


def _stream(channel: EventChannel) -> StreamingResponse:
    return StreamingResponse(channel.sse(), media_type="text/event-stream", headers=SSE_HEADERS)


# ---------- generation (SSE) ----------

@router.post("/generate")
@limiter.limit(current_rate_limit)
async def generate_images(
    request: Request,
    body: GenerateImagesRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    channel = await services.orchestrator.start_image_batch(
        user_id, body.task_id, body.pages, body.full_outline, body.is_regenerate
    )
    return _stream(channel)


@router.post("/regenerate")
@limiter.limit(current_rate_limit)
async def regenerate_image(
    request: Request,
    body: RegenerateImageRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    channel = await services.orchestrator.start_regenerate(user_id, body.task_id, body.page_index, body.prompt)
    return _stream(channel)


# ---------- versions ----------

@router.get("/{task_id}/{page_index}/versions", response_model=List[VersionRead])
async def list_versions(
    task_id: str,
    page_index: int,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await services.tasks.ensure_owner(user_id, task_id)
    return await services.versions.get_versions(task_id, page_index)


@router.get("/{task_id}/{page_index}/versions/{version}", response_model=VersionRead)
async def get_version(
    task_id: str,
    page_index: int,
    version: int,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await services.tasks.ensure_owner(user_id, task_id)
    return await services.versions.get_version(task_id, page_index, version)


@router.post("/{task_id}/{page_index}/versions/{version}/restore", response_model=VersionRead)
async def restore_version(
    task_id: str,
    page_index: int,
    version: int,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await services.tasks.ensure_owner(user_id, task_id)
    return await services.versions.restore_version(task_id, page_index, version)
