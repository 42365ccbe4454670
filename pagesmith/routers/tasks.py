import math
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..deps import Services, get_services, get_user_id
from ..models import TaskStatus
from ..schemas import ImageRead, TaskDetail, TaskList, TaskRead, UpdateOutlineRequest

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("", response_model=TaskList)
async def list_tasks(
    page: int = Query(1, ge=1),
    page_size: int = Query(12, ge=1, le=100, alias="pageSize"),
    status: Optional[TaskStatus] = None,
    keyword: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    tasks, total = await services.tasks.list_tasks(user_id, page, page_size, status, keyword)
    return {
        "tasks": tasks,
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": math.ceil(total / page_size) if total else 0,
        },
    }


@router.get("/{task_id}", response_model=TaskDetail)
async def get_task(task_id: str, user_id: str = Depends(get_user_id), services: Services = Depends(get_services)):
    return await services.tasks.get_task(user_id, task_id)


@router.get("/{task_id}/images", response_model=List[ImageRead])
async def get_task_images(task_id: str, user_id: str = Depends(get_user_id),
                          services: Services = Depends(get_services)):
    task = await services.tasks.get_task(user_id, task_id)
    return task.images


@router.put("/{task_id}/outline", response_model=TaskDetail)
async def update_outline(
    task_id: str,
    body: UpdateOutlineRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await services.tasks.update_outline(user_id, task_id, body.pages)
    return await services.tasks.get_task(user_id, task_id)


@router.delete("/{task_id}")
async def delete_task(task_id: str, user_id: str = Depends(get_user_id), services: Services = Depends(get_services)):
    await services.tasks.delete_task(user_id, task_id)
    return {"success": True}


@router.post("/{task_id}/cancel", response_model=TaskRead)
async def cancel_task(task_id: str, user_id: str = Depends(get_user_id), services: Services = Depends(get_services)):
    return await services.orchestrator.cancel_task(user_id, task_id)


# reconnecting clients poll this instead of re-subscribing to the stream
@router.get("/{task_id}/progress")
async def get_progress(task_id: str, user_id: str = Depends(get_user_id), services: Services = Depends(get_services)):
    return {"success": True, **await services.orchestrator.get_progress(user_id, task_id)}
