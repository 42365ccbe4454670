from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime

from .models import PageType, TaskStatus, ImageStatus, GeneratedBy, EndpointType


class CamelModel(BaseModel):
    """Wire format is camelCase; Python attributes stay snake_case."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# =========================
# OUTLINE
# =========================
class PageIn(CamelModel):
    index: int = Field(ge=0)
    type: PageType = PageType.content
    content: str = ""


class OutlineRequest(CamelModel):
    topic: str = Field(min_length=1, max_length=500)
    user_images: List[str] = Field(default_factory=list)
    # set to retry a failed task's outline instead of creating a new task
    task_id: Optional[str] = None


class BillingOut(CamelModel):
    is_free: bool
    power_deducted: int


class OutlineResponse(CamelModel):
    success: bool = True
    task_id: str
    outline: str
    pages: List[PageIn]
    billing: BillingOut


# =========================
# IMAGES
# =========================
class GenerateImagesRequest(CamelModel):
    task_id: str
    pages: List[PageIn] = Field(min_length=1)
    full_outline: str = ""
    is_regenerate: bool = False


class RegenerateImageRequest(CamelModel):
    task_id: str
    page_index: int = Field(ge=0)
    prompt: Optional[str] = None


class ImageRead(CamelModel):
    id: str
    page_index: int
    page_type: PageType
    prompt: str
    image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    status: ImageStatus
    error_message: Optional[str] = None
    retry_count: int
    current_version: int
    power_deducted: bool
    power_amount: int


class VersionRead(CamelModel):
    id: str
    image_id: str
    task_id: str
    page_index: int
    version: int
    image_url: str
    prompt: Optional[str] = None
    generated_by: GeneratedBy
    power_amount: int
    is_current: bool
    created_at: datetime


# =========================
# TASKS
# =========================
class TaskRead(CamelModel):
    id: str
    topic: str
    status: TaskStatus
    cover_image_url: Optional[str] = None
    total_pages: int
    generated_pages: int
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TaskDetail(TaskRead):
    outline: Optional[str] = None
    pages: Optional[List[PageIn]] = None
    user_images: Optional[List[str]] = None
    images: List[ImageRead] = Field(default_factory=list)


class Pagination(CamelModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class TaskList(CamelModel):
    success: bool = True
    tasks: List[TaskRead]
    pagination: Pagination


class UpdateOutlineRequest(CamelModel):
    pages: List[PageIn] = Field(min_length=1)


# =========================
# BILLING
# =========================
class BalanceRead(CamelModel):
    free_usage_count: int
    free_usage_limit: int
    remaining_free_count: int
    balance: int


class EstimateRequest(CamelModel):
    pages: List[PageIn] = Field(min_length=1)


class EstimateRead(CamelModel):
    total_power: int
    page_count: int
    covered_by_free_usage: bool
    sufficient: bool


# =========================
# ADMIN
# =========================
class ConfigRead(CamelModel):
    outline_power: int
    cover_image_power: int
    content_image_power: int
    free_usage_limit: int
    text_model_id: Optional[str] = None
    text_model: str
    image_model_id: Optional[str] = None
    image_model: str
    image_endpoint_type: EndpointType
    image_endpoint_url: Optional[str] = None
    high_concurrency: bool
    outline_prompt: Optional[str] = None
    image_prompt: Optional[str] = None
    updated_at: Optional[datetime] = None


class ConfigUpdate(CamelModel):
    outline_power: Optional[int] = Field(default=None, ge=0)
    cover_image_power: Optional[int] = Field(default=None, ge=0)
    content_image_power: Optional[int] = Field(default=None, ge=0)
    free_usage_limit: Optional[int] = Field(default=None, ge=0)
    text_model_id: Optional[str] = None
    text_model: Optional[str] = None
    image_model_id: Optional[str] = None
    image_model: Optional[str] = None
    image_endpoint_type: Optional[EndpointType] = None
    image_endpoint_url: Optional[str] = None
    high_concurrency: Optional[bool] = None
    outline_prompt: Optional[str] = None
    image_prompt: Optional[str] = None
