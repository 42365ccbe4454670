from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime,
    UniqueConstraint, Index, JSON,
)
from sqlalchemy.orm import relationship
from sqlalchemy import Enum as SAEnum
from datetime import datetime, timezone
import enum
import uuid

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; stored the same way on Postgres and SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, enum.Enum):
    pending = "pending"
    generating_outline = "generating_outline"
    outline_ready = "outline_ready"
    generating_images = "generating_images"
    completed = "completed"
    failed = "failed"


class ImageStatus(str, enum.Enum):
    pending = "pending"
    generating = "generating"
    completed = "completed"
    failed = "failed"


class PageType(str, enum.Enum):
    cover = "cover"
    content = "content"
    summary = "summary"


PAGE_TYPE_LABELS = {
    PageType.cover: "封面",
    PageType.content: "内容",
    PageType.summary: "总结",
}


class GeneratedBy(str, enum.Enum):
    initial = "initial"
    single_regenerate = "single-regenerate"
    batch_regenerate = "batch-regenerate"


class EndpointType(str, enum.Enum):
    images = "images"   # OpenAI-style /images/generations
    chat = "chat"       # /chat/completions, URL scraped from the reply
    custom = "custom"   # arbitrary JSON endpoint


# ---------------------------
# TASKS
# ---------------------------
class Task(Base):
    __tablename__ = "task"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), index=True, nullable=False)
    topic = Column(String(500), nullable=False)
    outline = Column(Text, nullable=True)
    pages = Column(JSON, nullable=True)          # [{"index": 0, "type": "cover", "content": "..."}]
    status = Column(SAEnum(TaskStatus, native_enum=False, length=32), default=TaskStatus.pending, nullable=False, index=True)
    user_images = Column(JSON, nullable=True)    # list[str] reference image URLs
    cover_image_url = Column(Text, nullable=True)
    total_pages = Column(Integer, default=0, nullable=False)
    generated_pages = Column(Integer, default=0, nullable=False)  # monotonic
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False, index=True)

    images = relationship(
        "Image",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Image.page_index.asc()",
    )


# ---------------------------
# IMAGES
# ---------------------------
class Image(Base):
    __tablename__ = "image"

    id = Column(String(36), primary_key=True, default=_uuid)
    task_id = Column(String(36), ForeignKey("task.id", ondelete="CASCADE"), index=True, nullable=False)
    page_index = Column(Integer, nullable=False)
    page_type = Column(SAEnum(PageType, native_enum=False, length=16), default=PageType.content, nullable=False)
    prompt = Column(Text, nullable=False, default="")
    image_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    status = Column(SAEnum(ImageStatus, native_enum=False, length=16), default=ImageStatus.pending, nullable=False)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    current_version = Column(Integer, default=1, nullable=False)

    # billing: power_deducted <=> power_amount > 0 and a debit exists under billing_account_no
    power_deducted = Column(Boolean, default=False, nullable=False)
    power_amount = Column(Integer, default=0, nullable=False)
    billing_account_no = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    task = relationship("Task", back_populates="images")
    versions = relationship(
        "ImageVersion",
        back_populates="image",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImageVersion.version.desc()",
    )

    __table_args__ = (
        UniqueConstraint("task_id", "page_index", name="uq_image_task_page"),
    )


# ---------------------------
# VERSIONING
# ---------------------------
class ImageVersion(Base):
    __tablename__ = "image_version"

    id = Column(String(36), primary_key=True, default=_uuid)
    image_id = Column(String(36), ForeignKey("image.id", ondelete="CASCADE"), index=True, nullable=False)
    task_id = Column(String(36), ForeignKey("task.id", ondelete="CASCADE"), index=True, nullable=False)
    page_index = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False)     # monotonic per image, starts at 1
    image_url = Column(Text, nullable=False)
    prompt = Column(Text, nullable=True)
    generated_by = Column(SAEnum(GeneratedBy, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]), nullable=False)
    power_amount = Column(Integer, default=0, nullable=False)
    is_current = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    image = relationship("Image", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("image_id", "version", name="uq_image_version"),
        Index("ix_image_version_task_page", "task_id", "page_index"),
    )


# ---------------------------
# BILLING
# ---------------------------
class UserUsage(Base):
    __tablename__ = "user_usage"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, index=True, nullable=False)
    free_usage_count = Column(Integer, default=0, nullable=False)  # never decreases
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BillingConfig(Base):
    """Process-wide billing and generation settings; latest row wins."""
    __tablename__ = "billing_config"

    id = Column(Integer, primary_key=True)
    outline_power = Column(Integer, default=10, nullable=False)
    cover_image_power = Column(Integer, default=80, nullable=False)
    content_image_power = Column(Integer, default=40, nullable=False)
    free_usage_limit = Column(Integer, default=5, nullable=False)

    text_model_id = Column(String(64), nullable=True)
    text_model = Column(String(128), default="gpt-4o-mini", nullable=False)
    image_model_id = Column(String(64), nullable=True)
    image_model = Column(String(128), default="gpt-image-1", nullable=False)
    image_endpoint_type = Column(SAEnum(EndpointType, native_enum=False, length=16), default=EndpointType.images, nullable=False)
    image_endpoint_url = Column(String(500), nullable=True)
    high_concurrency = Column(Boolean, default=False, nullable=False)
    outline_prompt = Column(Text, nullable=True)  # null -> bundled template
    image_prompt = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
