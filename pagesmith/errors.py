"""Stable error codes and the exception types raised across the service.

Every user-visible failure carries an ``ErrorCode`` and a readable message.
Routers turn ``CreatorError`` into a JSON body; the generation pipeline turns
it into an ``error`` event instead.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ErrorCode(str, enum.Enum):
    # general (1xxx)
    UNKNOWN_ERROR = "GEN_1000"
    INVALID_REQUEST = "GEN_1001"
    UNAUTHORIZED = "GEN_1002"
    FORBIDDEN = "GEN_1003"
    RATE_LIMITED = "GEN_1004"

    # tasks (2xxx)
    TASK_NOT_FOUND = "GEN_2001"
    TASK_INVALID_STATUS = "GEN_2003"
    TASK_GENERATION_FAILED = "GEN_2004"
    TASK_CANCELLED = "GEN_2005"

    # images (3xxx)
    IMAGE_NOT_FOUND = "GEN_3001"
    IMAGE_GENERATION_FAILED = "GEN_3002"
    IMAGE_VERSION_NOT_FOUND = "GEN_3003"

    # billing (4xxx)
    INSUFFICIENT_BALANCE = "GEN_4001"
    BILLING_DEDUCT_FAILED = "GEN_4002"
    BILLING_ROLLBACK_FAILED = "GEN_4003"

    # config (5xxx)
    CONFIG_MISSING = "GEN_5001"
    CONFIG_INVALID = "GEN_5002"

    # AI providers (6xxx)
    AI_SERVICE_UNAVAILABLE = "GEN_6001"
    AI_GENERATION_TIMEOUT = "GEN_6002"
    AI_PROVIDER_ERROR = "GEN_6003"
    AI_UNSUPPORTED_MODEL = "GEN_6004"


_STATUS = {
    ErrorCode.UNKNOWN_ERROR: 500,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.TASK_NOT_FOUND: 404,
    ErrorCode.TASK_INVALID_STATUS: 409,
    ErrorCode.TASK_GENERATION_FAILED: 500,
    ErrorCode.TASK_CANCELLED: 409,
    ErrorCode.IMAGE_NOT_FOUND: 404,
    ErrorCode.IMAGE_GENERATION_FAILED: 502,
    ErrorCode.IMAGE_VERSION_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_BALANCE: 402,
    ErrorCode.BILLING_DEDUCT_FAILED: 502,
    ErrorCode.BILLING_ROLLBACK_FAILED: 500,
    ErrorCode.CONFIG_MISSING: 503,
    ErrorCode.CONFIG_INVALID: 400,
    ErrorCode.AI_SERVICE_UNAVAILABLE: 503,
    ErrorCode.AI_GENERATION_TIMEOUT: 504,
    ErrorCode.AI_PROVIDER_ERROR: 502,
    ErrorCode.AI_UNSUPPORTED_MODEL: 400,
}


class CreatorError(Exception):
    """Base for every expected failure; carries a stable code."""

    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return _STATUS.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "errorCode": self.code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ---- common constructors ----
    @classmethod
    def task_not_found(cls, task_id: str) -> "CreatorError":
        return cls(f"Task not found: {task_id}", ErrorCode.TASK_NOT_FOUND, {"taskId": task_id})

    @classmethod
    def image_not_found(cls, task_id: str, page_index: int) -> "CreatorError":
        return cls(
            f"Image not found: task {task_id} page {page_index}",
            ErrorCode.IMAGE_NOT_FOUND,
            {"taskId": task_id, "pageIndex": page_index},
        )

    @classmethod
    def version_not_found(cls, task_id: str, page_index: int, version: int) -> "CreatorError":
        return cls(
            f"Version v{version} not found: task {task_id} page {page_index}",
            ErrorCode.IMAGE_VERSION_NOT_FOUND,
            {"taskId": task_id, "pageIndex": page_index, "version": version},
        )

    @classmethod
    def invalid_status(cls, task_id: str, status: str, action: str) -> "CreatorError":
        return cls(
            f"Task {task_id} is {status}; cannot {action}",
            ErrorCode.TASK_INVALID_STATUS,
            {"taskId": task_id, "status": status},
        )

    @classmethod
    def forbidden(cls, task_id: str) -> "CreatorError":
        return cls("Task belongs to another user", ErrorCode.FORBIDDEN, {"taskId": task_id})


class ValidationFailed(CreatorError):
    default_code = ErrorCode.INVALID_REQUEST


class BalanceError(CreatorError):
    default_code = ErrorCode.INSUFFICIENT_BALANCE

    @classmethod
    def insufficient(cls, required: int, available: Optional[int] = None) -> "BalanceError":
        msg = f"Insufficient balance: {required} credits required"
        if available is not None:
            msg += f", {available} available"
        return cls(msg, ErrorCode.INSUFFICIENT_BALANCE, {"required": required, "available": available})


class ProviderError(CreatorError):
    default_code = ErrorCode.AI_PROVIDER_ERROR

    @classmethod
    def unavailable(cls, service: str, reason: Optional[str] = None) -> "ProviderError":
        msg = f"AI service unavailable: {service}" + (f" ({reason})" if reason else "")
        return cls(msg, ErrorCode.AI_SERVICE_UNAVAILABLE, {"service": service, "reason": reason})

    @classmethod
    def timeout(cls, service: str, seconds: float) -> "ProviderError":
        return cls(
            f"AI call to {service} timed out after {seconds:g}s",
            ErrorCode.AI_GENERATION_TIMEOUT,
            {"service": service, "timeout": seconds},
        )


class ConfigError(CreatorError):
    default_code = ErrorCode.CONFIG_MISSING


def as_creator_error(exc: BaseException) -> CreatorError:
    """Wrap anything unexpected so it can be reported with a code."""
    if isinstance(exc, CreatorError):
        return exc
    return CreatorError(str(exc) or exc.__class__.__name__, ErrorCode.UNKNOWN_ERROR)


__all__ = [
    "ErrorCode",
    "CreatorError",
    "ValidationFailed",
    "BalanceError",
    "ProviderError",
    "ConfigError",
    "as_creator_error",
]
