# pagesmith/deps.py
"""Service container, request dependencies and the rate limiter."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from fastapi import Header, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from .background import TaskSupervisor
from .errors import CreatorError, ErrorCode
from .services.billing import CreditLedger
from .services.circuit_breaker import CircuitBreaker
from .services.config_service import ConfigService
from .services.generator_resolver import GeneratorResolver
from .services.orchestrator import GenerationOrchestrator
from .services.outline import OutlineService
from .services.registry import ModelRegistry, registry_from_settings
from .services.task_timeout import TaskTimeoutService
from .services.tasks import TaskService
from .services.versions import VersionService
from .services.wallet import HttpWalletClient, WalletClient
from .settings.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything with process lifetime; built once per app and torn down at shutdown."""

    session_maker: Callable[[], AsyncSession]
    config: ConfigService
    ledger: CreditLedger
    breaker: CircuitBreaker
    resolver: GeneratorResolver
    outline: OutlineService
    versions: VersionService
    tasks: TaskService
    orchestrator: GenerationOrchestrator
    timeouts: TaskTimeoutService
    supervisor: TaskSupervisor


def build_services(
    session_maker: Callable[[], AsyncSession],
    wallet: Optional[WalletClient] = None,
    registry: Optional[ModelRegistry] = None,
    breaker: Optional[CircuitBreaker] = None,
    resolver: Optional[GeneratorResolver] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    config = ConfigService(session_maker)
    ledger = CreditLedger(session_maker, config, wallet or HttpWalletClient())
    breaker = breaker or CircuitBreaker()
    resolver = resolver or GeneratorResolver(config, registry or registry_from_settings(), transport=transport)
    outline = OutlineService(config, resolver)
    supervisor = TaskSupervisor()
    orchestrator = GenerationOrchestrator(session_maker, ledger, config, resolver, outline, breaker, supervisor)
    return Services(
        session_maker=session_maker,
        config=config,
        ledger=ledger,
        breaker=breaker,
        resolver=resolver,
        outline=outline,
        versions=VersionService(session_maker),
        tasks=TaskService(session_maker),
        orchestrator=orchestrator,
        timeouts=TaskTimeoutService(session_maker, ledger),
        supervisor=supervisor,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise CreatorError("Missing X-User-Id header", ErrorCode.UNAUTHORIZED)
    return x_user_id.strip()


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if settings.ADMIN_API_KEY and x_admin_key != settings.ADMIN_API_KEY:
        raise CreatorError("Admin key required", ErrorCode.FORBIDDEN)


# ---------- rate limiting ----------

def rate_limit_key(request: Request) -> str:
    """Per user when the caller identifies itself, per client address otherwise."""
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


def current_rate_limit() -> str:
    return settings.RATE_LIMIT


limiter = Limiter(key_func=rate_limit_key)


__all__ = [
    "Services", "build_services", "get_services", "get_user_id", "require_admin",
    "limiter", "rate_limit_key", "current_rate_limit",
]
