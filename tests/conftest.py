"""
Shared fixtures: a throwaway SQLite database, an in-memory wallet and a
scripted image/text generator standing in for the real providers.
"""
import asyncio
import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ["RUN_SCHEDULER"] = "false"
os.environ.pop("ADMIN_API_KEY", None)

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from pagesmith.database import Base
from pagesmith.deps import build_services, limiter
from pagesmith.errors import BalanceError, CreatorError, ErrorCode, ProviderError
from pagesmith.generators.base import BaseGenerator
from pagesmith.models import BillingConfig, Image, Task, TaskStatus
from pagesmith.services.circuit_breaker import CircuitBreaker

USER = "user-1"

PAGES = [
    {"index": 0, "type": "cover", "content": "cover of the travel notes"},
    {"index": 1, "type": "content", "content": "page one about packing"},
    {"index": 2, "type": "summary", "content": "page two wrapping up"},
]

OUTLINE_TEXT = (
    "<page>[封面]\n春日野餐指南\n图片描述：草地上的野餐布\n</page>\n"
    "<page>[内容]\n准备清单\n图片描述：野餐篮\n</page>\n"
    "<page>[总结]\n出发吧\n</page>"
)


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------

class FakeWallet:
    """Balances live in a dict; every debit and credit is recorded."""

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.debits = []
        self.credits = []
        self.fail_credit = False

    async def get_balance(self, user_id):
        return self.balances.get(user_id, 0)

    async def debit(self, user_id, amount, metadata):
        have = self.balances.get(user_id, 0)
        if have < amount:
            raise BalanceError.insufficient(amount, have)
        self.balances[user_id] = have - amount
        self.debits.append((user_id, amount, metadata))
        return f"acct-{len(self.debits)}"

    async def credit(self, user_id, amount, metadata):
        if self.fail_credit:
            raise CreatorError("wallet unreachable", ErrorCode.BILLING_ROLLBACK_FAILED)
        self.balances[user_id] = self.balances.get(user_id, 0) + amount
        self.credits.append((user_id, amount, metadata))
        return f"refund-{len(self.credits)}"


class ScriptedGenerator(BaseGenerator):
    """Returns numbered URLs; fails any image whose prompt contains a marker in ``fail_on``."""

    name = "scripted"

    def __init__(self):
        super().__init__("test-key", model="scripted-model")
        self.outline_text = OUTLINE_TEXT
        self.text_error = None
        self.text_prompts = []
        self.calls = []
        self.fail_on = set()
        self.delay = 0.0
        self.on_call = None
        self.active = 0
        self.max_active = 0

    async def generate_text(self, prompt, **options):
        self.text_prompts.append(prompt)
        if self.text_error is not None:
            raise self.text_error
        return self.outline_text

    async def generate_image(self, prompt, *, reference_images=None, size=None, quality=None):
        self.calls.append({"prompt": prompt, "refs": list(reference_images or [])})
        n = len(self.calls)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call is not None:
                await self.on_call(n, prompt)
            if self.delay:
                await asyncio.sleep(self.delay)
            if any(marker in prompt for marker in self.fail_on):
                raise ProviderError("provider rejected the prompt", ErrorCode.AI_PROVIDER_ERROR)
            return f"https://img.test/{n}.png"
        finally:
            self.active -= 1


class StubResolver:
    def __init__(self, generator):
        self.generator = generator

    async def resolve_image_generator(self, config=None):
        return self.generator

    async def resolve_text_generator(self, config=None):
        return self.generator


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pagesmith.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        # let the "begin" hook below own transaction start
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def wallet():
    return FakeWallet({USER: 1000})


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest_asyncio.fixture
async def services(session_maker, wallet, generator):
    async with session_maker() as db:
        db.add(BillingConfig(
            outline_power=10,
            cover_image_power=80,
            content_image_power=40,
            free_usage_limit=0,
            text_model_id="text-model",
            image_model_id="image-model",
            image_prompt="{page_type}|{page_content}",
        ))
        await db.commit()

    svc = build_services(
        session_maker,
        wallet=wallet,
        breaker=CircuitBreaker(failure_threshold=50, call_timeout=10),
        resolver=StubResolver(generator),
    )
    yield svc
    await svc.supervisor.shutdown(grace=5)


@pytest.fixture
def make_task(session_maker):
    async def _make(status=TaskStatus.outline_ready, pages=PAGES, user_id=USER, topic="spring picnic",
                    user_images=None, **fields):
        async with session_maker() as db:
            task = Task(
                user_id=user_id,
                topic=topic,
                outline="outline text",
                pages=[dict(p) for p in pages],
                status=status,
                user_images=list(user_images or []),
                total_pages=len(pages),
                **fields,
            )
            db.add(task)
            await db.commit()
            return task.id

    return _make


@pytest.fixture
def load_images(session_maker):
    async def _load(task_id):
        async with session_maker() as db:
            rows = (
                await db.execute(select(Image).where(Image.task_id == task_id).order_by(Image.page_index))
            ).scalars().all()
        return {img.page_index: img for img in rows}

    return _load


@pytest.fixture
def load_task(session_maker):
    async def _load(task_id):
        async with session_maker() as db:
            return await db.get(Task, task_id)

    return _load


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(services):
    from pagesmith.main import create_app

    limiter.enabled = False
    app = create_app(services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    limiter.enabled = True
