"""Supervision for fire-and-forget generation runs.

Generation keeps going after the client that started it disconnects, so the
pipeline runs as a background asyncio task. The supervisor keeps a strong
reference until it finishes (so it is not garbage collected), logs
exceptions instead of losing them, and lets the app drain or cancel
everything at shutdown.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], *, name: Optional[str] = None,
              on_error: Optional[Callable[[BaseException], None]] = None) -> asyncio.Task[Any]:
        """Create and supervise a background task.

        Args:
            coro: Awaitable coroutine to run in the background.
            name: Optional name for the task, used in log lines.
            on_error: Optional callback invoked if the task raises.
        """
        task = asyncio.create_task(coro, name=name)  # type: ignore[arg-type]
        self._tasks.add(task)

        def _finished(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            try:
                t.result()
            except asyncio.CancelledError:
                logger.debug("Background task %s cancelled", name or t)
            except Exception as exc:  # noqa: BLE001
                if on_error:
                    try:
                        on_error(exc)
                    except Exception:  # noqa: BLE001
                        logger.exception("Error in on_error callback for task %s", name or t)
                logger.error("Background task %s failed", name or t, exc_info=exc)

        task.add_done_callback(_finished)
        return task

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for running tasks; used by tests and graceful shutdown."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def shutdown(self, grace: float = 5.0) -> None:
        await self.join(timeout=grace)
        pending = list(self._tasks)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d unfinished background task(s) at shutdown", len(pending))


__all__ = ["TaskSupervisor"]
