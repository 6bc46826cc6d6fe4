"""Best-effort background side effects (audit, notification, verification logging)."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, wait
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Run fire-and-forget callables without letting their failures escape.

    With no executor the callable runs inline, which keeps ordering
    deterministic (tests, CLI).  With an executor it is submitted and the
    caller returns immediately; :meth:`join` waits for everything pending.
    """

    def __init__(self, executor: Executor | None = None) -> None:
        self._executor = executor
        self._pending: set[Future[Any]] = set()
        self._lock = threading.Lock()

    def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        name = getattr(func, "__qualname__", repr(func))
        if self._executor is None:
            _run_logged(name, func, args, kwargs)
            return
        future = self._executor.submit(_run_logged, name, func, args, kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def join(self, timeout: float | None = None) -> None:
        """Block until every submitted task has finished."""
        with self._lock:
            pending = set(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def _discard(self, future: Future[Any]) -> None:
        with self._lock:
            self._pending.discard(future)


def _run_logged(
    name: str, func: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]
) -> None:
    try:
        func(*args, **kwargs)
    except Exception:
        logger.exception("Background task %s failed", name)


__all__ = ["BackgroundTasks"]
