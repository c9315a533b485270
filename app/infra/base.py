"""Shared plumbing for infrastructure adapters.

Every adapter call is bounded by a timeout and every failure leaves the
adapter as an ``InfraUnavailable`` naming the adapter, so nothing untyped
crosses into the services.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from app.config import settings
from app.exceptions import InfraUnavailable
from app.utils.metrics import INFRA_CALL_DURATION_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_blocking(
    adapter: str,
    operation: str,
    func: Callable[..., T],
    *args: Any,
    timeout: float | None = None,
    **kwargs: Any,
) -> T:
    """Run a blocking SDK call in a worker thread under a timeout."""
    timeout = timeout or settings.infra_timeout_seconds
    start = time.perf_counter()
    try:
        return await asyncio.wait_for(asyncio.to_thread(functools.partial(func, *args, **kwargs)), timeout)
    except asyncio.TimeoutError as e:
        logger.warning("%s.%s timed out after %.1fs", adapter, operation, timeout)
        raise InfraUnavailable(adapter, f"{adapter} {operation} timed out after {timeout:.0f}s") from e
    finally:
        INFRA_CALL_DURATION_SECONDS.labels(adapter=adapter, operation=operation).observe(time.perf_counter() - start)


async def with_timeout(adapter: str, operation: str, coro, timeout: float | None = None):
    """Bound an already-async adapter call."""
    timeout = timeout or settings.infra_timeout_seconds
    start = time.perf_counter()
    try:
        return await asyncio.wait_for(coro, timeout)
    except asyncio.TimeoutError as e:
        logger.warning("%s.%s timed out after %.1fs", adapter, operation, timeout)
        raise InfraUnavailable(adapter, f"{adapter} {operation} timed out after {timeout:.0f}s") from e
    finally:
        INFRA_CALL_DURATION_SECONDS.labels(adapter=adapter, operation=operation).observe(time.perf_counter() - start)
