"""Shared worker pools for bounded parallel execution."""

from __future__ import annotations

import atexit
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


_POOL_GUARD = threading.Lock()
_POOLS: Dict[Tuple[str, int], ThreadPoolExecutor] = {}


def _pool(pool_name: str, max_workers: int) -> ThreadPoolExecutor:
    key = (str(pool_name or "default"), max(1, int(max_workers)))
    with _POOL_GUARD:
        ex = _POOLS.get(key)
        if ex is None:
            ex = ThreadPoolExecutor(max_workers=key[1], thread_name_prefix=f"ellie-{key[0]}")
            _POOLS[key] = ex
        return ex


def shutdown_worker_pools(wait: bool = False) -> None:
    """Shutdown and clear shared thread pools."""
    with _POOL_GUARD:
        pools = list(_POOLS.values())
        _POOLS.clear()
    for ex in pools:
        ex.shutdown(wait=wait, cancel_futures=True)


atexit.register(shutdown_worker_pools)


def run_callables(
    callables: Sequence[Callable[[], Any]],
    *,
    max_workers: int,
    pool_name: str = "default",
    timeout_seconds: Optional[float] = None,
) -> List[Any]:
    """Run callables in parallel with deterministic output ordering.

    The first exception raised by any callable propagates.  A TimeoutError
    is raised when ``timeout_seconds`` elapses before every callable
    finishes.
    """
    funcs = list(callables or [])
    if not funcs:
        return []

    worker_count = max(1, min(int(max_workers), len(funcs)))
    if worker_count == 1:
        return [fn() for fn in funcs]

    ex = _pool(pool_name, worker_count)
    fut_to_idx = {ex.submit(fn): idx for idx, fn in enumerate(funcs)}
    out: List[Any] = [None] * len(funcs)
    remaining = None
    if timeout_seconds is not None:
        remaining = max(0.0, float(timeout_seconds))
    started = time.monotonic()
    try:
        for fut in as_completed(fut_to_idx, timeout=remaining):
            out[fut_to_idx[fut]] = fut.result()
    except FuturesTimeoutError as exc:
        pending = sorted(idx for fut, idx in fut_to_idx.items() if not fut.done())
        for fut in fut_to_idx:
            fut.cancel()
        raise TimeoutError(
            f"Parallel call timed out after {time.monotonic() - started:.2f}s "
            f"pending_callable_indices={pending}"
        ) from exc
    return out
