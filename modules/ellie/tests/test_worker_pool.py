import os
import sys
import threading
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from lib import worker_pool


def test_results_keep_callable_order():
    out = worker_pool.run_callables(
        [lambda: (time.sleep(0.05), "slow")[1], lambda: "fast"],
        max_workers=2,
        pool_name="test-order",
    )
    assert out == ["slow", "fast"]


def test_single_worker_runs_inline():
    caller = threading.current_thread().name
    out = worker_pool.run_callables(
        [lambda: threading.current_thread().name],
        max_workers=4,
        pool_name="test-inline",
    )
    assert out == [caller]


def test_empty_input_returns_empty_list():
    assert worker_pool.run_callables([], max_workers=2) == []


def test_first_exception_propagates():
    def boom():
        raise ValueError("bad evaluator")

    with pytest.raises(ValueError, match="bad evaluator"):
        worker_pool.run_callables([lambda: 1, boom], max_workers=2, pool_name="test-raise")


def test_shutdown_worker_pools_clears_pool_registry():
    out = worker_pool.run_callables(
        [lambda: 1, lambda: 2],
        max_workers=2,
        pool_name="test-shutdown",
    )
    assert out == [1, 2]
    assert worker_pool._POOLS

    worker_pool.shutdown_worker_pools(wait=False)
    assert worker_pool._POOLS == {}


def test_timeout_exception_includes_pending_callable_indices():
    with pytest.raises(TimeoutError, match="pending_callable_indices"):
        worker_pool.run_callables(
            [lambda: time.sleep(0.2), lambda: time.sleep(0.2)],
            max_workers=2,
            pool_name="test-timeout-indices",
            timeout_seconds=0.01,
        )
