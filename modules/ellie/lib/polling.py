"""Cooperative polling loop shared by the background workers.

A worker exposes ``run_once() -> int`` (items processed in one bounded
batch).  ``run_polling_loop`` repeats it until the stop event is set and
only sleeps when a run processed nothing.  The idle sleep is
``stop_event.wait()`` so a stop request interrupts it immediately; a batch
that has started always runs to completion.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from lib.errors import ConfigurationError

logger = logging.getLogger(__name__)


def run_polling_loop(
    name: str,
    run_once: Callable[[], int],
    stop_event: threading.Event,
    *,
    poll_interval: float,
    error_interval: Optional[float] = None,
    log: Optional[logging.Logger] = None,
) -> int:
    """Run ``run_once`` until ``stop_event`` is set.

    Errors are logged and treated as an idle cycle so a transient store or
    network failure waits for the next poll instead of killing the thread.
    ``error_interval`` overrides the sleep after a failed run.  A
    ``ConfigurationError`` is not retried: it is logged and re-raised.

    Returns the total number of items processed.
    """
    log = log or logger
    total = 0
    while not stop_event.is_set():
        wait_for = poll_interval
        try:
            processed = int(run_once() or 0)
        except ConfigurationError as exc:
            log.error("[%s] stopping on configuration error: %s", name, exc)
            raise
        except Exception as exc:
            log.error("[%s] run failed: %s", name, exc)
            processed = 0
            if error_interval is not None:
                wait_for = error_interval
        total += processed
        if processed > 0:
            continue
        if stop_event.is_set():
            break
        if stop_event.wait(timeout=max(0.0, float(wait_for))):
            break
    log.info("[%s] polling loop stopped (processed=%d)", name, total)
    return total


def start_in_thread(
    name: str,
    run_once: Callable[[], int],
    stop_event: threading.Event,
    *,
    poll_interval: float,
    error_interval: Optional[float] = None,
    log: Optional[logging.Logger] = None,
) -> threading.Thread:
    """Start ``run_polling_loop`` on a daemon thread and return the thread."""
    thread = threading.Thread(
        target=run_polling_loop,
        name=f"ellie-{name}",
        args=(name, run_once, stop_event),
        kwargs={
            "poll_interval": poll_interval,
            "error_interval": error_interval,
            "log": log,
        },
        daemon=True,
    )
    thread.start()
    return thread


class PollingWorker:
    """Mixin giving a worker ``start(stop_event)`` around its ``run_once``.

    Subclasses set ``name`` and ``poll_interval`` and implement
    ``_run_batch() -> int``.
    """

    name = "worker"
    poll_interval = 60.0
    error_interval: Optional[float] = None
    logger: logging.Logger = logger

    def _run_batch(self) -> int:
        raise NotImplementedError

    def start(self, stop_event: threading.Event) -> int:
        """Block in the polling loop until ``stop_event`` is set."""
        return run_polling_loop(
            self.name,
            self._run_batch,
            stop_event,
            poll_interval=self.poll_interval,
            error_interval=self.error_interval,
            log=self.logger,
        )

    def start_in_thread(self, stop_event: threading.Event) -> threading.Thread:
        return start_in_thread(
            self.name,
            self._run_batch,
            stop_event,
            poll_interval=self.poll_interval,
            error_interval=self.error_interval,
            log=self.logger,
        )
