"""Bounded-concurrency map over a thread pool."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

import logging


log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def map_bounded(fn: Callable[[T], R], items: Iterable[T], max_workers: int = 4) -> list[R]:
    """Apply fn to every item with at most max_workers running at once.

    Results keep input order. The first exception propagates after pending
    work is cancelled; calls already running finish in the background.
    """
    items = list(items)
    if not items:
        return []
    if max_workers <= 0:
        raise ValueError(f"max_workers must be positive, got {max_workers}")
    if len(items) == 1:
        return [fn(items[0])]

    workers = min(max_workers, len(items))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch")
    futures = [executor.submit(fn, item) for item in items]
    try:
        return [f.result() for f in futures]
    except BaseException:
        for f in futures:
            f.cancel()
        raise
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
