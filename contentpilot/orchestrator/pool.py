"""Bounded fan-out for sweep items."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, TypeVar


T = TypeVar("T")
R = TypeVar("R")


def map_bounded(func: Callable[[T], R], items: Iterable[T], *, max_workers: int) -> List[R]:
    """Apply `func` to every item with at most `max_workers` threads, keeping input order.

    `func` is expected to handle its own per-item errors; an exception escaping it
    is re-raised here after the pool drains.
    """

    selected = list(items)
    if not selected:
        return []
    workers = max(1, min(max_workers, len(selected)))
    if workers == 1:
        return [func(item) for item in selected]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="contentpilot-sweep") as executor:
        return list(executor.map(func, selected))
