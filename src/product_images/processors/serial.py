"""Serial processor implementation - processes files one by one."""

import threading
from typing import Callable, List, Optional, TypeVar

from ..core.exceptions import BatchCancelledError

T = TypeVar("T")
R = TypeVar("R")


def process_batch(
    batch: List[T],
    process_item: Callable[[int, T], R],
    fail_item: Callable[[int, T, Exception], R],
    cancel_event: Optional[threading.Event] = None,
    max_workers: Optional[int] = None,
) -> List[R]:
    """
    Processes a batch serially, one item at a time, in the current thread.

    Args:
        batch: Items to process, in client order.
        process_item: Called with (index, item); returns the item's result.
        fail_item: Called with (index, item, error) for items that are not
            started after cancellation or that raise unexpectedly.
        cancel_event: When set, remaining items are not started.
        max_workers: Ignored; accepted so strategies are interchangeable.

    Returns:
        One result per item, in input order.
    """
    results: List[R] = []

    for index, item in enumerate(batch):
        if cancel_event is not None and cancel_event.is_set():
            results.append(
                fail_item(index, item, BatchCancelledError("Batch cancelled before file started"))
            )
            continue
        try:
            results.append(process_item(index, item))
        except Exception as e:
            results.append(fail_item(index, item, e))

    return results
