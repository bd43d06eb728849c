"""Multithreaded processor implementation - uses thread pool for parallelism."""

import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, TypeVar

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
    Process a batch using a thread pool.

    Pillow releases the GIL while decoding, resampling and encoding, so
    threads give real parallelism for the per-file work.

    Args:
        batch: Items to process, in client order
        process_item: Called with (index, item) on a worker thread
        fail_item: Called with (index, item, error) for cancelled or crashed items
        cancel_event: When set, items not yet started are failed instead of run
        max_workers: Pool size; defaults to the number of CPUs

    Returns:
        One result per item, in input order
    """
    if not batch:
        return []

    workers = min(max_workers or os.cpu_count() or 1, len(batch))

    def run(index: int, item: T) -> R:
        if cancel_event is not None and cancel_event.is_set():
            return fail_item(
                index, item, BatchCancelledError("Batch cancelled before file started")
            )
        return process_item(index, item)

    results: Dict[int, R] = {}
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload-file") as executor:
        future_to_index = {
            executor.submit(run, index, item): index for index, item in enumerate(batch)
        }

        # Collect results as they complete
        for future in as_completed(future_to_index):
            index = future_to_index[future]
            try:
                results[index] = future.result()
            except Exception as e:
                results[index] = fail_item(index, batch[index], e)

    return [results[index] for index in range(len(batch))]
