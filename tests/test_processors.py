"""Tests for processor modules."""

import threading
import time

import pytest

from product_images.core.exceptions import BatchCancelledError
from product_images.processors import multithread_process_batch, serial_process_batch

PROCESSORS = [serial_process_batch, multithread_process_batch]


def fail_item(index, item, error):
    return ("failed", index, type(error).__name__)


@pytest.mark.parametrize("process_batch", PROCESSORS)
def test_results_keep_input_order(process_batch):
    """Test that results come back in input order even when completion order differs."""
    items = [0.03, 0.0, 0.02, 0.01]

    def process_item(index, delay):
        time.sleep(delay)
        return ("ok", index)

    results = process_batch(items, process_item, fail_item, max_workers=4)

    assert results == [("ok", 0), ("ok", 1), ("ok", 2), ("ok", 3)]


@pytest.mark.parametrize("process_batch", PROCESSORS)
def test_unexpected_error_goes_to_fail_item(process_batch):
    """Test that a crashing item does not stop its siblings."""

    def process_item(index, item):
        if item == "boom":
            raise RuntimeError("boom")
        return ("ok", index)

    results = process_batch(["a", "boom", "c"], process_item, fail_item)

    assert results == [("ok", 0), ("failed", 1, "RuntimeError"), ("ok", 2)]


@pytest.mark.parametrize("process_batch", PROCESSORS)
def test_cancelled_batch_starts_nothing(process_batch):
    cancel = threading.Event()
    cancel.set()
    started = []

    def process_item(index, item):
        started.append(index)
        return ("ok", index)

    results = process_batch(["a", "b"], process_item, fail_item, cancel_event=cancel)

    assert started == []
    assert results == [
        ("failed", 0, BatchCancelledError.__name__),
        ("failed", 1, BatchCancelledError.__name__),
    ]


def test_serial_cancel_mid_batch():
    """Test that files after the cancellation point are not started."""
    cancel = threading.Event()

    def process_item(index, item):
        if index == 1:
            cancel.set()
        return ("ok", index)

    results = serial_process_batch(["a", "b", "c"], process_item, fail_item, cancel_event=cancel)

    assert results == [("ok", 0), ("ok", 1), ("failed", 2, "BatchCancelledError")]


def test_multithread_respects_worker_limit():
    active = []
    peak = []
    lock = threading.Lock()

    def process_item(index, item):
        with lock:
            active.append(index)
            peak.append(len(active))
        time.sleep(0.02)
        with lock:
            active.remove(index)
        return index

    results = multithread_process_batch(list(range(6)), process_item, fail_item, max_workers=2)

    assert results == list(range(6))
    assert max(peak) <= 2


def test_multithread_empty_batch():
    assert multithread_process_batch([], lambda i, x: x, fail_item) == []
