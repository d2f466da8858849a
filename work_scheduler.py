#!/usr/bin/env python3
"""
Bounded work scheduler for independent fetch/parse items.

Workers receive only the item and a read-only session mapping, never the
caller's live state, so the same worker function runs unchanged in a
sequential loop or on a thread pool.
"""

import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from history_source import ProvenanceError

logger = logging.getLogger(__name__)

_PENDING = object()


@dataclass(frozen=True)
class ItemFailure:
    index: int
    message: str


class BatchExecutionError(ProvenanceError):
    """One or more work items failed; carries every failure"""

    def __init__(self, failures: List[ItemFailure], total: int):
        self.failures = sorted(failures, key=lambda f: f.index)
        self.total = total
        details = "; ".join(f"item {f.index}: {f.message}" for f in self.failures)
        super().__init__(f"{len(self.failures)} of {total} work items failed: {details}")


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def run_bounded(
    items: Sequence[Any],
    worker: Callable[[Any, Mapping[str, Any]], Any],
    max_parallel: int = 1,
    session: Optional[Dict[str, Any]] = None,
    on_done: Optional[Callable[[int], None]] = None,
) -> List[Any]:
    """
    Run worker(item, session) over items with at most max_parallel in flight.

    Args:
        items: Independent work items
        worker: Plain function of (item, session)
        max_parallel: Concurrency bound; <= 1 runs sequentially in-thread
        session: Read-only run variables handed to every worker call
        on_done: Called with the item index as each item finishes

    Returns:
        Results in input order

    Raises:
        BatchExecutionError: after all items ran, if any of them failed
    """
    frozen = MappingProxyType(dict(session or {}))
    results: List[Any] = [_PENDING] * len(items)
    failures: List[ItemFailure] = []

    if max_parallel <= 1 or len(items) <= 1:
        for index, item in enumerate(items):
            try:
                results[index] = worker(item, frozen)
            except Exception as e:
                logger.debug("Item %d failed: %s", index, e)
                failures.append(ItemFailure(index, _describe(e)))
            if on_done:
                on_done(index)
    else:
        with ThreadPoolExecutor(max_workers=max_parallel) as executor:
            in_flight = {}
            next_index = 0

            def submit_next():
                nonlocal next_index
                future = executor.submit(worker, items[next_index], frozen)
                in_flight[future] = next_index
                next_index += 1

            while next_index < len(items) and len(in_flight) < max_parallel:
                submit_next()

            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        logger.debug("Item %d failed: %s", index, e)
                        failures.append(ItemFailure(index, _describe(e)))
                    if on_done:
                        on_done(index)
                    if next_index < len(items):
                        submit_next()

    if failures:
        raise BatchExecutionError(failures, len(items))

    missing = [i for i, r in enumerate(results) if r is _PENDING]
    if missing:
        raise BatchExecutionError(
            [ItemFailure(i, "worker never reported a result") for i in missing],
            len(items),
        )
    return results
