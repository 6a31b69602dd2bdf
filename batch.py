"""
Batch Executor.

Runs N independent operations with at most K in flight, waits for all of
them, and returns one outcome per item in input order:

    result = await run_batch(paths, lambda p: bridge.open(p))
    result.success_count + result.failure_count == len(paths)

A failing item never cancels or delays its siblings; its exception is
captured into that item's outcome.  There is no retry and no partial
result; ``run_batch`` returns only after every item has finished.
"""

import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import anyio
from pydantic import BaseModel

from errors import AffinityMCPError

log = logging.getLogger("affinity_mcp.batch")

# Maximum automation calls a single batch may have in flight
BATCH_CONCURRENCY = 16

T = TypeVar("T")


class ItemOutcome(BaseModel):
    index: int
    success: bool
    value: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class BatchResult(BaseModel):
    success_count: int
    failure_count: int
    results: list[ItemOutcome]


async def _attempt(index: int, item: Any, op: Callable[[Any], Awaitable[Any]]) -> ItemOutcome:
    try:
        value = await op(item)
    except AffinityMCPError as e:
        log.info("Batch item %d failed: %s", index, e.message)
        return ItemOutcome(index=index, success=False, error=e.to_dict())
    except Exception as e:
        log.exception("Batch item %d raised unexpectedly", index)
        return ItemOutcome(
            index=index,
            success=False,
            error={"type": "InternalError", "message": str(e) or type(e).__name__},
        )
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return ItemOutcome(index=index, success=True, value=value)


async def run_batch(
    items: Sequence[T],
    op: Callable[[T], Awaitable[Any]],
    limit: int = BATCH_CONCURRENCY,
) -> BatchResult:
    """Run ``op`` over ``items`` with at most ``limit`` calls in flight.

    Args:
        items: Independent work items.  Duplicates are processed separately.
        op: Async callable producing a result model (or dict) per item, or
            raising.  Called exactly once per item.
        limit: Concurrency bound (the admission gate size).

    Returns:
        BatchResult whose ``results`` are ordered like ``items``.
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    if not items:
        return BatchResult(success_count=0, failure_count=0, results=[])

    outcomes: list[ItemOutcome | None] = [None] * len(items)
    gate = anyio.Semaphore(min(limit, len(items)))

    async def _run(index: int, item: T) -> None:
        async with gate:
            outcomes[index] = await _attempt(index, item, op)

    log.debug("Batch of %d items, concurrency %d", len(items), min(limit, len(items)))
    async with anyio.create_task_group() as tg:
        for index, item in enumerate(items):
            tg.start_soon(_run, index, item)

    results = [outcome for outcome in outcomes if outcome is not None]
    success_count = sum(1 for outcome in results if outcome.success)
    log.info(
        "Batch finished: %d succeeded, %d failed",
        success_count,
        len(results) - success_count,
    )
    return BatchResult(
        success_count=success_count,
        failure_count=len(results) - success_count,
        results=results,
    )
