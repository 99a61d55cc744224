"""
Async helpers for sequencing, fan-out and failover.

These three primitives are the only places where the aggregator composes
coroutines: calculators fan out with ``join_all``, failover wrappers walk their
delegates with ``first_success``.
"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar, Union

from .logging_config import create_logger

logger = create_logger(__name__)

T = TypeVar("T")
U = TypeVar("U")


async def sequence(items: Iterable[T], op: Callable[[T], Awaitable[U]]) -> List[U]:
    """
    Run ``op`` once per item, each call waiting for the previous one to finish.

    Args:
        items: Items to process, in order
        op: Coroutine function applied to each item

    Returns:
        The results, in input order

    Raises:
        Whatever ``op`` raises; processing stops at the first failure
    """
    results: List[U] = []
    for item in items:
        results.append(await op(item))
    return results


async def join_all(
    items: Iterable[T],
    op: Callable[[T], Awaitable[U]]
) -> List[Union[U, BaseException]]:
    """
    Run ``op`` concurrently for every item and wait for all of them.

    The returned list has one slot per item, in input order. A slot holds either
    the value ``op`` returned or the exception it raised; the call itself never
    fails because one item failed.
    """
    items = list(items)
    if not items:
        return []
    return list(await asyncio.gather(*(op(item) for item in items), return_exceptions=True))


async def first_success(
    items: Iterable[T],
    op: Callable[[T], Awaitable[Optional[U]]]
) -> Optional[U]:
    """
    Try ``op`` against each item in order until one produces a result.

    ``None`` means "no result": when ``op`` returns ``None`` or raises, the
    error is swallowed and the next item is tried. Returns the first result, or
    ``None`` when every item is exhausted (immediately, for no items).
    """
    for item in items:
        try:
            result = await op(item)
        except Exception as e:
            logger.debug("Candidate failed, trying next", extra={
                "candidate": getattr(item, "name", repr(item)),
                "error": str(e)
            })
            continue
        if result is not None:
            return result
    return None
