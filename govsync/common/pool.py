import asyncio
from typing import Awaitable, Callable, Iterator, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Split a sequence into consecutive batches of at most `size` items."""
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def map_limit(items: Sequence[T], limit: int, mapper: Callable[[T], Awaitable[R]]) -> List[R]:
    """Run `mapper` over `items` with at most `limit` calls in flight.

    Results keep the order of `items`. Mappers are expected to handle
    their own unit failures; the first exception that escapes one cancels
    the remaining calls and is re-raised as-is.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> R:
        async with semaphore:
            return await mapper(item)

    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(run(item)) for item in items]
    except ExceptionGroup as e:
        raise e.exceptions[0]
    return [task.result() for task in tasks]
