import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class CollaboratorTimeoutError(Exception):
    pass


async def await_with_timeout(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CollaboratorTimeoutError(f"COLLABORATOR_TIMEOUT:{operation}") from exc


async def run_blocking(
    func: Callable[..., T], *args, timeout: float, operation: str, **kwargs
) -> T:
    """Run a blocking store call on a worker thread, bounded by `timeout` seconds."""
    return await await_with_timeout(
        asyncio.to_thread(func, *args, **kwargs),
        timeout=timeout,
        operation=operation,
    )
