"""Async utilities for bridging blocking sync calls to async MCP handlers."""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Sync sessions are long, blocking, single-threaded runs; MCP tool
    handlers hand them off with this helper.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        # In MCP tool handler:
        report = await run_sync(orchestrator.run, "push")
    """
    return await asyncio.to_thread(func, *args, **kwargs)
