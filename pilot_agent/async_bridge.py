"""Sync-to-async bridge for CLI commands.

Every network call in pilot_agent is a coroutine; the argparse handlers in
pilot_cli are plain functions and enter the event loop through here.
"""

import asyncio
import concurrent.futures
from typing import Optional


def run_async(coro, *, timeout: Optional[float] = None):
    """Run a coroutine to completion from synchronous code.

    When the calling thread already runs an event loop (a notebook, an
    embedding GUI) the coroutine gets a private loop on a worker thread so
    asyncio.run() does not collide with the running one.
    """
    if timeout is not None:
        coro = asyncio.wait_for(coro, timeout)

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="pilot-async") as pool:
        return pool.submit(asyncio.run, coro).result()
