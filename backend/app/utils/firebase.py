import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial

# Store calls get their own pool
_store_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="malipo-store")


async def firestore_run(fn, *args, **kwargs):
    """
    Run a blocking Firestore SDK call without blocking the event loop.
    Whatever `fn` raises is re-raised in the awaiting coroutine.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_store_executor, partial(fn, *args, **kwargs))
