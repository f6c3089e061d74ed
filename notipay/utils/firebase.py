import asyncio
from functools import partial

from google.api_core import exceptions as gcp_exceptions

from notipay.core.errors import PersistenceError


async def firestore_run(fn, *args, **kwargs):
    """
    Run blocking Firestore SDK calls safely in async code.
    SDK and transport failures surface as PersistenceError.
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(
            None,
            partial(fn, *args, **kwargs)
        )
    except (gcp_exceptions.GoogleAPIError, TimeoutError) as e:
        raise PersistenceError(f"Firestore call failed: {e}") from e
