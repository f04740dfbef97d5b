# cv_core/remote.py
from __future__ import annotations

import logging
from typing import Any, Callable

from asgiref.sync import sync_to_async

from .errors import classify

logger = logging.getLogger(__name__)


async def call_remote(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Run a blocking SDK call off the event loop and translate its failure.

    Firestore/Storage/RTDB admin clients are synchronous; this keeps the loop
    (our single UI thread) free while the request is in flight.
    """
    try:
        return await sync_to_async(fn, thread_sensitive=False)(*args, **kwargs)
    except Exception as exc:
        err = classify(exc)
        logger.debug("remote call %s failed: %s (%s)", getattr(fn, "__name__", fn), err, err.code)
        if err is exc:
            raise
        raise err from exc


def stream_all(query) -> list:
    """Materialize a query's documents (runs on a worker thread)."""
    return list(query.stream())
