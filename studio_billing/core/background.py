"""
Blocking jobs from async code.

Billing runs, reminder sweeps and overdue sweeps are synchronous database
work. The scheduler loop and the billing router hand them to run_blocking(),
which runs them on a worker thread and logs how long each took, so a job
creeping up on its time limit shows in the logs before it starts failing.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fraction of the limit after which a finished job is logged as slow
SLOW_JOB_RATIO = 0.8


async def run_blocking(
    job: Callable[..., T],
    *args: Any,
    label: Optional[str] = None,
    timeout: float = 300,
    **kwargs: Any,
) -> T:
    """
    Await ``job(*args, **kwargs)`` run on a worker thread.

    Raises:
        TimeoutError: the job did not finish within ``timeout`` seconds.
            Its thread is not interrupted; each billing cycle commits on its
            own, so work finished before the limit stays committed.
    """
    label = label or getattr(job, "__name__", repr(job))
    started = time.perf_counter()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(job, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Job %s exceeded its %ss limit", label, timeout)
        raise TimeoutError(f"{label} did not finish within {timeout}s") from None

    elapsed = time.perf_counter() - started
    if elapsed > timeout * SLOW_JOB_RATIO:
        logger.warning(
            "Job %s took %.1fs of its %ss limit", label, elapsed, timeout,
            extra={"job": label, "duration_ms": round(elapsed * 1000)},
        )
    else:
        logger.info("Job %s finished", label, extra={"job": label, "duration_ms": round(elapsed * 1000)})
    return result
