"""Bounded-retry polling primitive used by the OCR and points stages."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..domain.errors import PollCancelled, PollTimeout
from ..logging import get_logger

LOG = get_logger("polling")

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollPolicy:
    interval: float
    timeout: float


OCR_POLICY = PollPolicy(interval=1.0, timeout=120.0)
POINTS_POLICY = PollPolicy(interval=5.0, timeout=120.0)


def _always_live() -> bool:
    return True


async def poll_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    policy: PollPolicy,
    *,
    label: str = "poll",
    is_live: Callable[[], bool] = _always_live,
    fatal: Tuple[Type[BaseException], ...] = (),
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Invoke ``probe`` every ``policy.interval`` seconds until it returns non-None.

    - Exceptions listed in ``fatal`` stop the loop and propagate.
    - Any other exception is logged as transient and the loop carries on.
    - ``PollTimeout`` is raised once ``policy.timeout`` seconds have elapsed
      since the call, regardless of how long a single probe takes.
    - ``PollCancelled`` is raised as soon as ``is_live()`` turns false, both
      before a probe is sent and after its result arrives.
    """
    started = clock()
    deadline = started + policy.timeout
    attempt = 0
    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            break
        await sleep(min(policy.interval, remaining))
        remaining = deadline - clock()
        if remaining <= 0:
            break
        if not is_live():
            raise PollCancelled(f"{label}: superseded after {attempt} attempt(s)")

        attempt += 1
        try:
            result = await asyncio.wait_for(probe(), timeout=remaining)
        except asyncio.TimeoutError:
            break
        except fatal:
            raise
        except Exception as exc:
            LOG.warning(f"{label}: attempt {attempt} failed ({exc}); retrying")
            continue

        if not is_live():
            raise PollCancelled(f"{label}: result discarded, loop no longer live")
        if result is not None:
            LOG.debug(f"{label}: resolved after {attempt} attempt(s)")
            return result
        LOG.debug(f"{label}: attempt {attempt} not ready yet")

    raise PollTimeout(f"{label}: no result after {policy.timeout:.0f}s ({attempt} attempt(s))")
