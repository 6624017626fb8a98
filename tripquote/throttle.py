"""Rate-limited, retrying dispatcher for outbound provider calls.

Each provider (geocoder, router, ...) gets its own FIFO queue and minimum gap
between dispatches. Calls to different providers never wait on each other.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from openrouteservice import exceptions as ors_exceptions

from tripquote.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

GEOCODER = "geocoder"
ROUTER = "router"

GEOCODE_MIN_INTERVAL = float(os.environ.get("TRIPQUOTE_GEOCODE_INTERVAL", "1.0"))
ROUTE_MIN_INTERVAL = float(os.environ.get("TRIPQUOTE_ROUTE_INTERVAL", "0.2"))
PROVIDER_TIMEOUT = float(os.environ.get("TRIPQUOTE_PROVIDER_TIMEOUT", "10.0"))


@dataclass(frozen=True)
class ProviderPolicy:
    min_interval: float
    max_retries: int = 2
    backoff_base: float = 0.5
    timeout: Optional[float] = PROVIDER_TIMEOUT


DEFAULT_POLICY = ProviderPolicy(min_interval=1.0)
DEFAULT_POLICIES: Mapping[str, ProviderPolicy] = {
    GEOCODER: ProviderPolicy(min_interval=GEOCODE_MIN_INTERVAL),
    ROUTER: ProviderPolicy(min_interval=ROUTE_MIN_INTERVAL),
}


def is_transient_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying: timeouts, 429, 5xx, network."""

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ors_exceptions.Timeout)):
        return True
    if isinstance(exc, ors_exceptions.ApiError):
        status = getattr(exc, "status", None)
        return isinstance(status, int) and (status == 429 or status >= 500)
    if isinstance(exc, ors_exceptions.HTTPError):
        status = getattr(exc, "status_code", None)
        return isinstance(status, int) and (status == 429 or status >= 500)
    # Covers ConnectionError and the requests transport errors raised by the SDK.
    return isinstance(exc, OSError)


class _ProviderState:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.last_dispatch: Optional[float] = None


class RateLimitedClient:
    """Serialise calls per provider, spaced by the provider's minimum interval.

    ``request_fn`` passed to :meth:`enqueue` is a blocking zero-argument
    callable (the provider SDKs are synchronous); it runs via ``run_blocking``,
    which defaults to :func:`asyncio.to_thread`. ``clock`` and ``sleep`` are
    injectable so tests can drive a virtual clock.
    """

    def __init__(
        self,
        policies: Optional[Mapping[str, ProviderPolicy]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        run_blocking: Callable[[Callable[[], T]], Awaitable[T]] = asyncio.to_thread,
    ) -> None:
        self._policies: Dict[str, ProviderPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._clock = clock
        self._sleep = sleep
        self._run_blocking = run_blocking
        self._states: Dict[str, _ProviderState] = {}

    def policy(self, provider_id: str) -> ProviderPolicy:
        return self._policies.get(provider_id, DEFAULT_POLICY)

    def _state(self, provider_id: str) -> _ProviderState:
        state = self._states.get(provider_id)
        if state is None:
            state = self._states[provider_id] = _ProviderState()
        return state

    async def _wait_for_slot(
        self, provider_id: str, state: _ProviderState, policy: ProviderPolicy
    ) -> None:
        if state.last_dispatch is not None:
            wait = state.last_dispatch + policy.min_interval - self._clock()
            if wait > 0:
                logger.debug("Rate limit for %s: waiting %.3fs", provider_id, wait)
                await self._sleep(wait)
        state.last_dispatch = self._clock()

    async def _dispatch(self, request_fn: Callable[[], T], policy: ProviderPolicy) -> T:
        call = self._run_blocking(request_fn)
        if policy.timeout is None:
            return await call
        return await asyncio.wait_for(call, policy.timeout)

    async def enqueue(self, provider_id: str, request_fn: Callable[[], T]) -> T:
        """Run *request_fn* once its turn and spacing slot for *provider_id* come up.

        Transient failures are retried with exponential backoff; the backoff
        delay counts toward the provider's spacing. When retries run out,
        :class:`ProviderUnavailable` is raised from the last error.
        """
        policy = self.policy(provider_id)
        state = self._state(provider_id)
        async with state.lock:
            attempt = 0
            while True:
                await self._wait_for_slot(provider_id, state, policy)
                try:
                    return await self._dispatch(request_fn, policy)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise
                    if attempt >= policy.max_retries:
                        logger.error(
                            "%s failed after %d attempt(s): %s", provider_id, attempt + 1, exc
                        )
                        raise ProviderUnavailable(provider_id, attempt + 1, exc) from exc
                    delay = policy.backoff_base * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        "%s transient failure (%s), retry %d/%d in %.2fs",
                        provider_id,
                        exc,
                        attempt,
                        policy.max_retries,
                        delay,
                    )
                    await self._sleep(delay)


__all__ = [
    "DEFAULT_POLICIES",
    "DEFAULT_POLICY",
    "GEOCODER",
    "GEOCODE_MIN_INTERVAL",
    "PROVIDER_TIMEOUT",
    "ProviderPolicy",
    "ROUTER",
    "ROUTE_MIN_INTERVAL",
    "RateLimitedClient",
    "is_transient_error",
]
