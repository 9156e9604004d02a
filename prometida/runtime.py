"""Background event loop that owns every ``AppStore``.

Flask handles requests on worker threads; the stores, their realtime listeners
and the async Supabase client all live on one asyncio loop running in a daemon
thread. Views hand coroutines to the loop with ``run`` (wait for the result) or
``dispatch`` (fire and forget). Both go through the loop's FIFO ready queue, so
a ``run`` issued after a ``dispatch`` observes the dispatched operation's
optimistic change.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import Config
from .services.gateway import RemoteGateway
from .services.local_cache import LocalCache
from .services.store import AppStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0

# How often the loop looks for idle stores.
SWEEP_INTERVAL = 5 * 60.0


class StoreRuntime:
    """Per-process registry of stores keyed by the browser session."""

    def __init__(
        self,
        config: Config,
        cache: Optional[LocalCache] = None,
        gateway_factory: Optional[Callable[[], Any]] = None,
        realtime: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._cache = cache
        self._realtime = realtime
        self._clock = clock
        self.idle_timeout = config.store_idle_seconds
        self.gateway_factory: Callable[[], Any] = gateway_factory or (lambda: RemoteGateway(config))
        self._auth_gateway: Optional[Any] = None
        self._stores: Dict[str, AppStore] = {}
        self._last_seen: Dict[str, float] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # --- Loop ------------------------------------------------------------

    def run(self, coro: Awaitable[T], timeout: float = DEFAULT_TIMEOUT) -> T:
        """Execute ``coro`` on the store loop and wait for its result."""

        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        return future.result(timeout)

    def dispatch(self, coro: Awaitable[Any]) -> Future:
        """Schedule ``coro`` on the store loop without waiting."""

        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        future.add_done_callback(self._log_failure)
        return future

    def call(self, fn: Callable[..., T], *args: Any, timeout: float = DEFAULT_TIMEOUT) -> T:
        """Run a plain function on the loop thread, e.g. to read a store."""

        async def invoke() -> T:
            return fn(*args)

        return self.run(invoke(), timeout)

    def shutdown(self) -> None:
        with self._lock:
            loop, self._loop = self._loop, None
            thread, self._thread = self._thread, None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5)
        self._stores.clear()
        self._last_seen.clear()

    # --- Stores ----------------------------------------------------------

    def auth_gateway(self) -> Any:
        """Gateway shared by auth calls that have no store, such as sign-up."""

        with self._lock:
            if self._auth_gateway is None:
                self._auth_gateway = self.gateway_factory()
            return self._auth_gateway

    def store_for(self, key: Optional[str]) -> Optional[AppStore]:
        if not key:
            return None
        with self._lock:
            store = self._stores.get(key)
            if store is not None:
                self._last_seen[key] = self._clock()
            return store

    def open_store(self, key: str) -> AppStore:
        with self._lock:
            store = self._stores.get(key)
            if store is None:
                store = AppStore(self.gateway_factory(), self._cache, self._config, realtime=self._realtime)
                self._stores[key] = store
                logger.info("runtime.store_opened key=%s", key[:8])
            self._last_seen[key] = self._clock()
            return store

    def close_store(self, key: Optional[str]) -> Optional[AppStore]:
        if not key:
            return None
        with self._lock:
            self._last_seen.pop(key, None)
            return self._stores.pop(key, None)

    def evict_idle(self) -> List[Future]:
        """Close stores nobody has touched for ``idle_timeout`` seconds.

        Evicted stores stop their realtime channels but keep the remote
        session, so the browser resumes from its cookie on the next request.
        Returns the futures of the scheduled closes.
        """

        if self.idle_timeout <= 0:
            return []
        cutoff = self._clock() - self.idle_timeout
        with self._lock:
            stale = [key for key, seen in self._last_seen.items() if seen <= cutoff]
            evicted = [(key, self._stores.pop(key, None)) for key in stale]
            for key in stale:
                del self._last_seen[key]

        futures = []
        for key, store in evicted:
            if store is None:
                continue
            logger.info("runtime.store_evicted key=%s", key[:8])
            futures.append(self.dispatch(store.close()))
        return futures

    # --- Private helpers -------------------------------------------------

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._thread is None or not self._thread.is_alive():
                loop = asyncio.new_event_loop()
                thread = threading.Thread(
                    target=self._loop_main, args=(loop,), name="prometida-store-loop", daemon=True
                )
                thread.start()
                self._loop = loop
                self._thread = thread
                loop.call_soon_threadsafe(self._schedule_sweep, loop)
            return self._loop

    def _schedule_sweep(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.call_later(SWEEP_INTERVAL, self._sweep, loop)

    def _sweep(self, loop: asyncio.AbstractEventLoop) -> None:
        if loop is not self._loop:
            return
        try:
            self.evict_idle()
        except RuntimeError:
            logger.warning("runtime.sweep_failed", exc_info=True)
        self._schedule_sweep(loop)

    @staticmethod
    def _loop_main(loop: asyncio.AbstractEventLoop) -> None:  # pragma: no cover - background thread
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("runtime.dispatch_failed: %s", exc, exc_info=exc)
