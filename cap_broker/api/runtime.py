"""Event-loop runtime shared by the Flask app and background jobs."""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Optional, Set

from cap_broker.clients.upstream_client import UpstreamClient
from cap_broker.config import Config, config as default_config
from cap_broker.logging_config import correlation_id_var
from cap_broker.monitoring.health_checks import (
    HealthCheckManager, StoreHealthCheck, SystemHealthSummary, UpstreamHealthCheck
)
from cap_broker.monitoring.metrics import MetricsCollector, get_metrics_collector
from cap_broker.services.jobs import JobScheduler
from cap_broker.services.provisioning import BrokerService
from cap_broker.storage.base import StateStore
from cap_broker.storage.factory import StorageFactory

logger = logging.getLogger(__name__)


def _log_abandoned_result(future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning(f"Background completion of a timed-out request failed: {error}")
    else:
        logger.info("Timed-out request completed in the background")


class BrokerRuntime:
    """Owns one event loop on a daemon thread and the objects bound to it.

    Flask worker threads hand engine coroutines to :meth:`run`; detached jobs
    are tasks on the same loop, so they share the store and upstream client
    with the request path and keep running after the request returns.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[StateStore] = None,
        upstream: Optional[UpstreamClient] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or default_config
        self.metrics = metrics or get_metrics_collector()
        self.store = store
        self.upstream = upstream
        self.scheduler: Optional[JobScheduler] = None
        self.service: Optional[BrokerService] = None
        self.health: Optional[HealthCheckManager] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = False
        self._requests: Set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> 'BrokerRuntime':
        """Start the loop thread and build the engine on it."""
        if self._started:
            return self

        self._loop = asyncio.new_event_loop()
        ready = threading.Event()

        def run_loop():
            asyncio.set_event_loop(self._loop)
            self._loop.call_soon(ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(target=run_loop, name="broker-event-loop", daemon=True)
        self._thread.start()
        ready.wait()

        try:
            asyncio.run_coroutine_threadsafe(self._bootstrap(), self._loop).result()
        except Exception:
            self._stop_loop()
            raise

        self._started = True
        logger.info(
            f"Broker runtime started (store={type(self.store).__name__}, "
            f"async={self.config.broker.enable_async})"
        )
        return self

    async def _bootstrap(self) -> None:
        if self.store is None:
            self.store = StorageFactory.create_store(self.config)
        await self.store.initialize()

        if self.upstream is None:
            self.upstream = UpstreamClient.from_config(self.config.upstream, metrics=self.metrics)

        self.scheduler = JobScheduler()
        self.service = BrokerService(
            self.store, self.upstream, self.scheduler, self.config.broker, metrics=self.metrics
        )

        self.health = HealthCheckManager()
        self.health.register_health_check(StoreHealthCheck(self.store))
        self.health.register_health_check(
            UpstreamHealthCheck(self.upstream, timeout_seconds=self.config.upstream.timeout)
        )

    def run(self, coro: Awaitable, timeout: Optional[float] = None,
            correlation_id: Optional[str] = None) -> Any:
        """Run ``coro`` on the runtime loop and wait for its result.

        The wait is bounded by ``timeout`` (default ``api.request_timeout``);
        when it expires ``concurrent.futures.TimeoutError`` is raised but the
        coroutine is left running, so upstream calls and their compensation
        finish and the outcome is recorded in the store.
        """
        if not self._started:
            coro.close()
            raise RuntimeError("Broker runtime is not started")

        async def with_context():
            correlation_id_var.set(correlation_id)
            task = asyncio.current_task()
            self._requests.add(task)
            try:
                return await coro
            finally:
                self._requests.discard(task)

        future = asyncio.run_coroutine_threadsafe(with_context(), self._loop)
        try:
            return future.result(timeout if timeout is not None else self.config.api.request_timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Request outlived its wait limit; the operation continues in the background")
            future.add_done_callback(_log_abandoned_result)
            raise

    @property
    def inflight_requests(self) -> int:
        return len(self._requests)

    async def check_health(self) -> SystemHealthSummary:
        return await self.health.run_all_health_checks()

    async def _shutdown(self, drain_timeout: Optional[float]) -> None:
        if self._requests:
            _, pending = await asyncio.wait(set(self._requests), timeout=drain_timeout)
            if pending:
                logger.warning(f"{len(pending)} requests still running at shutdown")
        if self.scheduler is not None:
            await self.scheduler.drain(timeout=drain_timeout)
        if self.upstream is not None:
            await self.upstream.close()
        if self.store is not None:
            await self.store.close()

    def stop(self, drain_timeout: Optional[float] = 30.0) -> None:
        """Wait for outstanding jobs, release connections and stop the loop."""
        if not self._started:
            return
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(drain_timeout), self._loop).result()
        finally:
            self._started = False
            self._stop_loop()
            logger.info("Broker runtime stopped")

    def _stop_loop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._loop.close()

    def __enter__(self) -> 'BrokerRuntime':
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
