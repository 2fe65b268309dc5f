"""
Watch Subscription Manager

One shared push connection per watched service name, fanned out to any
number of handles. The connection survives disconnects: it reconnects under
the retry policy's backoff and, on every (re)connection, reconciles against
a fresh fetch so events missed during the gap collapse into a single update
carrying the latest state.

Usage:
    handle = manager.watch("orders")
    async for event in handle:
        if event.kind == WatchEvent.UPDATE:
            route_to(event.record.url)
    ...
    await handle.close()
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import pydantic
import structlog

from discovery_client.exceptions import RegistryTransportError, ServiceNotFoundError
from discovery_client.service_discovery.models import ConnectionStatus, ServiceRecord, WatchEvent
from discovery_client.utils.clock import Clock

logger = structlog.get_logger("watch-manager")

ReconcileFunc = Callable[[str], Awaitable[Sequence[ServiceRecord]]]
UpdateCallback = Callable[[ServiceRecord], None]

_CLOSED = object()


class WatchHandle:
    """
    Caller-side view of a subscription: an async iterator of WatchEvent.

    Iteration ends only when close() is called. After close() returns, no
    further events are delivered; anything still buffered is dropped.
    """

    def __init__(self, subscription: "WatchSubscription"):
        self._subscription = subscription
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._last_seen: Optional[float] = None

    @property
    def service_name(self) -> str:
        return self._subscription.service_name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._closed:
            return ConnectionStatus.CLOSED
        return self._subscription.connection_status

    def _deliver(self, event: WatchEvent) -> None:
        if self._closed:
            return
        if event.kind == WatchEvent.UPDATE:
            if self._last_seen is not None and event.record.updated_at <= self._last_seen:
                return
            self._last_seen = event.record.updated_at
        self._queue.put_nowait(event)

    def _terminate(self) -> None:
        """Stop delivery and wake any pending reader."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "WatchHandle":
        return self

    async def __anext__(self) -> WatchEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is _CLOSED or self._closed:
            raise StopAsyncIteration
        return event

    async def next_event(self, timeout: Optional[float] = None) -> WatchEvent:
        """Wait for the next event; raises StopAsyncIteration once closed."""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def close(self) -> None:
        """Idempotent. Releases the shared connection with the last handle."""
        if self._closed:
            return
        self._terminate()
        await self._subscription.release(self)

    async def __aenter__(self) -> "WatchHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


class WatchSubscription:
    """Reference-counted push connection for one service name"""

    def __init__(self, manager: "WatchSubscriptionManager", service_name: str):
        self.manager = manager
        self.service_name = service_name
        self.last_seen_updated_at: Optional[float] = None
        self.connection_status = ConnectionStatus.CONNECTING
        self.reconnects = 0

        self._handles: List[WatchHandle] = []
        self._latest: Optional[ServiceRecord] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def path(self) -> str:
        return f"/watch/{self.service_name}"

    @property
    def handle_count(self) -> int:
        return len(self._handles)

    def attach(self) -> WatchHandle:
        handle = WatchHandle(self)
        self._handles.append(handle)

        # Late joiners start from the latest known state
        if self._latest is not None:
            handle._deliver(WatchEvent.update(self._latest))

        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"watch:{self.service_name}")
        return handle

    async def release(self, handle: WatchHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)
        if not self._handles:
            await self.close()

    async def close(self) -> None:
        if self.connection_status == ConnectionStatus.CLOSED:
            return
        self.connection_status = ConnectionStatus.CLOSED
        self.manager._forget(self)

        for handle in list(self._handles):
            handle._terminate()
        self._handles.clear()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        logger.info("Watch closed", service=self.service_name)

    def _emit(self, event: WatchEvent) -> None:
        for handle in list(self._handles):
            handle._deliver(event)

    def _offer(self, record: ServiceRecord) -> None:
        """Emit record only if strictly newer than anything seen."""
        if self.last_seen_updated_at is not None and record.updated_at <= self.last_seen_updated_at:
            logger.debug(
                "Dropping stale watch event",
                service=self.service_name,
                updated_at=record.updated_at,
                last_seen=self.last_seen_updated_at
            )
            return

        self.last_seen_updated_at = record.updated_at
        self._latest = record
        if self.manager.on_update is not None:
            self.manager.on_update(record)
        self._emit(WatchEvent.update(record))

    def _offer_payload(self, payload) -> None:
        try:
            record = ServiceRecord.model_validate(payload)
        except pydantic.ValidationError:
            self._emit(WatchEvent.failure(
                RegistryTransportError("Malformed record on watch stream", path=self.path)
            ))
            return

        if record.name != self.service_name:
            logger.debug("Ignoring event for another service", service=self.service_name, got=record.name)
            return
        self._offer(record)

    async def _reconcile(self) -> None:
        try:
            records = await self.manager.reconcile(self.service_name)
        except ServiceNotFoundError:
            # Watching ahead of registration is allowed
            logger.debug("Reconcile found no record yet", service=self.service_name)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Reconcile fetch failed", service=self.service_name, error=str(e))
            self._emit(WatchEvent.failure(e))
            return

        if records:
            self._offer(max(records, key=lambda r: r.updated_at))

    async def _run(self) -> None:
        attempt = 0

        while True:
            try:
                async with self.manager.transport.open_stream(self.path) as stream:
                    self.connection_status = ConnectionStatus.LIVE
                    logger.info("Watch stream live", service=self.service_name)

                    await self._reconcile()
                    async for payload in stream:
                        # Backoff resets only once the stream has delivered
                        attempt = 0
                        self._offer_payload(payload)

                raise RegistryTransportError("Watch stream ended by registry", path=self.path)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt += 1
                self.reconnects += 1
                self.connection_status = ConnectionStatus.RECONNECTING
                self._emit(WatchEvent.failure(e))

                delay = self.manager.retry_policy.compute_delay(attempt)
                logger.warning(
                    "Watch stream lost, reconnecting",
                    service=self.service_name,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(e)
                )
                await self.manager.clock.sleep(delay)


class WatchSubscriptionManager:
    """
    Owns one WatchSubscription per watched name.

    Args:
        transport: Anything with open_stream(path)
        reconcile: Coroutine fetching the current replica set for a name
        retry_policy: Supplies compute_delay() for reconnect backoff
        on_update: Called with every emitted record (the facade feeds the cache)
    """

    def __init__(
        self,
        transport,
        reconcile: ReconcileFunc,
        retry_policy,
        clock: Optional[Clock] = None,
        on_update: Optional[UpdateCallback] = None
    ):
        self.transport = transport
        self.reconcile = reconcile
        self.retry_policy = retry_policy
        self.clock = clock or Clock()
        self.on_update = on_update
        self._subscriptions: Dict[str, WatchSubscription] = {}

    def watch(self, service_name: str) -> WatchHandle:
        subscription = self._subscriptions.get(service_name)
        if subscription is None:
            subscription = WatchSubscription(self, service_name)
            self._subscriptions[service_name] = subscription
            logger.info("Watch opened", service=service_name)
        return subscription.attach()

    def subscription(self, service_name: str) -> Optional[WatchSubscription]:
        return self._subscriptions.get(service_name)

    def _forget(self, subscription: WatchSubscription) -> None:
        if self._subscriptions.get(subscription.service_name) is subscription:
            del self._subscriptions[subscription.service_name]

    async def close_all(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await subscription.close()
