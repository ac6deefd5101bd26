"""Time-boxed cache for the organised Stripe product catalogue."""

from __future__ import annotations

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set, Union

from .catalog import (
    DEFAULT_CACHE_TTL_SECONDS,
    CatalogSnapshot,
    Plan,
    RawPrice,
    RawProduct,
    organize_catalog,
)

logger = logging.getLogger(__name__)

RefreshListener = Callable[[CatalogSnapshot], Union[None, Awaitable[None]]]


class CatalogGateway(Protocol):
    async def list_active_products(self) -> List[RawProduct]:
        ...

    async def list_active_prices(self) -> List[RawPrice]:
        ...


class CatalogCache:
    """Holds the current :class:`CatalogSnapshot` and decides when to refresh it.

    Readers always receive a complete snapshot: a refresh builds a new snapshot
    and swaps the reference in one assignment. Callers that observe a stale
    snapshot share a single in-flight refresh; a forced refresh always performs
    its own fetch. Each refresh carries a generation number and is only
    published if no newer refresh has been published before it, so a slow
    fetch can never replace fresher data. Listeners are notified one snapshot
    at a time, and a snapshot superseded while waiting is not delivered.
    """

    def __init__(
        self,
        gateway: CatalogGateway,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot = CatalogSnapshot.empty(ttl_seconds)
        self._inflight: Optional[asyncio.Task[CatalogSnapshot]] = None
        self._started_generation = 0
        self._published_generation = 0
        self._listeners: Set[RefreshListener] = set()
        self._dispatch_lock: Optional[asyncio.Lock] = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    @property
    def snapshot(self) -> CatalogSnapshot:
        """Current snapshot without triggering a refresh."""

        return self._snapshot

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def is_stale(self) -> bool:
        return self._snapshot.is_stale(self._clock())

    def add_refresh_listener(self, callback: RefreshListener) -> Callable[[], None]:
        """Register a callback invoked with every newly published snapshot."""

        self._listeners.add(callback)

        def remove() -> None:
            self._listeners.discard(callback)

        return remove

    async def get(self, force_refresh: bool = False) -> CatalogSnapshot:
        """Return the current snapshot, refreshing first when forced or stale."""

        if not force_refresh and not self.is_stale():
            return self._snapshot

        task = self._inflight
        if force_refresh or task is None:
            task = self._start_refresh()

        # shielded so one cancelled caller does not abort the shared refresh
        return await asyncio.shield(task)

    async def refresh(self) -> CatalogSnapshot:
        return await self.get(force_refresh=True)

    async def validate_price(self, plan_id: str, billing_cycle: str) -> Optional[str]:
        """Return the Stripe price id for a plan/billing cycle pair, or None."""

        snapshot = await self.get()
        plan_prices = snapshot.prices.get(plan_id)
        if not plan_prices:
            return None
        variant = plan_prices.get(billing_cycle)
        if variant is None:
            return None
        return variant.price_id

    async def find_plan(self, plan_id: str) -> Optional[Plan]:
        snapshot = await self.get()
        for plan in snapshot.plans:
            if plan.plan_id == plan_id:
                return plan
        return None

    def _start_refresh(self) -> "asyncio.Task[CatalogSnapshot]":
        self._started_generation += 1
        generation = self._started_generation
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._refresh(generation), name=f"catalog-refresh-{generation}")
        task.add_done_callback(self._on_refresh_done)
        self._inflight = task
        return task

    def _on_refresh_done(self, task: "asyncio.Task[CatalogSnapshot]") -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # already logged by _refresh; retrieve it so asyncio does not warn
            task.exception()

    async def _refresh(self, generation: int) -> CatalogSnapshot:
        try:
            products = await self._gateway.list_active_products()
            prices = await self._gateway.list_active_prices()
            plans, lookup = organize_catalog(products, prices)
        except Exception:
            logger.exception("Catalog refresh %s failed; keeping previous snapshot", generation)
            raise

        snapshot = CatalogSnapshot(
            plans=tuple(plans),
            prices=MappingProxyType(dict(lookup)),
            created_at=self._clock(),
            ttl_seconds=self._ttl_seconds,
        )

        if generation <= self._published_generation:
            logger.info(
                "Discarding catalog refresh %s; refresh %s was already published",
                generation,
                self._published_generation,
            )
            return self._snapshot

        self._snapshot = snapshot
        self._published_generation = generation
        logger.info(
            "Cached %s products with %s price variations",
            len(snapshot.plans),
            len(snapshot.prices),
        )
        await self._dispatch(generation, snapshot)
        return snapshot

    async def _dispatch(self, generation: int, snapshot: CatalogSnapshot) -> None:
        """Notify listeners, one published snapshot at a time and in order."""

        if not self._listeners:
            return
        if self._dispatch_lock is None:
            self._dispatch_lock = asyncio.Lock()
        async with self._dispatch_lock:
            if generation < self._published_generation:
                logger.info(
                    "Skipping listeners for catalog refresh %s; refresh %s is newer",
                    generation,
                    self._published_generation,
                )
                return
            await self._notify(snapshot)

    async def _notify(self, snapshot: CatalogSnapshot) -> None:
        for callback in list(self._listeners):
            try:
                result: Any = callback(snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Catalog refresh listener failed")
