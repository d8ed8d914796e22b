# storage/order_store.py
# ============================================================================
# DUCK STOREFRONT v1.0 — ORDER STORE
# ============================================================================
# Keyed storage for Order records. Owns no business rules beyond id
# uniqueness; the lifecycle engine decides what gets written.
#
# CONCURRENCY:
# - one asyncio.Lock per order id, so updates to one order are serialized
# - different ids never wait on each other
# ============================================================================

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Union

import structlog

from pipeline.errors import DuplicateId, OrderNotFound, ValidationError
from schemas.order_definitions import Order
from storage.json_store import JsonTable, TableName

OrderMutator = Callable[[Order], Union[Order, Awaitable[Order]]]

SORT_FIELDS = ("created_at", "updated_at", "amount")


class IOrderStore(ABC):
    """Abstract order store interface"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Order:
        pass

    @abstractmethod
    async def update(self, order_id: str, mutator: OrderMutator) -> Order:
        pass

    @abstractmethod
    async def list(
        self,
        status: Optional[str] = None,
        sort: str = "-created_at",
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        pass

    async def exists(self, order_id: str) -> bool:
        try:
            await self.get(order_id)
        except OrderNotFound:
            return False
        return True

    async def load(self) -> None:
        pass

    async def close(self) -> None:
        pass


class JsonOrderStore(IOrderStore):
    """Order store on top of a JsonTable (file-backed when the table has a path)."""

    def __init__(self, table: Optional[JsonTable] = None):
        self._table = table if table is not None else JsonTable()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._locks_mutex = asyncio.Lock()
        self._create_lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(
            component="order_store", durable=self._table.durable
        )

    async def load(self) -> None:
        count = await self._table.load()
        self._logger.info("order_store_ready", orders=count)

    async def close(self) -> None:
        await self._table.flush()

    async def _get_lock(self, order_id: str) -> asyncio.Lock:
        """
        Get or create the lock for one existing order id.

        Every successful call must be paired with _release_lock(); the lock
        is dropped once nobody holds or waits on it.
        """
        async with self._locks_mutex:
            if not self._table.contains(order_id):
                raise OrderNotFound(order_id)
            if order_id not in self._locks:
                self._locks[order_id] = asyncio.Lock()
            self._lock_users[order_id] += 1
            return self._locks[order_id]

    def _release_lock(self, order_id: str) -> None:
        self._lock_users[order_id] -= 1
        if self._lock_users[order_id] <= 0:
            del self._lock_users[order_id]
            self._locks.pop(order_id, None)

    @property
    def tracked_locks(self) -> int:
        return len(self._locks)

    async def create(self, order: Order) -> Order:
        async with self._create_lock:
            if self._table.contains(order.id):
                raise DuplicateId(order.id)
            await self._table.put(order.id, order.model_dump(mode="json"))
        self._logger.debug("order_created", order_id=order.id)
        return order

    async def get(self, order_id: str) -> Order:
        doc = self._table.get(order_id)
        if doc is None:
            raise OrderNotFound(order_id)
        return Order.model_validate(doc)

    async def update(self, order_id: str, mutator: OrderMutator) -> Order:
        """
        Apply ``mutator`` to the stored order while holding its lock.

        The mutator receives the current order and returns the new one. If it
        raises, nothing is written. ``id`` and ``created_at`` are pinned to
        their stored values whatever the mutator returns.
        """
        lock = await self._get_lock(order_id)
        try:
            async with lock:
                current = await self.get(order_id)
                updated = mutator(current)
                if inspect.isawaitable(updated):
                    updated = await updated
                if updated is current:
                    return current
                updated = updated.model_copy(update={
                    "id": current.id,
                    "created_at": current.created_at,
                })
                await self._table.put(order_id, updated.model_dump(mode="json"))
                return updated
        finally:
            self._release_lock(order_id)

    async def list(
        self,
        status: Optional[str] = None,
        sort: str = "-created_at",
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        descending = sort.startswith("-")
        field = sort.lstrip("-+")
        if field not in SORT_FIELDS:
            raise ValidationError(f"Unsupported sort field: {field}")
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative")

        orders = [Order.model_validate(doc) for doc in self._table.values()]
        if status:
            orders = [o for o in orders if o.matches_status(status)]
        orders.sort(key=lambda o: getattr(o, field), reverse=descending)
        return orders[offset:offset + limit]


class InMemoryOrderStore(JsonOrderStore):
    """Process-lifetime order store"""

    def __init__(self):
        super().__init__(JsonTable())


def create_order_store(data_dir: Optional[str] = None) -> IOrderStore:
    if data_dir:
        return JsonOrderStore(JsonTable.for_table(TableName.ORDERS, data_dir))
    return InMemoryOrderStore()
