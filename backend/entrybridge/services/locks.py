import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, TypeVar

from ..errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FifoLock:
    """
    Async mutex that admits waiters strictly in arrival order.

    A waiter that stops waiting (timeout or cancellation) leaves the queue
    without disturbing anyone queued behind it.
    """

    def __init__(self):
        self._held = False
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def locked(self) -> bool:
        return self._held

    @property
    def idle(self) -> bool:
        return not self._held and not self._waiters

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the lock.

        Args:
            timeout: Seconds to wait before giving up with asyncio.TimeoutError;
                None waits forever.
        """
        if not self._held and not self._waiters:
            self._held = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed to us as the wait ended; pass it on.
                self.release()
            else:
                self._discard(waiter)
            raise

    def release(self) -> None:
        if not self._held:
            raise RuntimeError("FifoLock.release() called while unlocked")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand over directly; the lock stays held by the next waiter.
                waiter.set_result(None)
                return
        self._held = False

    def _discard(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    async def __aenter__(self) -> "FifoLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class BudgetLockManager:
    """
    Serializes writes per budget id.

    Each budget gets its own FIFO queue on first use; the queue is dropped as
    soon as it drains so idle budgets hold no state. Different budgets never
    block each other.
    """

    def __init__(self):
        self._locks: Dict[str, FifoLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, budget_id: str) -> bool:
        return budget_id in self._locks

    async def with_budget_lock(
        self,
        budget_id: str,
        timeout_ms: int,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` while holding the write lock for ``budget_id``.

        Raises:
            ConflictError: the lock was not acquired within ``timeout_ms``.
        """
        lock = self._locks.get(budget_id)
        if lock is None:
            lock = self._locks[budget_id] = FifoLock()

        try:
            try:
                await lock.acquire(timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.warning(f"Write lock wait for budget {budget_id} timed out after {timeout_ms}ms")
                raise ConflictError(
                    "Write lock timeout for budget",
                    {"budgetId": budget_id, "timeoutMs": timeout_ms},
                ) from None

            try:
                return await fn()
            finally:
                lock.release()
        finally:
            if lock.idle and self._locks.get(budget_id) is lock:
                del self._locks[budget_id]
