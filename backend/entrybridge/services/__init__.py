from .actual_client import ActualHttpClient
from .gateway import ActualGateway, BudgetSession
from .budgets import BudgetService
from .locks import BudgetLockManager, FifoLock
from .idempotency import IdempotencyCache
from .entries import EntryService
from .guards import ApiKeyGuard, RequestRateLimiter

__all__ = [
    "ActualHttpClient",
    "ActualGateway",
    "BudgetSession",
    "BudgetService",
    "BudgetLockManager",
    "FifoLock",
    "IdempotencyCache",
    "EntryService",
    "ApiKeyGuard",
    "RequestRateLimiter"
]
