from .budgets import BudgetSummary
from .entries import (
    CreateEntryRequest,
    EntryItem,
    EntryPage,
    Flow,
    ListEntriesQuery,
    ListFlow,
)
from .health import HealthStatus
from .upstream import NamedEntity, TransactionDraft, UpstreamTransaction

__all__ = [
    "BudgetSummary",
    "CreateEntryRequest",
    "EntryItem",
    "EntryPage",
    "Flow",
    "ListEntriesQuery",
    "ListFlow",
    "HealthStatus",
    "NamedEntity",
    "TransactionDraft",
    "UpstreamTransaction",
]
