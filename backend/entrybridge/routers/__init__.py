from .budgets import router as budgets_router
from .entries import router as entries_router

__all__ = ["budgets_router", "entries_router"]
