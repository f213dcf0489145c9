from typing import Optional

from fastapi import APIRouter, Depends

from ..dependencies import (
    enforce_rate_limit,
    get_entry_service,
    get_idempotency_key,
    get_list_entries_query,
    require_api_key,
)
from ..schemas.entries import CreateEntryRequest, EntryItem, EntryPage, ListEntriesQuery
from ..services.entries import EntryService

router = APIRouter(
    prefix="/budgets/{budget_id}/entries",
    tags=["Entries"],
    dependencies=[Depends(require_api_key), Depends(enforce_rate_limit)],
)


@router.get("", response_model=EntryPage, response_model_exclude_none=True)
async def list_entries(
    budget_id: str,
    query: ListEntriesQuery = Depends(get_list_entries_query),
    entry_service: EntryService = Depends(get_entry_service),
):
    """List entries of a budget between two dates."""
    return await entry_service.list_entries(budget_id, query)


@router.post("", response_model=EntryItem, response_model_exclude_none=True)
async def create_entry(
    budget_id: str,
    entry: CreateEntryRequest,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    entry_service: EntryService = Depends(get_entry_service),
):
    """
    Create an entry.

    Send an Idempotency-Key header to make retries safe: repeating a request
    with the same key and body returns the original entry.
    """
    return await entry_service.create_entry(budget_id, entry, idempotency_key)
