from typing import Optional
from pydantic import BaseModel


class NamedEntity(BaseModel):
    """An account, category or payee as the Actual client reports it."""
    id: str
    name: str


class UpstreamTransaction(BaseModel):
    id: str
    date: str
    amount: int  # Signed minor units (cents); negative = expense
    account_id: str
    category_id: Optional[str] = None
    payee_id: Optional[str] = None
    notes: Optional[str] = None


class TransactionDraft(BaseModel):
    """Transaction to be created in Actual."""
    account_id: str
    category_id: str
    payee_id: Optional[str] = None
    date: str
    amount: int
    notes: Optional[str] = None
