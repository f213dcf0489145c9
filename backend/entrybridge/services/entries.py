import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from ..errors import NotFoundError, describe_error
from ..schemas.entries import (
    CreateEntryRequest,
    EntryItem,
    EntryPage,
    ListEntriesQuery,
    from_signed_amount,
    to_signed_amount,
)
from ..schemas.upstream import NamedEntity, TransactionDraft, UpstreamTransaction
from .budgets import BudgetService
from .gateway import ActualGateway, BudgetSession
from .idempotency import IdempotencyCache
from .locks import BudgetLockManager

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"


def _names_by_id(items: Iterable[NamedEntity]) -> Dict[str, str]:
    return {item.id: item.name for item in items}


def _find_by_name(items: Iterable[NamedEntity], name: str) -> Optional[NamedEntity]:
    return next((item for item in items if item.name == name), None)


def _matches_flow(transaction: UpstreamTransaction, flow: str) -> bool:
    if flow == "expense":
        return transaction.amount < 0
    if flow == "income":
        return transaction.amount >= 0
    return True


class EntryService:
    """Reads and writes ledger entries of one budget at a time."""

    def __init__(
        self,
        gateway: ActualGateway,
        budget_service: BudgetService,
        lock_manager: BudgetLockManager,
        idempotency_cache: IdempotencyCache,
        lock_timeout_ms: int = 5000,
    ):
        self.gateway = gateway
        self.budget_service = budget_service
        self.lock_manager = lock_manager
        self.idempotency_cache = idempotency_cache
        self.lock_timeout_ms = lock_timeout_ms

    async def list_entries(self, budget_id: str, query: ListEntriesQuery) -> EntryPage:
        """
        Entries dated within [from, to], filtered by flow.

        Ordered by date then id. ``total`` counts every match; ``items`` holds
        only the requested page.
        """
        await self.budget_service.assert_budget_accessible(budget_id)

        async def run(session: BudgetSession) -> EntryPage:
            await session.sync()
            accounts, categories, payees, transactions = await asyncio.gather(
                session.get_accounts(),
                session.get_categories(),
                session.get_payees(),
                session.list_transactions(query.from_, query.to),
            )

            account_names = _names_by_id(accounts)
            category_names = _names_by_id(categories)
            payee_names = _names_by_id(payees)

            matching = sorted(
                (
                    t for t in transactions
                    if query.from_ <= t.date <= query.to and _matches_flow(t, query.flow)
                ),
                key=lambda t: (t.date, t.id),
            )
            page = matching[query.offset:query.offset + query.limit]

            items: List[EntryItem] = []
            for t in page:
                amount, flow = from_signed_amount(t.amount)
                items.append(EntryItem(
                    id=t.id,
                    budget_id=budget_id,
                    amount=amount,
                    flow=flow,
                    date=t.date,
                    payee=payee_names.get(t.payee_id, UNKNOWN_NAME) if t.payee_id else UNKNOWN_NAME,
                    category=category_names.get(t.category_id, UNKNOWN_NAME) if t.category_id else UNKNOWN_NAME,
                    account=account_names.get(t.account_id, UNKNOWN_NAME),
                    notes=t.notes,
                ))

            return EntryPage(items=items, limit=query.limit, offset=query.offset, total=len(matching))

        return await self.gateway.with_budget(budget_id, run)

    async def create_entry(
        self,
        budget_id: str,
        entry: CreateEntryRequest,
        idempotency_key: Optional[str] = None,
    ) -> EntryItem:
        """
        Create one entry in Actual.

        Writes to the same budget run one at a time. With an idempotency key,
        a repeat of an earlier write returns the earlier result without
        touching Actual.

        Raises:
            NotFoundError: unknown budget, account or category.
            ConflictError: write lock timeout, or the key was used for a different payload.
            UpstreamError: Actual failed.
        """
        await self.budget_service.assert_budget_accessible(budget_id)

        async def locked() -> EntryItem:
            fingerprint = None
            if idempotency_key:
                fingerprint = self.idempotency_cache.fingerprint(entry)
                previous = self.idempotency_cache.get(budget_id, idempotency_key, fingerprint)
                if previous is not None:
                    logger.info(f"Replaying idempotent write {idempotency_key} for budget {budget_id}")
                    return previous

            created = await self.gateway.with_budget(
                budget_id, lambda session: self._write(session, budget_id, entry, idempotency_key)
            )

            if idempotency_key:
                self.idempotency_cache.put(budget_id, idempotency_key, fingerprint, created)
            return created

        return await self.lock_manager.with_budget_lock(budget_id, self.lock_timeout_ms, locked)

    async def _write(
        self,
        session: BudgetSession,
        budget_id: str,
        entry: CreateEntryRequest,
        idempotency_key: Optional[str],
    ) -> EntryItem:
        await session.sync()
        accounts, categories, payees = await asyncio.gather(
            session.get_accounts(),
            session.get_categories(),
            session.get_payees(),
        )

        account = _find_by_name(accounts, entry.account)
        if account is None:
            raise NotFoundError(f"Account not found: {entry.account}")

        category = _find_by_name(categories, entry.category)
        if category is None:
            raise NotFoundError(f"Category not found: {entry.category}")

        payee = _find_by_name(payees, entry.payee)
        if payee is None:
            logger.info(f"Creating payee {entry.payee!r} in budget {budget_id}")
            payee = await session.create_payee(entry.payee)

        signed_amount = to_signed_amount(entry.amount, entry.flow)
        logger.debug(
            f"Creating entry in budget {budget_id}: account={account.id} "
            f"category={category.id} payee={payee.id} amount={signed_amount}"
        )
        transaction_id = await session.create_transaction(TransactionDraft(
            account_id=account.id,
            category_id=category.id,
            payee_id=payee.id,
            date=entry.date,
            amount=signed_amount,
            notes=entry.notes,
        ))

        try:
            await session.sync()
        except Exception as e:
            # The transaction exists upstream; its id is all the caller needs.
            logger.warning(
                f"Post-write sync failed for transaction {transaction_id} in budget {budget_id} "
                f"(idempotency key {idempotency_key}): {describe_error(e)}"
            )

        return EntryItem(
            id=transaction_id,
            budget_id=budget_id,
            amount=entry.amount,
            flow=entry.flow,
            date=entry.date,
            payee=payee.name,
            category=category.name,
            account=account.name,
            notes=entry.notes,
        )
