from typing import Dict, List, Optional

import pytest

from entrybridge.config import Settings
from entrybridge.services.budgets import BudgetService
from entrybridge.services.entries import EntryService
from entrybridge.services.gateway import ActualGateway
from entrybridge.services.idempotency import IdempotencyCache
from entrybridge.services.locks import BudgetLockManager

API_KEY = "test-bridge-key"


def make_settings(**overrides) -> Settings:
    values = {
        "bridge_api_key": API_KEY,
        "actual_server_url": "http://actual.test",
        "actual_password": "actual-secret",
        "budgets": [],
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeActualApi:
    """In-memory stand-in for the Actual client, recording every call."""

    def __init__(self):
        self.calls: List[str] = []
        self.budgets = [{"id": "budget-1", "name": "Household"}]
        self.accounts = [{"id": "acc-1", "name": "Checking"}]
        self.categories = [
            {"id": "cat-1", "name": "Groceries"},
            {"id": "cat-2", "name": "Salary"},
        ]
        self.payees = [{"id": "payee-1", "name": "Supermarket"}]
        self.transactions: Dict[str, List[dict]] = {"acc-1": []}
        self.created: List[dict] = []
        self.open_budget: Optional[str] = None
        self.fail_sync_after_write = False
        self.fail_list_budgets = False

    async def init(self, server_url, password, data_dir=None):
        self.calls.append("init")

    async def login(self, password):
        self.calls.append("login")

    async def list_user_files(self):
        self.calls.append("list_user_files")
        if self.fail_list_budgets:
            raise ConnectionError("actual unreachable")
        return list(self.budgets)

    async def download_budget(self, budget_id, password=None):
        self.calls.append(f"download_budget:{budget_id}")
        self.open_budget = budget_id

    async def close_budget(self):
        self.calls.append("close_budget")
        self.open_budget = None

    async def sync(self):
        self.calls.append("sync")
        if self.fail_sync_after_write and self.created:
            raise ConnectionError("sync failed")

    async def get_accounts(self):
        self.calls.append("get_accounts")
        return list(self.accounts)

    async def get_categories(self):
        self.calls.append("get_categories")
        return list(self.categories)

    async def get_payees(self):
        self.calls.append("get_payees")
        return list(self.payees)

    async def create_payee(self, payee):
        self.calls.append("create_payee")
        created = {"id": f"payee-{len(self.payees) + 1}", "name": payee["name"]}
        self.payees.append(created)
        return created

    async def get_transactions(self, account_id, start_date, end_date):
        self.calls.append(f"get_transactions:{account_id}")
        return list(self.transactions.get(account_id, []))

    async def add_transactions(self, account_id, transactions):
        self.calls.append("add_transactions")
        created = []
        for transaction in transactions:
            record = {**transaction, "id": f"tx-{len(self.created) + 1}", "account": account_id}
            self.created.append(record)
            self.transactions.setdefault(account_id, []).append(record)
            created.append(record)
        return created

    async def shutdown(self):
        self.calls.append("shutdown")


class Services:
    def __init__(self, settings: Settings, api: FakeActualApi):
        self.settings = settings
        self.api = api
        self.gateway = ActualGateway(settings, api=api)
        self.budget_service = BudgetService(settings, self.gateway)
        self.lock_manager = BudgetLockManager()
        self.idempotency_cache = IdempotencyCache(
            ttl_ms=settings.idempotency_ttl_ms,
            max_records=settings.idempotency_max_records,
        )
        self.entry_service = EntryService(
            self.gateway,
            self.budget_service,
            self.lock_manager,
            self.idempotency_cache,
            lock_timeout_ms=settings.lock_timeout_ms,
        )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_api():
    return FakeActualApi()


@pytest.fixture
def services(settings, fake_api):
    return Services(settings, fake_api)
