import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

logger = logging.getLogger(__name__)


class ActualHttpClient:
    """
    Client for an Actual Budget HTTP API server (actual-http-api).

    Mirrors the shape of Actual's own client library: one process-wide session
    that is initialised once, then has a single budget "open" at a time. The
    gateway drives it through that surface and never touches HTTP directly.
    """

    API_PREFIX = "/v1"

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport
        self.server_url: Optional[str] = None
        self.headers: Dict[str, str] = {}
        self.budget_id: Optional[str] = None
        self.budget_password: Optional[str] = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        json_data: dict = None,
    ) -> Any:
        """Make an authenticated request and return the ``data`` member of the reply."""
        if self.server_url is None:
            raise RuntimeError("ActualHttpClient.init() has not been called")

        headers = dict(self.headers)
        if self.budget_password:
            headers["budget-encryption-password"] = self.budget_password

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.request(
                method,
                f"{self.server_url}{self.API_PREFIX}{endpoint}",
                headers=headers,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json().get("data")

    def _budget_path(self) -> str:
        if self.budget_id is None:
            raise RuntimeError("No budget is open")
        return f"/budgets/{self.budget_id}"

    async def init(self, server_url: str, password: str, data_dir: Optional[str] = None) -> None:
        self.server_url = server_url.rstrip("/")
        self.headers = {
            "x-api-key": password,
            "Content-Type": "application/json",
        }
        logger.info(f"Actual HTTP client initialised for {self.server_url}")

    async def list_user_files(self) -> List[dict]:
        """List the budget files the server knows about."""
        return await self._request("GET", "/budgets") or []

    async def download_budget(self, budget_id: str, password: Optional[str] = None) -> None:
        """Open a budget; the server downloads it on first access."""
        self.budget_id = budget_id
        self.budget_password = password
        try:
            await self._request("GET", f"/budgets/{budget_id}/accounts")
        except Exception:
            self.close_budget()
            raise

    def close_budget(self) -> None:
        self.budget_id = None
        self.budget_password = None

    async def get_accounts(self) -> List[dict]:
        return await self._request("GET", f"{self._budget_path()}/accounts") or []

    async def get_categories(self) -> List[dict]:
        return await self._request("GET", f"{self._budget_path()}/categories") or []

    async def get_payees(self) -> List[dict]:
        return await self._request("GET", f"{self._budget_path()}/payees") or []

    async def create_payee(self, payee: dict) -> dict:
        """Create a payee and return it with its new id."""
        created_id = await self._request("POST", f"{self._budget_path()}/payees", json_data={"payee": payee})
        return {**payee, "id": created_id}

    async def get_transactions(self, account_id: str, start_date: str, end_date: str) -> List[dict]:
        return await self._request(
            "GET",
            f"{self._budget_path()}/accounts/{account_id}/transactions",
            params={"since_date": start_date, "until_date": end_date},
        ) or []

    async def add_transactions(self, account_id: str, transactions: List[dict]) -> List[dict]:
        """
        Create transactions in an account.

        Ids are assigned here so the caller learns them without a read-back.
        """
        created = []
        for transaction in transactions:
            record = {**transaction, "id": transaction.get("id") or str(uuid4())}
            await self._request(
                "POST",
                f"{self._budget_path()}/accounts/{account_id}/transactions",
                json_data={"transaction": record},
            )
            created.append({**record, "account": account_id})
        return created

    async def shutdown(self) -> None:
        self.close_budget()
        self.server_url = None
        self.headers = {}
