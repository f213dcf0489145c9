import logging
from typing import List

from ..config import Settings
from ..errors import NotFoundError, UpstreamError, describe_error
from ..schemas.budgets import BudgetSummary
from .gateway import ActualGateway

logger = logging.getLogger(__name__)


class BudgetService:
    """
    Decides which budgets the bridge exposes.

    In "configured" mode only the BUDGETS list is visible. In "auto" mode the
    budgets found on the Actual server are returned, narrowed to BUDGETS when
    that list is non-empty, so the configured list always acts as an allowlist.
    """

    def __init__(self, settings: Settings, gateway: ActualGateway):
        self.settings = settings
        self.gateway = gateway

    def configured_budgets(self) -> List[BudgetSummary]:
        return [BudgetSummary(id=item.id, name=item.name) for item in self.settings.budgets]

    async def list_budgets(self) -> List[BudgetSummary]:
        configured = self.configured_budgets()
        if self.settings.budget_discovery_mode == "configured":
            return configured

        try:
            discovered = await self.gateway.list_budgets()
        except Exception as e:
            if not configured:
                raise UpstreamError("Failed to discover budgets from Actual", e) from e
            logger.warning(f"Budget discovery failed, falling back to configured budgets: {describe_error(e)}")
            return configured

        if not discovered:
            if not configured:
                raise UpstreamError("Failed to discover budgets from Actual")
            return configured
        if not configured:
            return discovered

        allowed = {budget.id for budget in configured}
        return [budget for budget in discovered if budget.id in allowed]

    async def assert_budget_accessible(self, budget_id: str) -> None:
        budgets = await self.list_budgets()
        if not any(budget.id == budget_id for budget in budgets):
            raise NotFoundError(f"Budget not found: {budget_id}")
