from typing import List

from fastapi import APIRouter, Depends

from ..dependencies import enforce_rate_limit, get_budget_service, require_api_key
from ..schemas.budgets import BudgetSummary
from ..services.budgets import BudgetService

router = APIRouter(
    prefix="/budgets",
    tags=["Budgets"],
    dependencies=[Depends(require_api_key), Depends(enforce_rate_limit)],
)


@router.get("", response_model=List[BudgetSummary])
async def list_budgets(budget_service: BudgetService = Depends(get_budget_service)):
    """Budgets visible through the bridge."""
    return await budget_service.list_budgets()
