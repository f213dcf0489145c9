from pydantic import BaseModel


class BudgetSummary(BaseModel):
    id: str
    name: str
