from typing import Literal
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class HealthStatus(BaseModel):
    status: Literal["ok", "degraded"]
    actual_connectivity: Literal["ok", "error"]
    budget_discovery_mode: Literal["auto", "configured"]

    class Config:
        alias_generator = to_camel
        populate_by_name = True
