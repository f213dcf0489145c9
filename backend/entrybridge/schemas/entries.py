import datetime
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, StringConstraints, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from ..errors import ValidationError

MAX_QUERY_WINDOW_DAYS = 366
MAX_NAME_LENGTH = 200
MAX_NOTES_LENGTH = 2000
MAX_IDEMPOTENCY_KEY_LENGTH = 128

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")

Flow = Literal["income", "expense"]
ListFlow = Literal["all", "income", "expense"]

EntityName = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_NAME_LENGTH)
]
Notes = Annotated[str, StringConstraints(strip_whitespace=True, max_length=MAX_NOTES_LENGTH)]


def check_iso_date(value: str) -> str:
    """Accept only real calendar dates written as YYYY-MM-DD."""
    if not DATE_PATTERN.match(value):
        raise ValueError("Date must be YYYY-MM-DD")
    try:
        datetime.date.fromisoformat(value)
    except ValueError:
        raise ValueError("Date must be YYYY-MM-DD") from None
    return value


class CreateEntryRequest(BaseModel):
    """Body of POST /budgets/{budget_id}/entries."""
    amount: float = Field(gt=0, strict=True, allow_inf_nan=False)
    flow: Flow
    date: str
    payee: EntityName
    category: EntityName
    account: EntityName
    notes: Notes = ""

    @field_validator("amount")
    @classmethod
    def _at_least_one_cent(cls, value: float) -> float:
        # Anything that rounds to 0 cents would be stored without its flow
        if to_minor_units(value) == 0:
            raise ValueError("Amount must be at least 0.01")
        return value

    @field_validator("date")
    @classmethod
    def _valid_date(cls, value: str) -> str:
        return check_iso_date(value)


class ListEntriesQuery(BaseModel):
    """Query string of GET /budgets/{budget_id}/entries."""
    from_: str = Field(alias="from")
    to: str
    flow: ListFlow = "all"
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)

    class Config:
        populate_by_name = True

    @field_validator("from_")
    @classmethod
    def _valid_from(cls, value: str) -> str:
        return check_iso_date(value)

    @field_validator("to")
    @classmethod
    def _valid_range(cls, value: str, info: ValidationInfo) -> str:
        check_iso_date(value)
        start = info.data.get("from_")
        if start is None:
            return value

        span_days = (datetime.date.fromisoformat(value) - datetime.date.fromisoformat(start)).days + 1
        if span_days < 1:
            raise ValueError("from must be less than or equal to to")
        if span_days > MAX_QUERY_WINDOW_DAYS:
            raise ValueError(f"Date range must be {MAX_QUERY_WINDOW_DAYS} days or fewer")
        return value


class EntryItem(BaseModel):
    id: str
    budget_id: str
    amount: float  # Always positive; direction is carried by flow
    flow: Flow
    date: str
    payee: str
    category: str
    account: str
    notes: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class EntryPage(BaseModel):
    items: List[EntryItem]
    limit: int
    offset: int
    total: int


def parse_idempotency_key(raw: Optional[str]) -> Optional[str]:
    """Validate the optional Idempotency-Key header value."""
    if raw is None:
        return None

    key = raw.strip()
    if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH or not IDEMPOTENCY_KEY_PATTERN.match(key):
        raise ValidationError(
            "Invalid Idempotency-Key header",
            {
                "header": "Idempotency-Key",
                "maxLength": MAX_IDEMPOTENCY_KEY_LENGTH,
                "pattern": IDEMPOTENCY_KEY_PATTERN.pattern,
            },
        )
    return key


def to_minor_units(amount: float) -> int:
    """Convert a decimal amount to whole cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> float:
    """Convert signed cents to a positive decimal amount with two places."""
    return float((Decimal(abs(int(amount))) / 100).quantize(Decimal("0.01")))


def to_signed_amount(amount: float, flow: Flow) -> int:
    """Actual stores expenses as negative and income as non-negative cents."""
    minor = abs(to_minor_units(amount))
    return -minor if flow == "expense" else minor


def from_signed_amount(signed_amount: int) -> Tuple[float, Flow]:
    flow: Flow = "expense" if signed_amount < 0 else "income"
    return from_minor_units(signed_amount), flow
