import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from categorization import parse_amount_pattern
from models import (
    BudgetPeriod,
    MemberRole,
    RuleField,
    TransactionSource,
    TransactionStatus,
)


def _positive_magnitude(value: Decimal) -> Decimal:
    if value == 0:
        raise ValueError("Amount must be a non-zero number")
    return abs(value)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    date: dt.date
    category_id: Optional[int] = None
    bank: Optional[str] = Field(default=None, max_length=60)
    source: TransactionSource = TransactionSource.manual
    status: TransactionStatus = TransactionStatus.active

    @field_validator("amount")
    @classmethod
    def normalize_amount(cls, value: Decimal) -> Decimal:
        return _positive_magnitude(value)

    @field_validator("status")
    @classmethod
    def check_status(cls, value: TransactionStatus) -> TransactionStatus:
        if value == TransactionStatus.deleted:
            raise ValueError("Transactions cannot be created as deleted")
        return value


class TransactionUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    bank: Optional[str] = Field(default=None, max_length=60)
    status: Optional[TransactionStatus] = None

    @field_validator("amount")
    @classmethod
    def normalize_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is None:
            return value
        return _positive_magnitude(value)

    @field_validator("status")
    @classmethod
    def check_status(cls, value: Optional[TransactionStatus]) -> Optional[TransactionStatus]:
        if value == TransactionStatus.deleted:
            raise ValueError("Use delete to remove a transaction")
        return value


class TransactionFilters(BaseModel):
    category_id: Optional[int] = None
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None
    query: Optional[str] = None
    status: TransactionStatus = TransactionStatus.active
    bank: Optional[str] = None
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(default=None, ge=1, le=500)

    @model_validator(mode="after")
    def check_range(self) -> "TransactionFilters":
        if self.start and self.end and self.start > self.end:
            raise ValueError("Start date must be before end date")
        return self


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)


class RuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    field: RuleField
    match_text: str = Field(..., min_length=1, max_length=200)
    category_id: int
    is_active: bool = True

    @field_validator("match_text")
    @classmethod
    def strip_match_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Match text cannot be blank")
        return value

    @model_validator(mode="after")
    def check_amount_pattern(self) -> "RuleIn":
        if self.field == RuleField.amount:
            if parse_amount_pattern(self.match_text) is None:
                raise ValueError("Amount rules need a numeric match text")
        return self


class BudgetIn(BaseModel):
    category_id: int
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    period: BudgetPeriod
    start_date: dt.date
    end_date: Optional[dt.date] = None
    is_active: bool = True

    @model_validator(mode="after")
    def check_dates(self) -> "BudgetIn":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class MemberIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254)
    role: MemberRole = MemberRole.member
    banks: list[str] = Field(default_factory=list)


class IngestRow(BaseModel):
    """A row already extracted from an uploaded statement or receipt."""

    model_config = ConfigDict(extra="ignore")

    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    date: dt.date
    category: Optional[str] = Field(default=None, max_length=100)
    bank: Optional[str] = Field(default=None, max_length=60)

    @field_validator("amount")
    @classmethod
    def normalize_amount(cls, value: Decimal) -> Decimal:
        return _positive_magnitude(value)

    @field_validator("category")
    @classmethod
    def blank_category(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None
