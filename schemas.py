from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import CategorizationSource, CategoryType, TransactionType


class TransactionIn(BaseModel):
    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True
    )

    description: str = Field(..., min_length=1, max_length=200)
    amount: int = Field(..., gt=0)
    type: TransactionType = TransactionType.expense
    category: Optional[str] = Field(default=None, max_length=100)
    merchant: Optional[str] = Field(default=None, max_length=120)
    occurred_at: Optional[datetime] = None
    categorization_source: CategorizationSource = CategorizationSource.manual
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=1)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(
        extra="forbid", alias_generator=to_camel, populate_by_name=True
    )

    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[int] = Field(default=None, gt=0)
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    merchant: Optional[str] = Field(default=None, max_length=120)
    occurred_at: Optional[datetime] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    icon: str = Field(default="tag", max_length=40)
    color: str = Field(default="#3b82f6", max_length=9)


class ChatIn(BaseModel):
    message: str = Field(..., max_length=1000)


class Classification(BaseModel):
    category: str
    confidence: float = Field(..., ge=0, le=1)
    reasoning: Optional[str] = None


class ParsedTransaction(BaseModel):
    description: str
    amount: int
    type: TransactionType = TransactionType.expense
    category: str
    merchant: Optional[str] = None
    confidence: float = Field(..., ge=0, le=1)
    reasoning: Optional[str] = None


class CamelOut(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class TransactionOut(CamelOut):
    id: int
    description: str
    amount: int
    type: TransactionType
    category: str
    merchant: Optional[str]
    occurred_at: datetime
    categorization_source: CategorizationSource
    ai_confidence: Optional[float]
    created_at: datetime
    updated_at: datetime


class TransactionPage(CamelOut):
    transactions: list[TransactionOut]
    total: int
    page: int
    total_pages: int
    has_more: bool


class CategoryOut(CamelOut):
    id: int
    name: str
    type: CategoryType
    icon: str
    color: str
    is_default: bool


class StatsOut(CamelOut):
    total_income: int
    total_expense: int
    balance: int
    month_income: int
    month_expense: int
    month_balance: int
    transaction_count: int


class CategoryShareOut(CamelOut):
    category: str
    amount: int
    percentage: float


class TrendPointOut(CamelOut):
    month: str
    income: int
    expense: int
    net: int


class DateRangeOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(..., alias="from")
    to: datetime


class AnalyticsOut(CamelOut):
    stats: StatsOut
    category_breakdown: list[CategoryShareOut]
    trend_data: list[TrendPointOut]
    recent_transactions: list[TransactionOut]
    date_range: DateRangeOut


class ChatFailureOut(CamelOut):
    index: int
    description: str
    error: str


class ChatOut(CamelOut):
    success: bool
    message: str
    transactions: list[TransactionOut]
    count: int
    failures: list[ChatFailureOut] = Field(default_factory=list)
