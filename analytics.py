"""Pure aggregation over a user's transactions.

Every function here takes already-loaded ``Transaction`` rows and returns
plain frozen dataclasses, so the same inputs always give the same output.
The trend binner takes ``now`` explicitly instead of reading the clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Callable, Iterable, Sequence

from config import FALLBACK_CATEGORY
from models import Transaction, TransactionType
from periods import DateRange


RECENT_LIMIT = 20
BREAKDOWN_KEEP = 7

SINGLE_BUCKET_MAX_DAYS = 1
DAILY_MAX_DAYS = 7
WEEKLY_MAX_DAYS = 90

_MONTH_ABBR = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


class Granularity(str, Enum):
    single = "single"
    day = "day"
    week = "week"
    month = "month"


@dataclass(frozen=True)
class Summary:
    total_income: int
    total_expense: int
    balance: int
    count: int


@dataclass(frozen=True)
class CategoryShare:
    category: str
    amount: int
    percentage: float


@dataclass(frozen=True)
class TrendBucket:
    label: str
    start: datetime
    effective_start: datetime
    effective_end: datetime
    income: int
    expense: int

    @property
    def net(self) -> int:
        return self.income - self.expense


@dataclass(frozen=True)
class AnalyticsResult:
    date_range: DateRange
    summary: Summary
    category_breakdown: list[CategoryShare]
    trend: list[TrendBucket]
    recent: list[Transaction]


def filter_by_range(
    records: Iterable[Transaction], date_range: DateRange
) -> list[Transaction]:
    if date_range.end < date_range.start:
        return []
    return [txn for txn in records if date_range.contains(txn.occurred_at)]


def summarize(records: Iterable[Transaction]) -> Summary:
    income = 0
    expense = 0
    count = 0
    for txn in records:
        if txn.type == TransactionType.income:
            income += txn.amount
        elif txn.type == TransactionType.expense:
            expense += txn.amount
        else:
            raise ValueError(f"Unknown transaction type: {txn.type!r}")
        count += 1
    return Summary(
        total_income=income,
        total_expense=expense,
        balance=income - expense,
        count=count,
    )


def category_breakdown(records: Iterable[Transaction]) -> list[CategoryShare]:
    totals: dict[str, int] = {}
    total_expense = 0
    for txn in records:
        if txn.type != TransactionType.expense:
            continue
        totals[txn.category] = totals.get(txn.category, 0) + txn.amount
        total_expense += txn.amount

    shares = [
        CategoryShare(
            category=name,
            amount=amount,
            percentage=(amount / total_expense * 100) if total_expense else 0.0,
        )
        for name, amount in totals.items()
    ]
    # sorted() is stable: equal amounts keep first-seen order
    return sorted(shares, key=lambda share: share.amount, reverse=True)


def collapse_breakdown(
    shares: Sequence[CategoryShare],
    *,
    keep: int = BREAKDOWN_KEEP,
    other_label: str = FALLBACK_CATEGORY,
) -> list[CategoryShare]:
    head = list(shares[:keep])
    tail = shares[keep:]
    other_amount = sum(share.amount for share in tail)
    if other_amount <= 0:
        return head
    total = sum(share.amount for share in shares)
    head.append(
        CategoryShare(
            category=other_label,
            amount=other_amount,
            percentage=(other_amount / total * 100) if total else 0.0,
        )
    )
    return head


def select_granularity(days: int) -> Granularity:
    if days <= SINGLE_BUCKET_MAX_DAYS:
        return Granularity.single
    if days <= DAILY_MAX_DAYS:
        return Granularity.day
    if days <= WEEKLY_MAX_DAYS:
        return Granularity.week
    return Granularity.month


def _start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def _start_of_week(moment: datetime) -> datetime:
    day = _start_of_day(moment)
    return day - timedelta(days=day.weekday())


def _start_of_month(moment: datetime) -> datetime:
    return datetime.combine(moment.date().replace(day=1), time.min)


def _next_month(moment: datetime) -> datetime:
    month_index = moment.year * 12 + (moment.month - 1) + 1
    return moment.replace(year=month_index // 12, month=month_index % 12 + 1, day=1)


def _next_week(moment: datetime) -> datetime:
    return moment + timedelta(weeks=1)


def format_day_month(moment: datetime) -> str:
    return f"{moment.day:02d}/{moment.month:02d}"


def format_full_date(moment: datetime) -> str:
    return f"{moment.day:02d} {_MONTH_ABBR[moment.month - 1]} {moment.year}"


def format_month_year(moment: datetime) -> str:
    return f"{_MONTH_ABBR[moment.month - 1]} {moment.year}"


def _bucket(
    records: Sequence[Transaction],
    label: str,
    start: datetime,
    effective_start: datetime,
    effective_end: datetime,
) -> TrendBucket:
    summary = summarize(
        txn for txn in records if effective_start <= txn.occurred_at < effective_end
    )
    return TrendBucket(
        label=label,
        start=start,
        effective_start=effective_start,
        effective_end=effective_end,
        income=summary.total_income,
        expense=summary.total_expense,
    )


def _walk_buckets(
    records: Sequence[Transaction],
    date_range: DateRange,
    now: datetime,
    first: datetime,
    step: Callable[[datetime], datetime],
    label: Callable[[datetime], str],
) -> list[TrendBucket]:
    buckets: list[TrendBucket] = []
    bucket_start = first
    while bucket_start <= date_range.end:
        if bucket_start > now:
            break
        bucket_end = step(bucket_start)
        buckets.append(
            _bucket(
                records,
                label(bucket_start),
                bucket_start,
                max(bucket_start, date_range.start),
                min(bucket_end, now),
            )
        )
        bucket_start = bucket_end
    return buckets


def trend_buckets(
    records: Sequence[Transaction], date_range: DateRange, now: datetime
) -> list[TrendBucket]:
    days = date_range.days
    granularity = select_granularity(days)

    if granularity == Granularity.single:
        # emitted even when the range starts after now, unlike the other granularities
        summary = summarize(records)
        return [
            TrendBucket(
                label=format_full_date(date_range.start),
                start=date_range.start,
                effective_start=date_range.start,
                effective_end=date_range.end,
                income=summary.total_income,
                expense=summary.total_expense,
            )
        ]

    if granularity == Granularity.day:
        buckets: list[TrendBucket] = []
        for offset in range(days + 1):
            current = date_range.start + timedelta(days=offset)
            if current > now:
                break
            start = _start_of_day(current)
            buckets.append(
                _bucket(
                    records,
                    format_day_month(current),
                    start,
                    start,
                    start + timedelta(days=1),
                )
            )
        return buckets

    if granularity == Granularity.week:
        return _walk_buckets(
            records,
            date_range,
            now,
            _start_of_week(date_range.start),
            _next_week,
            format_day_month,
        )

    return _walk_buckets(
        records,
        date_range,
        now,
        _start_of_month(date_range.start),
        _next_month,
        format_month_year,
    )


def recent_transactions(
    records: Iterable[Transaction], limit: int = RECENT_LIMIT
) -> list[Transaction]:
    ordered = sorted(records, key=lambda txn: txn.occurred_at, reverse=True)
    return ordered[:limit]


def build_analytics(
    records: Iterable[Transaction], date_range: DateRange, now: datetime
) -> AnalyticsResult:
    filtered = filter_by_range(records, date_range)
    # each facet only reads ``filtered``; any failure aborts the whole result
    summary = summarize(filtered)
    breakdown = category_breakdown(filtered)
    trend = trend_buckets(filtered, date_range, now)
    recent = recent_transactions(filtered)
    return AnalyticsResult(
        date_range=date_range,
        summary=summary,
        category_breakdown=breakdown,
        trend=trend,
        recent=recent,
    )
