from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ai_client import AIClient, AIServiceError, CategoryNames
from analytics import AnalyticsResult, build_analytics
from config import FALLBACK_CATEGORY, Settings, get_settings
from models import (
    CategorizationSource,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
)
from money import format_currency
from periods import DateRange, local_now, to_local_naive
from schemas import (
    CategoryIn,
    ParsedTransaction,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class TransactionNotFound(ValueError):
    pass


class InvalidAmount(ValueError):
    pass


@dataclass
class TransactionFilters:
    category: Optional[str] = None
    type: Optional[TransactionType] = None
    date_range: Optional[DateRange] = None


@dataclass
class TransactionPageResult:
    items: list[Transaction]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


def seed_default_categories(
    session: Session, settings: Optional[Settings] = None
) -> int:
    settings = settings or get_settings()
    existing = set(
        session.scalars(select(Category.name).where(Category.is_default.is_(True)))
    )
    created = 0
    for item in settings.category_taxonomy:
        if item["name"] in existing:
            continue
        session.add(
            Category(
                user_id=None,
                name=item["name"],
                type=CategoryType(item["type"]),
                icon=item.get("icon", "tag"),
                color=item.get("color", "#3b82f6"),
                is_default=True,
            )
        )
        created += 1
    if created:
        session.commit()
    logger.info(f"seed_default_categories: created={created}")
    return created


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _visible(self):
        if self.user_id is None:
            return Category.is_default.is_(True)
        return or_(Category.is_default.is_(True), Category.user_id == self.user_id)

    def list_all(self) -> list[Category]:
        stmt = select(Category).where(self._visible()).order_by(Category.name)
        return list(self.session.scalars(stmt).all())

    def names_by_type(self) -> CategoryNames:
        expense: list[str] = []
        income: list[str] = []
        for category in self.list_all():
            if category.type.accepts(TransactionType.expense):
                expense.append(category.name)
            if category.type.accepts(TransactionType.income):
                income.append(category.name)
        return CategoryNames(expense=sorted(expense), income=sorted(income))

    def create(self, data: CategoryIn) -> Category:
        if self.user_id is None:
            raise ValueError("User categories need an owner")
        name = data.name.strip()
        if not name:
            raise ValueError("Category name is required")
        existing = self.session.scalar(
            select(Category).where(
                self._visible(), func.lower(Category.name) == name.lower()
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            icon=data.icon,
            color=data.color,
            is_default=False,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        *,
        settings: Optional[Settings] = None,
        classifier: Optional[AIClient] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self._classifier = classifier

    @property
    def classifier(self) -> AIClient:
        if self._classifier is None:
            self._classifier = AIClient(self.settings)
        return self._classifier

    def _categorize(
        self, data: TransactionIn, occurred_at: datetime
    ) -> tuple[str, CategorizationSource, Optional[float]]:
        category = (data.category or "").strip()
        if category:
            return category, data.categorization_source, data.ai_confidence
        try:
            result = self.classifier.classify(
                data.description, data.amount, data.merchant, occurred_at
            )
        except (AIServiceError, ValueError) as exc:
            # never block the write on the classifier
            logger.warning(
                f"classify_failed: user={self.user_id} fallback={FALLBACK_CATEGORY} error={exc}"
            )
            return FALLBACK_CATEGORY, CategorizationSource.manual, None
        return result.category, CategorizationSource.ai, result.confidence

    def create(self, data: TransactionIn) -> Transaction:
        description = data.description.strip()
        if not description:
            raise ValueError("Description is required")
        occurred_at = (
            to_local_naive(data.occurred_at, self.settings.timezone)
            if data.occurred_at
            else local_now(self.settings.timezone)
        )
        category, source, confidence = self._categorize(data, occurred_at)
        txn = Transaction(
            user_id=self.user_id,
            description=description,
            amount=data.amount,
            type=data.type,
            category=category,
            merchant=(data.merchant or "").strip() or None,
            occurred_at=occurred_at,
            categorization_source=source,
            ai_confidence=confidence if source == CategorizationSource.ai else None,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
        )
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        for name in ("description", "amount", "type", "category", "occurred_at"):
            if changes.get(name) is None:
                changes.pop(name, None)
        for name in ("description", "category"):
            if name in changes:
                changes[name] = changes[name].strip()
                if not changes[name]:
                    raise ValueError(f"{name.capitalize()} is required")
        if "description" in changes:
            txn.description = changes["description"]
        if "amount" in changes:
            txn.amount = changes["amount"]
        if "type" in changes:
            txn.type = changes["type"]
        if "category" in changes:
            txn.category = changes["category"]
            txn.categorization_source = CategorizationSource.manual
            txn.ai_confidence = None
        if "merchant" in changes:
            txn.merchant = (changes["merchant"] or "").strip() or None
        if "occurred_at" in changes:
            txn.occurred_at = to_local_naive(
                changes["occurred_at"], self.settings.timezone
            )
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def all_for_user(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def _filtered(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.date_range:
            stmt = stmt.where(
                Transaction.occurred_at >= filters.date_range.start,
                Transaction.occurred_at <= filters.date_range.end,
            )
        return stmt

    def list_page(
        self, filters: TransactionFilters, page: int = 1, limit: int = 10
    ) -> TransactionPageResult:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValueError("Invalid pagination parameters")
        total = int(
            self.session.execute(
                self._filtered(select(func.count(Transaction.id)), filters)
            ).scalar_one()
            or 0
        )
        stmt = (
            self._filtered(select(Transaction), filters)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = list(self.session.scalars(stmt).all())
        return TransactionPageResult(items=items, total=total, page=page, limit=limit)

    def distinct_categories(
        self, date_range: Optional[DateRange] = None
    ) -> list[str]:
        stmt = self._filtered(
            select(Transaction.category).distinct(),
            TransactionFilters(date_range=date_range),
        )
        return sorted(self.session.scalars(stmt).all())


class AnalyticsService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()

    def overview(
        self, date_range: DateRange, now: Optional[datetime] = None
    ) -> AnalyticsResult:
        now = now or local_now(self.settings.timezone)
        records = TransactionService(
            self.session, self.user_id, settings=self.settings
        ).all_for_user()
        return build_analytics(records, date_range, now)


@dataclass
class ChatFailure:
    index: int
    draft: ParsedTransaction
    error: str


@dataclass
class ChatResult:
    message: str
    drafts: list[ParsedTransaction]
    transactions: list[Transaction] = field(default_factory=list)
    failures: list[ChatFailure] = field(default_factory=list)


class ChatService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        *,
        settings: Optional[Settings] = None,
        parser: Optional[AIClient] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.parser = parser or AIClient(self.settings)

    def handle(self, message: str, now: Optional[datetime] = None) -> ChatResult:
        text = (message or "").strip()
        if not text:
            raise ValueError("Message is required")

        names = CategoryService(self.session, self.user_id).names_by_type()
        drafts = self.parser.parse(text, names)
        if not drafts:
            raise AIServiceError("AI response contains no transactions")
        for draft in drafts:
            if draft.amount <= 0:
                raise InvalidAmount(
                    "Could not determine a valid amount. Try a clearer format, "
                    "e.g. 'Bún bò 45k' or 'Cafe 25000'."
                )

        occurred_at = now or local_now(self.settings.timezone)
        txn_service = TransactionService(
            self.session, self.user_id, settings=self.settings
        )
        result = ChatResult(message="", drafts=drafts)
        for index, draft in enumerate(drafts):
            try:
                txn = txn_service.create(
                    TransactionIn(
                        description=draft.description[:200],
                        amount=draft.amount,
                        type=draft.type,
                        category=draft.category,
                        merchant=draft.merchant,
                        occurred_at=occurred_at,
                        categorization_source=CategorizationSource.ai,
                        ai_confidence=draft.confidence,
                    )
                )
            except (SQLAlchemyError, ValueError) as exc:
                self.session.rollback()
                logger.error(
                    f"chat_write_failed: user={self.user_id} index={index} error={exc}"
                )
                result.failures.append(ChatFailure(index, draft, str(exc)))
                continue
            result.transactions.append(txn)

        if not result.transactions:
            raise RuntimeError("Failed to save any transaction")
        logger.info(
            f"chat_saved: user={self.user_id} saved={len(result.transactions)} "
            f"failed={len(result.failures)}"
        )
        result.message = self._confirmation(result)
        return result

    def _confirmation(self, result: ChatResult) -> str:
        if len(result.drafts) == 1:
            return build_single_message(result.drafts[0], self.settings)
        failed_indexes = {failure.index for failure in result.failures}
        saved = [
            draft
            for index, draft in enumerate(result.drafts)
            if index not in failed_indexes
        ]
        message = build_multiple_message(saved, self.settings)
        if result.failures:
            failed = ", ".join(failure.draft.description for failure in result.failures)
            message += f"\nNot saved: {failed}"
        return message


def build_single_message(draft: ParsedTransaction, settings: Settings) -> str:
    lines = [
        f"Saved {draft.type.value}: {draft.description}",
        f"Amount: {format_currency(draft.amount, settings)}",
        f"Category: {draft.category}",
    ]
    if draft.merchant:
        lines.append(f"Merchant: {draft.merchant}")
    if draft.reasoning:
        lines.append(f"Note: {draft.reasoning}")
    return "\n".join(lines)


def build_multiple_message(drafts: list[ParsedTransaction], settings: Settings) -> str:
    lines = [f"Saved {len(drafts)} transactions:", ""]
    for number, draft in enumerate(drafts, start=1):
        lines.append(
            f"{number}. {draft.description} - "
            f"{format_currency(draft.amount, settings)} ({draft.category})"
        )
    total = sum(draft.amount for draft in drafts)
    lines += ["", f"Total: {format_currency(total, settings)}"]
    return "\n".join(lines)
