from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from http.client import HTTPException
from typing import Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from rapidfuzz.distance import Levenshtein

from config import FALLBACK_CATEGORY, Settings, get_settings
from models import TransactionType
from money import parse_amount
from schemas import Classification, ParsedTransaction


logger = logging.getLogger(__name__)

MAX_CATEGORY_DISTANCE = 2

CLASSIFY_SYSTEM_PROMPT = (
    "You are a financial transaction categorization assistant. Analyze "
    "transactions and categorize them accurately. Respond in JSON format only."
)

PARSE_SYSTEM_PROMPT = """You are a financial assistant that parses natural language transaction inputs in Vietnamese or English.
Extract transaction details and categorize them. Always respond with JSON only.

Rules:
- Amounts are whole VND. A trailing k means thousands (45k = 45000); tr or triệu means millions.
- The type is "expense" unless the input is clearly income (lương, thu nhập, salary, ...).
- Infer the merchant and a short description from context.
- If the input holds several transactions (separated by commas, dashes or "and"), return them in a "transactions" array.
- Otherwise return a single transaction object."""


class AIServiceError(RuntimeError):
    pass


@dataclass(frozen=True)
class CategoryNames:
    expense: list[str] = field(default_factory=list)
    income: list[str] = field(default_factory=list)

    def for_type(self, txn_type: TransactionType) -> list[str]:
        if txn_type == TransactionType.income:
            return self.income
        return self.expense


def strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1 :] if first_newline != -1 else text[3:]
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def load_json_object(content: str) -> dict:
    try:
        payload = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise AIServiceError("AI response is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise AIServiceError("AI response is not a JSON object")
    return payload


def match_category(name: Optional[str], candidates: list[str]) -> str:
    """Map a model-chosen label onto one of ``candidates``.

    Exact (case-insensitive) matches win; otherwise the unique closest name
    within ``MAX_CATEGORY_DISTANCE`` edits is used. Anything else, including
    ambiguous ties, falls back to "Other".
    """
    clean = (name or "").strip()
    if not clean:
        return FALLBACK_CATEGORY
    lowered = clean.lower()
    for candidate in candidates:
        if candidate.lower() == lowered:
            return candidate

    best_distance: Optional[int] = None
    best: list[str] = []
    for candidate in candidates:
        dist = int(Levenshtein.distance(lowered, candidate.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)
    if best_distance is not None and best_distance <= MAX_CATEGORY_DISTANCE:
        if len(best) == 1:
            return best[0]
    return FALLBACK_CATEGORY


def _confidence(value: object, default: float) -> float:
    try:
        number = float(value) if value is not None else default
    except (TypeError, ValueError):
        number = default
    return min(max(number, 0.0), 1.0)


def _transaction_type(value: object) -> TransactionType:
    try:
        return TransactionType(str(value).strip().lower())
    except ValueError:
        return TransactionType.expense


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    return text


class AIClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def classify(
        self,
        description: str,
        amount: int,
        merchant: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Classification:
        prompt = build_classification_prompt(
            description, amount, self._taxonomy_names(), merchant, occurred_at
        )
        result = load_json_object(self._complete(CLASSIFY_SYSTEM_PROMPT, prompt))
        return Classification(
            category=match_category(result.get("category"), self._taxonomy_names()),
            confidence=_confidence(result.get("confidence"), 0.5),
            reasoning=_optional_text(result.get("reasoning")),
        )

    def parse(self, text: str, category_names: CategoryNames) -> list[ParsedTransaction]:
        prompt = build_parsing_prompt(text, category_names)
        result = load_json_object(self._complete(PARSE_SYSTEM_PROMPT, prompt))
        items = result.get("transactions")
        if isinstance(items, list):
            raw_drafts = [item for item in items if isinstance(item, dict)]
        else:
            raw_drafts = [result]
        if not raw_drafts:
            raise AIServiceError("AI response contains no transactions")
        return [self._draft(raw, text, category_names) for raw in raw_drafts]

    def _draft(
        self, raw: dict, text: str, category_names: CategoryNames
    ) -> ParsedTransaction:
        txn_type = _transaction_type(raw.get("type", TransactionType.expense.value))
        try:
            amount = parse_amount(raw.get("amount"))
        except ValueError:
            amount = 0
        return ParsedTransaction(
            description=_optional_text(raw.get("description")) or text.strip(),
            amount=amount,
            type=txn_type,
            category=match_category(
                raw.get("category"), category_names.for_type(txn_type)
            ),
            merchant=_optional_text(raw.get("merchant")),
            confidence=_confidence(
                raw.get("confidence"), self.settings.default_confidence
            ),
            reasoning=_optional_text(raw.get("reasoning")),
        )

    def _taxonomy_names(self) -> list[str]:
        return [item["name"] for item in self.settings.category_taxonomy]

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.settings.ai_configured:
            raise AIServiceError("AI service not configured")
        payload = {
            "model": self.settings.ai_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        data = _post_chat_completion(
            f"{self.settings.ai_api_base_url}/v1/chat/completions",
            self.settings.ai_api_key,
            payload,
            timeout=self.settings.ai_timeout_secs,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AIServiceError("Unexpected AI response shape") from exc
        if not content:
            raise AIServiceError("No response from AI")
        return str(content)


def _post_chat_completion(
    url: str, api_key: str, payload: dict, *, timeout: float
) -> dict:
    req = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {api_key}",
        },
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        logger.warning(f"ai_request_failed: status={exc.code}")
        raise AIServiceError(f"AI API error: {exc.code} {exc.reason}") from exc
    except (OSError, HTTPException, ValueError) as exc:
        # includes connection resets and truncated reads
        logger.warning(f"ai_request_failed: error={exc}")
        raise AIServiceError("Failed to reach AI service") from exc
    if not isinstance(body, dict):
        raise AIServiceError("Unexpected AI response shape")
    return body


def build_classification_prompt(
    description: str,
    amount: int,
    categories: list[str],
    merchant: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> str:
    lines = [
        "Analyze this transaction and categorize it into one of these categories:",
        *[f"- {name}" for name in categories],
        "",
        "Transaction Details:",
        f"- Description: {description}",
        f"- Amount: {amount}",
    ]
    if merchant:
        lines.append(f"- Merchant: {merchant}")
    if occurred_at:
        lines.append(f"- Date: {occurred_at.date().isoformat()}")
    lines += [
        "",
        "Respond with JSON in this exact format:",
        '{"category": "category name", "confidence": 0.95, "reasoning": "brief explanation"}',
    ]
    return "\n".join(lines)


def build_parsing_prompt(text: str, category_names: CategoryNames) -> str:
    return f"""Parse this transaction input. It may contain MULTIPLE transactions.

"{text}"

EXPENSE categories: {", ".join(category_names.expense)}
INCOME categories: {", ".join(category_names.income)}

Choose the most appropriate category from the lists above.

Single transaction:
{{"description": "brief description", "amount": 45000, "type": "expense", "category": "category name", "merchant": null, "confidence": 0.95, "reasoning": "brief explanation"}}

Multiple transactions:
{{"transactions": [{{"description": "Cafe", "amount": 25000, "type": "expense", "category": "Food & Dining", "merchant": null, "confidence": 0.95, "reasoning": "Coffee"}}, {{"description": "Grab", "amount": 30000, "type": "expense", "category": "Transportation", "merchant": "Grab", "confidence": 0.95, "reasoning": "Ride service"}}]}}"""
