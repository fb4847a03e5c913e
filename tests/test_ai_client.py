import http.client
import io
import json
from urllib.error import HTTPError, URLError

import pytest

import ai_client
from ai_client import (
    AIClient,
    AIServiceError,
    CategoryNames,
    match_category,
    strip_code_fence,
)
from config import Settings, get_settings
from models import TransactionType


NAMES = CategoryNames(
    expense=["Food & Dining", "Other", "Shopping", "Transportation"],
    income=["Freelance", "Other", "Salary"],
)


def _settings(**overrides) -> Settings:
    base = {
        **vars(get_settings()),
        "ai_api_base_url": "https://ai.example.test",
        "ai_api_key": "test-key",
        "ai_timeout_secs": 3.0,
        "default_confidence": 0.8,
    }
    return Settings(**{**base, **overrides})


class FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


def _completion(content: str) -> bytes:
    return json.dumps({"choices": [{"message": {"content": content}}]}).encode("utf-8")


def _install(monkeypatch, content: str, requests: list = None) -> None:
    def fake_urlopen(req, timeout):
        if requests is not None:
            requests.append((req, timeout))
        return FakeResponse(_completion(content))

    monkeypatch.setattr(ai_client, "urlopen", fake_urlopen)


def test_parse_single_transaction(monkeypatch) -> None:
    requests = []
    _install(
        monkeypatch,
        json.dumps(
            {
                "description": "Bún bò",
                "amount": 45000,
                "type": "expense",
                "category": "Food & Dining",
                "merchant": None,
                "confidence": 0.95,
                "reasoning": "Noodle soup",
            }
        ),
        requests,
    )

    drafts = AIClient(_settings()).parse("Bún bò 45k", NAMES)

    assert len(drafts) == 1
    draft = drafts[0]
    assert (draft.description, draft.amount, draft.category) == (
        "Bún bò",
        45_000,
        "Food & Dining",
    )
    assert draft.merchant is None
    req, timeout = requests[0]
    assert timeout == 3.0
    assert req.full_url == "https://ai.example.test/v1/chat/completions"
    assert req.get_header("Authorization") == "Bearer test-key"
    payload = json.loads(req.data.decode("utf-8"))
    assert payload["response_format"] == {"type": "json_object"}
    assert "Bún bò 45k" in payload["messages"][1]["content"]


def test_parse_multiple_transactions_inside_code_fence(monkeypatch) -> None:
    content = (
        "```json\n"
        + json.dumps(
            {
                "transactions": [
                    {"description": "Cafe", "amount": "25k", "category": "Food & Dining"},
                    {
                        "description": "Grab",
                        "amount": 30000,
                        "category": "Transportation",
                        "merchant": "Grab",
                        "confidence": 0.9,
                    },
                ]
            }
        )
        + "\n```"
    )
    _install(monkeypatch, content)

    drafts = AIClient(_settings()).parse("cafe 25k - grab 30k", NAMES)

    assert [d.amount for d in drafts] == [25_000, 30_000]
    assert [d.type for d in drafts] == [TransactionType.expense] * 2
    assert drafts[0].confidence == pytest.approx(0.8)
    assert drafts[1].merchant == "Grab"


def test_parse_maps_income_categories_and_fuzzy_names(monkeypatch) -> None:
    _install(
        monkeypatch,
        json.dumps(
            {
                "transactions": [
                    {"description": "Lương", "amount": "20tr", "type": "income", "category": "salry"},
                    {"description": "Áo", "amount": "350.000", "category": "Groceries & More"},
                ]
            }
        ),
    )

    drafts = AIClient(_settings()).parse("lương 20tr, áo 350k", NAMES)

    assert drafts[0].type == TransactionType.income
    assert drafts[0].category == "Salary"
    assert drafts[0].amount == 20_000_000
    assert drafts[1].category == "Other"
    assert drafts[1].amount == 350_000


def test_parse_unreadable_amount_becomes_zero(monkeypatch) -> None:
    _install(
        monkeypatch,
        json.dumps({"description": "???", "amount": "lots", "category": "Other"}),
    )

    drafts = AIClient(_settings()).parse("something", NAMES)

    assert drafts[0].amount == 0


def test_parse_rejects_non_json_content(monkeypatch) -> None:
    _install(monkeypatch, "Sure! Here is your transaction.")

    with pytest.raises(AIServiceError, match="not valid JSON"):
        AIClient(_settings()).parse("cafe 25k", NAMES)


def test_parse_rejects_empty_transaction_list(monkeypatch) -> None:
    _install(monkeypatch, json.dumps({"transactions": []}))

    with pytest.raises(AIServiceError, match="no transactions"):
        AIClient(_settings()).parse("cafe 25k", NAMES)


def test_http_error_raises_service_error(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise HTTPError(req.full_url, 429, "Too Many Requests", {}, io.BytesIO(b""))

    monkeypatch.setattr(ai_client, "urlopen", fake_urlopen)

    with pytest.raises(AIServiceError, match="429"):
        AIClient(_settings()).parse("cafe 25k", NAMES)


def test_network_error_raises_service_error(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise URLError("timed out")

    monkeypatch.setattr(ai_client, "urlopen", fake_urlopen)

    with pytest.raises(AIServiceError, match="Failed to reach AI service"):
        AIClient(_settings()).classify("Cafe", 25_000)


def test_unconfigured_client_never_calls_out(monkeypatch) -> None:
    def fake_urlopen(req, timeout):
        raise AssertionError("should not be called")

    monkeypatch.setattr(ai_client, "urlopen", fake_urlopen)

    with pytest.raises(AIServiceError, match="not configured"):
        AIClient(_settings(ai_api_key="")).classify("Cafe", 25_000)


def test_classify_uses_taxonomy_and_clamps_confidence(monkeypatch) -> None:
    _install(
        monkeypatch,
        json.dumps({"category": "transportation", "confidence": 1.7, "reasoning": "ride"}),
    )

    result = AIClient(_settings()).classify("Grab bike", 30_000, merchant="Grab")

    assert result.category == "Transportation"
    assert result.confidence == 1.0
    assert result.reasoning == "ride"


def test_classify_defaults_missing_confidence(monkeypatch) -> None:
    _install(monkeypatch, json.dumps({"category": "Shopping"}))

    result = AIClient(_settings()).classify("Shirt", 200_000)

    assert result.confidence == pytest.approx(0.5)


def test_match_category_rules() -> None:
    candidates = ["Food & Dining", "Shopping", "Travel", "Other"]

    assert match_category("shopping", candidates) == "Shopping"
    assert match_category("Food & Dinning", candidates) == "Food & Dining"
    assert match_category("Groceries", candidates) == "Other"
    assert match_category(None, candidates) == "Other"
    assert match_category("  ", candidates) == "Other"


def test_strip_code_fence_variants() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('```\n{"a": 1}```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


class _BrokenBodyResponse(FakeResponse):
    def __init__(self, error: Exception) -> None:
        super().__init__(b"")
        self.error = error

    def read(self) -> bytes:
        raise self.error


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("connection reset by peer"),
        http.client.IncompleteRead(b'{"choi'),
    ],
)
def test_failures_while_reading_body_raise_service_error(monkeypatch, error) -> None:
    monkeypatch.setattr(
        ai_client, "urlopen", lambda req, timeout: _BrokenBodyResponse(error)
    )

    with pytest.raises(AIServiceError, match="Failed to reach AI service"):
        AIClient(_settings()).classify("Pho", 50_000)


def test_parse_non_finite_amount_becomes_zero(monkeypatch) -> None:
    _install(monkeypatch, '{"description": "x", "amount": Infinity, "category": "Other"}')

    drafts = AIClient(_settings()).parse("x", NAMES)

    assert drafts[0].amount == 0
