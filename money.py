import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from config import Settings


_MULTIPLIERS = {
    "k": Decimal("1000"),
    "tr": Decimal("1000000"),
    "triệu": Decimal("1000000"),
}

_AMOUNT_RE = re.compile(r"^(?P<number>[0-9][0-9.,]*)\s*(?P<suffix>k|tr|triệu)?$")

_CURRENCY_SYMBOLS = {"VND": "₫", "USD": "$", "EUR": "€"}


def parse_amount(value: Union[str, int, float, None]) -> int:
    """Whole currency units from a model-supplied amount.

    Numbers pass through (rounded). Strings may use ``.``/``,``/space as
    thousands separators and a trailing ``k`` (x1000) or ``tr``/``triệu``
    (x1,000,000) suffix, as in ``"45k"`` or ``"1,5tr"``.
    """
    if value is None:
        raise ValueError("Invalid amount")
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        clean = value.strip().lower().replace(" ", "")
        for symbol in ("₫", "vnd", "đ", "$", "€"):
            clean = clean.replace(symbol, "")
        match = _AMOUNT_RE.match(clean)
        if not match:
            raise ValueError("Invalid amount")
        number = match.group("number")
        suffix = match.group("suffix")
        if suffix:
            # "1,5tr" / "2.5k": a single separator before a suffix is decimal
            number = number.replace(",", ".")
            if number.count(".") > 1:
                raise ValueError("Invalid amount")
        else:
            number = number.replace(".", "").replace(",", "")
        try:
            amount = Decimal(number)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
        if suffix:
            amount *= _MULTIPLIERS[suffix]
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    try:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc


def format_currency(amount: int, settings: Settings) -> str:
    code = settings.currency_code.upper()
    symbol = _CURRENCY_SYMBOLS.get(code, code)
    if settings.currency_locale.lower().startswith("vi"):
        return f"{amount:,}".replace(",", ".") + f" {symbol}"
    return f"{symbol}{amount:,}"
