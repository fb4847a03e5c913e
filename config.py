import os
from functools import lru_cache
from pathlib import Path


DEFAULT_CATEGORIES: tuple[dict[str, str], ...] = (
    {"name": "Food & Dining", "type": "expense", "icon": "utensils", "color": "#ef4444"},
    {"name": "Shopping", "type": "expense", "icon": "shopping-bag", "color": "#f59e0b"},
    {"name": "Transportation", "type": "expense", "icon": "car", "color": "#3b82f6"},
    {"name": "Bills & Utilities", "type": "expense", "icon": "file-text", "color": "#8b5cf6"},
    {"name": "Entertainment", "type": "expense", "icon": "film", "color": "#ec4899"},
    {"name": "Healthcare", "type": "expense", "icon": "heart", "color": "#10b981"},
    {"name": "Travel", "type": "expense", "icon": "plane", "color": "#06b6d4"},
    {"name": "Education", "type": "expense", "icon": "book", "color": "#6366f1"},
    {"name": "Personal Care", "type": "expense", "icon": "sparkles", "color": "#f97316"},
    {"name": "Other", "type": "both", "icon": "tag", "color": "#6b7280"},
    {"name": "Salary", "type": "income", "icon": "banknote", "color": "#22c55e"},
    {"name": "Freelance", "type": "income", "icon": "briefcase", "color": "#14b8a6"},
    {"name": "Investment", "type": "income", "icon": "trending-up", "color": "#8b5cf6"},
)

FALLBACK_CATEGORY = "Other"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_secs: int,
        ai_api_base_url: str,
        ai_api_key: str,
        ai_model: str,
        ai_timeout_secs: float,
        currency_code: str,
        currency_locale: str,
        default_confidence: float,
        category_taxonomy: tuple[dict[str, str], ...] = DEFAULT_CATEGORIES,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.ai_api_base_url = ai_api_base_url
        self.ai_api_key = ai_api_key
        self.ai_model = ai_model
        self.ai_timeout_secs = ai_timeout_secs
        self.currency_code = currency_code
        self.currency_locale = currency_locale
        self.default_confidence = default_confidence
        self.category_taxonomy = category_taxonomy

    @property
    def ai_configured(self) -> bool:
        return bool(self.ai_api_base_url and self.ai_api_key)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEY_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "money.db"
    database_url = os.getenv("MONEY_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONEY_TIMEZONE", "Asia/Ho_Chi_Minh")
    session_secret = os.getenv(
        "MONEY_SESSION_SECRET",
        "3f0c9d7e52a1b84c6e2f1a9d0b7c5e3a8f4d2c1b0a9e8d7c6b5a4f3e2d1c0b9a",
    )
    session_max_age_secs = int(
        os.getenv("MONEY_SESSION_MAX_AGE_SECS", str(30 * 24 * 60 * 60))
    )
    ai_api_base_url = os.getenv("MONEY_AI_API_BASE_URL", "").rstrip("/")
    ai_api_key = os.getenv("MONEY_AI_API_KEY", "")
    ai_model = os.getenv("MONEY_AI_MODEL", "gemini-2.5-flash-lite")
    ai_timeout_secs = float(os.getenv("MONEY_AI_TIMEOUT_SECS", "15"))
    currency_code = os.getenv("MONEY_CURRENCY_CODE", "VND")
    currency_locale = os.getenv("MONEY_CURRENCY_LOCALE", "vi-VN")
    default_confidence = float(os.getenv("MONEY_AI_DEFAULT_CONFIDENCE", "0.8"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        ai_api_base_url=ai_api_base_url,
        ai_api_key=ai_api_key,
        ai_model=ai_model,
        ai_timeout_secs=ai_timeout_secs,
        currency_code=currency_code,
        currency_locale=currency_locale,
        default_confidence=default_confidence,
    )
