from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import Settings, get_settings


SESSION_COOKIE_NAME = "money_app_session"


def _serializer(settings: Optional[Settings] = None) -> URLSafeTimedSerializer:
    settings = settings or get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="money-session")


def issue_session_token(user_id: str, settings: Optional[Settings] = None) -> str:
    if not user_id:
        raise ValueError("User id is required")
    return _serializer(settings).dumps({"u": user_id})


def read_session_token(
    token: Optional[str], settings: Optional[Settings] = None
) -> Optional[str]:
    if not token:
        return None
    settings = settings or get_settings()
    try:
        data = _serializer(settings).loads(
            token, max_age=settings.session_max_age_secs
        )
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("u")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id
