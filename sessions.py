from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="user-session")


def issue_session_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def read_session_token(token: str, max_age_secs: Optional[int] = None) -> Optional[int]:
    """Return the user id carried by a token from the login service, or None."""
    if not token:
        return None
    if max_age_secs is None:
        max_age_secs = get_settings().session_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id <= 0:
        return None
    return user_id
