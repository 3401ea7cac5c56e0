from dataclasses import dataclass
from typing import Optional

import bcrypt
from fastapi import Request
from itsdangerous import BadData, URLSafeTimedSerializer

from config import get_settings
from errors import Forbidden
from models import User


@dataclass(frozen=True)
class TokenUser:
    id: int
    name: str
    since: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="auth-token")


def issue_token(user: User) -> str:
    payload = {"id": user.id, "name": user.name, "since": user.created_at.isoformat()}
    return _serializer().dumps(payload)


def read_token(token: str, max_age_secs: Optional[int] = None) -> TokenUser:
    if max_age_secs is None:
        max_age_secs = get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadData as exc:
        raise Forbidden("Unknown user") from exc

    if not isinstance(data, dict):
        raise Forbidden("Unknown user")
    user_id = data.get("id")
    name = data.get("name")
    since = data.get("since")
    if (
        not isinstance(user_id, int)
        or not isinstance(name, str)
        or not isinstance(since, str)
    ):
        raise Forbidden("Unknown user")
    return TokenUser(id=user_id, name=name, since=since)


def token_matches(token_user: TokenUser, user: User) -> bool:
    """True when the token was issued to this very account, not just this id."""
    return token_user.id == user.id and token_user.since == user.created_at.isoformat()


def current_user(request: Request) -> TokenUser:
    header = request.headers.get("Authorization", "")
    parts = header.split()
    if len(parts) != 2 or parts[0] != "Bearer":
        raise Forbidden("Unknown user")
    return read_token(parts[1])
