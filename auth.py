import time

import bcrypt
from itsdangerous import BadSignature, URLSafeSerializer

from config import Settings
from errors import Unauthenticated


def _serializer(settings: Settings) -> URLSafeSerializer:
    return URLSafeSerializer(settings.token_secret, salt="access-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def issue_access_token(user_id: int, settings: Settings) -> str:
    serializer = _serializer(settings)
    timestamp = int(time.time())
    expiry = timestamp + (settings.token_max_age_hours * 3600)

    token_data = {"u": user_id, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def resolve_user_id(token: str, settings: Settings) -> int:
    """Return the user id carried by a bearer token.

    Raises ``Unauthenticated`` for a bad signature, a malformed payload or an
    expired token.
    """
    serializer = _serializer(settings)
    try:
        data = serializer.loads(token)
    except BadSignature as exc:
        raise Unauthenticated("Invalid token") from exc

    if not isinstance(data, dict) or not isinstance(data.get("u"), int):
        raise Unauthenticated("Invalid token")

    current_time = int(time.time())
    expiry_time = data.get("exp", 0)

    if current_time > expiry_time:
        raise Unauthenticated("Token expired")

    return data["u"]
