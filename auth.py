from dataclasses import dataclass

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


class InvalidCallerToken(ValueError):
    pass


@dataclass(frozen=True)
class Caller:
    user_id: int
    role: str = "user"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="caller-token")


def issue_caller_token(user_id: int, role: str = "user") -> str:
    """Signed identity token; minted by the login service, read by every request."""
    return _serializer().dumps({"u": user_id, "r": role})


def read_caller_token(token: str) -> Caller:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_hours * 3600)
    except BadSignature as exc:
        raise InvalidCallerToken("Invalid or expired token") from exc

    user_id = data.get("u")
    if not isinstance(user_id, int):
        raise InvalidCallerToken("Token carries no user")
    return Caller(user_id=user_id, role=str(data.get("r", "user")))
