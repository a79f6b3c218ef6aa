from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from app.core.config import Settings, get_settings
from app.core.errors import AuthRequired


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: str


def create_access_token(
    user_id: str,
    email: str,
    *,
    settings: Settings | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    settings = settings or get_settings()
    issued_at = datetime.now(timezone.utc)
    expire = issued_at + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload: dict[str, Any] = {
        "sub": user_id,
        "userId": user_id,
        "email": email,
        "iat": issued_at,
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


class JwtAuthenticator:
    """Verifies bearer credentials and yields the caller's identity.

    Expiry and the presence of ``userId``/``sub`` and ``email`` are
    enforced; anything else is rejected as invalid.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def verify(self, raw_credential: str | None) -> AuthenticatedUser:
        token = (raw_credential or "").strip()
        if token[:7].lower() == "bearer ":
            token = token[7:].strip()
        if not token:
            raise AuthRequired("Authentication required", reason="missing")
        if token.count(".") != 2:
            raise AuthRequired("Malformed token", reason="malformed")

        try:
            payload = jwt.decode(
                token,
                self._settings.jwt_secret,
                algorithms=[self._settings.jwt_algorithm],
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as exc:
            raise AuthRequired("Token expired", reason="expired") from exc
        except JWTError as exc:
            raise AuthRequired("Invalid token", reason="invalid") from exc

        if not isinstance(payload, dict):
            raise AuthRequired("Malformed token", reason="malformed")
        user_id = payload.get("userId") or payload.get("sub")
        email = payload.get("email")
        if not isinstance(user_id, str) or not user_id:
            raise AuthRequired("Invalid token subject", reason="invalid")
        if not isinstance(email, str) or not email:
            raise AuthRequired("Invalid token email", reason="invalid")
        return AuthenticatedUser(user_id=user_id, email=email.lower())
