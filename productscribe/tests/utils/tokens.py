from __future__ import annotations

from typing import Any, Callable, Mapping
from uuid import uuid4

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
import jwt

from productscribe.services.identity import (
    TOKEN_EXPIRED,
    TOKEN_MALFORMED,
    TOKEN_REVOKED,
    USER_DISABLED,
    identity_error,
)


_KEY_ID = "test-key"
_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_PRIVATE_PEM = _PRIVATE_KEY.private_bytes(
    serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
)
_PUBLIC_PEM = _PRIVATE_KEY.public_key().public_bytes(
    serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
)


class TokenIssuer:
    """Mints RS256 ID tokens and verifies them the way the identity provider would."""

    def __init__(self, project_id: str, clock: Callable[[], float]) -> None:
        self.project_id = project_id
        self._clock = clock
        self.revoked: set[str] = set()
        self.disabled: set[str] = set()

    def mint(
        self,
        uid: str,
        email: str,
        *,
        email_verified: bool = True,
        issued_at: float | None = None,
        auth_time: float | None = None,
        lifetime_s: int = 3600,
        audience: str | None = None,
        jti: str | None = None,
        **extra: Any,
    ) -> str:
        iat = int(issued_at if issued_at is not None else self._clock())
        claims: dict[str, Any] = {
            "iss": f"https://securetoken.google.com/{self.project_id}",
            "aud": audience or self.project_id,
            "sub": uid,
            "user_id": uid,
            "email": email,
            "email_verified": email_verified,
            "iat": iat,
            "auth_time": int(auth_time if auth_time is not None else iat),
            "exp": iat + lifetime_s,
            # A unique id per token so distinct requests never look like replays.
            "jti": jti or uuid4().hex,
            **extra,
        }
        return jwt.encode(claims, _PRIVATE_PEM, algorithm="RS256", headers={"kid": _KEY_ID})

    def headers(self, uid: str, email: str, **kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.mint(uid, email, **kwargs)}"}

    def decode(self, token: str) -> Mapping[str, Any]:
        # Signature checked here; audience, age and verification are left to the verifier.
        try:
            claims = jwt.decode(
                token,
                _PUBLIC_PEM,
                algorithms=["RS256"],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False, "verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            raise identity_error(TOKEN_MALFORMED) from exc
        if float(claims["exp"]) <= self._clock():
            raise identity_error(TOKEN_EXPIRED)
        uid = str(claims.get("user_id") or claims.get("sub"))
        if uid in self.revoked:
            raise identity_error(TOKEN_REVOKED)
        if uid in self.disabled:
            raise identity_error(USER_DISABLED)
        return claims
