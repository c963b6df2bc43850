from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any, Callable, Mapping

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
import jwt

from productscribe.core.config import Settings
from productscribe.core.errors import IdentityVerificationError, ProviderConfigError
from productscribe.core.primitives import TimeProvider
from productscribe.services.token_replay import token_id_for


logger = logging.getLogger(__name__)

TOKEN_MISSING = "TOKEN_MISSING"
TOKEN_MALFORMED = "TOKEN_MALFORMED"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
TOKEN_REVOKED = "TOKEN_REVOKED"
USER_DISABLED = "USER_DISABLED"
INVALID_AUDIENCE = "INVALID_AUDIENCE"
TOKEN_TOO_OLD = "TOKEN_TOO_OLD"
SESSION_EXPIRED = "SESSION_EXPIRED"
EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
MISSING_CLAIMS = "MISSING_CLAIMS"
VERIFICATION_TIMEOUT = "VERIFICATION_TIMEOUT"
VERIFICATION_FAILED = "VERIFICATION_FAILED"

_MESSAGES = {
    TOKEN_MISSING: "Authentication required",
    TOKEN_MALFORMED: "Invalid token format",
    TOKEN_EXPIRED: "Token expired",
    TOKEN_REVOKED: "Token revoked",
    USER_DISABLED: "Account disabled",
    INVALID_AUDIENCE: "Invalid token audience",
    TOKEN_TOO_OLD: "Token too old, please refresh",
    SESSION_EXPIRED: "Session expired, please sign in again",
    EMAIL_NOT_VERIFIED: "Email verification required",
    MISSING_CLAIMS: "Token is missing required claims",
    VERIFICATION_TIMEOUT: "Authentication service timeout",
    VERIFICATION_FAILED: "Authentication service unavailable",
}

# A decoder verifies signature, expiry and revocation and returns the raw claim set.
TokenDecoder = Callable[[str], Mapping[str, Any]]


def identity_error(kind: str, *, status_code: int | None = None) -> IdentityVerificationError:
    if status_code is None:
        if kind in (VERIFICATION_TIMEOUT, VERIFICATION_FAILED):
            status_code = 503
        elif kind == EMAIL_NOT_VERIFIED:
            status_code = 403
        else:
            status_code = 401
    return IdentityVerificationError(kind, _MESSAGES.get(kind, "Authentication failed"), status_code=status_code)


@dataclass(frozen=True)
class VerifiedClaims:
    user_id: str
    email: str
    email_verified: bool
    auth_time: int
    issued_at: int
    token_id: str | None
    revocation_checked: bool = True
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class IdentityPolicy:
    project_id: str | None
    timeout_ms: int
    token_min_length: int
    token_max_age_s: int
    session_max_age_s: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityPolicy":
        return cls(
            project_id=settings.firebase_project_id,
            timeout_ms=settings.identity_timeout_ms,
            token_min_length=settings.token_min_length,
            token_max_age_s=settings.token_max_age_s,
            session_max_age_s=settings.session_max_age_s,
        )


class FirebaseTokenDecoder:
    """Revocation-aware verification through the Firebase Admin SDK."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._app: firebase_admin.App | None = None
        self._lock = threading.Lock()

    def _get_app(self) -> firebase_admin.App:
        # Initialize a dedicated named app once per process.
        if self._app is not None:
            return self._app
        with self._lock:
            if self._app is None:
                settings = self._settings
                if not (settings.firebase_project_id and settings.firebase_client_email and settings.firebase_private_key):
                    raise ProviderConfigError("Firebase admin credentials are not configured")
                cred = credentials.Certificate(
                    {
                        "type": "service_account",
                        "project_id": settings.firebase_project_id,
                        "client_email": settings.firebase_client_email,
                        # Env files carry the PEM with literal \n sequences.
                        "private_key": settings.firebase_private_key.replace("\\n", "\n"),
                        "token_uri": "https://oauth2.googleapis.com/token",
                    }
                )
                try:
                    self._app = firebase_admin.get_app(settings.app_name)
                except ValueError:
                    self._app = firebase_admin.initialize_app(
                        cred, {"projectId": settings.firebase_project_id}, name=settings.app_name
                    )
        return self._app

    def __call__(self, token: str) -> Mapping[str, Any]:
        app = self._get_app()
        try:
            return firebase_auth.verify_id_token(token, app=app, check_revoked=True)
        except firebase_auth.ExpiredIdTokenError as exc:
            raise identity_error(TOKEN_EXPIRED) from exc
        except firebase_auth.RevokedIdTokenError as exc:
            raise identity_error(TOKEN_REVOKED) from exc
        except firebase_auth.UserDisabledError as exc:
            raise identity_error(USER_DISABLED) from exc
        except firebase_auth.CertificateFetchError as exc:
            raise identity_error(VERIFICATION_FAILED) from exc
        except firebase_auth.InvalidIdTokenError as exc:
            raise identity_error(TOKEN_MALFORMED) from exc
        except ValueError as exc:
            raise identity_error(TOKEN_MALFORMED) from exc


class IdentityVerifier:
    def __init__(
        self,
        decoder: TokenDecoder,
        policy: IdentityPolicy,
        *,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._decoder = decoder
        self._policy = policy
        self._time = time_provider or time.time

    def _check_structure(self, token: str | None) -> str:
        # Cheap structural checks keep garbage away from the identity provider.
        if not token:
            raise identity_error(TOKEN_MISSING)
        token = token.strip()
        if len(token) < self._policy.token_min_length or token.count(".") != 2:
            raise identity_error(TOKEN_MALFORMED)
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise identity_error(TOKEN_MALFORMED) from exc
        if not header.get("alg") or header.get("alg") == "none":
            raise identity_error(TOKEN_MALFORMED)
        return token

    async def _decode(self, token: str) -> Mapping[str, Any]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._decoder, token),
                timeout=self._policy.timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError as exc:
            logger.error("identity_verification_timeout timeout_ms=%s", self._policy.timeout_ms)
            raise identity_error(VERIFICATION_TIMEOUT) from exc
        except (IdentityVerificationError, ProviderConfigError):
            raise
        except Exception as exc:  # noqa: BLE001 - unknown provider failures deny
            logger.error("identity_verification_failed error=%s", type(exc).__name__)
            raise identity_error(VERIFICATION_FAILED) from exc

    async def verify(self, token: str | None) -> VerifiedClaims:
        token = self._check_structure(token)
        try:
            claims = await self._decode(token)
        except ProviderConfigError as exc:
            logger.error("identity_provider_not_configured")
            raise identity_error(VERIFICATION_FAILED) from exc

        if self._policy.project_id is None or claims.get("aud") != self._policy.project_id:
            raise identity_error(INVALID_AUDIENCE)
        user_id = claims.get("uid") or claims.get("user_id") or claims.get("sub")
        email = claims.get("email")
        issued_at = claims.get("iat")
        if not user_id or not email or issued_at is None:
            raise identity_error(MISSING_CLAIMS)

        now = self._time()
        if now - float(issued_at) > self._policy.token_max_age_s:
            raise identity_error(TOKEN_TOO_OLD)
        auth_time = claims.get("auth_time", issued_at)
        if now - float(auth_time) > self._policy.session_max_age_s:
            raise identity_error(SESSION_EXPIRED)
        if claims.get("email_verified") is not True:
            raise identity_error(EMAIL_NOT_VERIFIED)

        return VerifiedClaims(
            user_id=str(user_id),
            email=str(email).lower(),
            email_verified=True,
            auth_time=int(auth_time),
            issued_at=int(issued_at),
            token_id=token_id_for({**claims, "uid": user_id}),
            revocation_checked=True,
            raw=dict(claims),
        )
