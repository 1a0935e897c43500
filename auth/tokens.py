"""
auth/tokens.py -- Opaque token generation, JWT access tokens, token digests.

Security design decisions:
  Opaque tokens: secrets.token_urlsafe() over at least 32 bytes of CSPRNG
       output (64 for refresh tokens). Collisions are negligible and not
       handled; the UNIQUE index on token_hash would reject one anyway.

  Storage: opaque tokens are never persisted raw. hash_token() returns
       HMAC-SHA256(SECRET_KEY, raw_token). The digest is deterministic, so the
       store can look a presented token up in O(1) through its UNIQUE index,
       and a leaked database does not yield usable invite, reset or refresh
       tokens without SECRET_KEY as well.

  JWT: python-jose with HS256. Access tokens carry sub (user id), email,
       username, iss, aud, iat and exp. decode_access_token() verifies all of
       them and returns None on any failure -- the dependency layer turns that
       into a 401. validate_expired_access_token() checks the signature and
       algorithm only, for identity extraction from a token that may already
       have expired.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import InvalidSignature
from auth.models import AccessToken, RefreshToken
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.models import User

ALGORITHM = "HS256"

MIN_TOKEN_BYTES = 32
REFRESH_TOKEN_BYTES = 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_secure_token(nbytes: int = MIN_TOKEN_BYTES) -> str:
    """Return a URL-safe random token built from nbytes of CSPRNG output."""
    if nbytes < MIN_TOKEN_BYTES:
        raise ValueError(f"Opaque tokens need at least {MIN_TOKEN_BYTES} random bytes, got {nbytes}.")
    return secrets.token_urlsafe(nbytes)


class TokenService:
    """Mints signed access tokens and opaque refresh tokens.

    Usage:
        tokens = TokenService()
        access = tokens.issue_access_token(user)
        refresh = tokens.issue_refresh_token(user.id)   # caller persists it
        claims = tokens.decode_access_token(access.token)
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._secret = self._settings.secret_key
        self.access_ttl = timedelta(minutes=self._settings.access_token_expire_minutes)
        self.refresh_ttl = timedelta(days=self._settings.refresh_token_expire_days)

    # ------------------------------------------------------------------
    # Access tokens (JWT)
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User) -> AccessToken:
        """Sign a fresh access token for user, valid for the configured TTL."""
        now = self._clock().replace(microsecond=0)
        expires_at = now + self.access_ttl
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "username": user.username,
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        return AccessToken(token=token, user_id=user.id, expires_at=expires_at)

    def decode_access_token(self, token: str) -> dict | None:
        """Fully verify an access token. Returns the claims or None on any failure.

        Expiry is checked against this service's clock rather than jose's
        wall-clock check so both sides of the token lifecycle agree on "now".
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or self._clock().timestamp() >= exp:
            return None
        if "sub" not in claims:
            return None
        return claims

    def validate_expired_access_token(self, token: str) -> dict:
        """Verify signature and algorithm only; expiry, issuer and audience are ignored.

        Raises InvalidSignature when the header names a different algorithm,
        the signature does not match, or the token is malformed.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidSignature() from exc
        if str(header.get("alg", "")).upper() != ALGORITHM:
            raise InvalidSignature()
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except JWTError as exc:
            raise InvalidSignature() from exc

    # ------------------------------------------------------------------
    # Refresh tokens (opaque)
    # ------------------------------------------------------------------

    def issue_refresh_token(self, user_id: int) -> RefreshToken:
        """Mint an unsaved refresh token. The caller persists it."""
        raw = generate_secure_token(REFRESH_TOKEN_BYTES)
        return RefreshToken(
            token=raw,
            token_hash=self.hash_token(raw),
            user_id=user_id,
            expires_at=self._clock() + self.refresh_ttl,
        )

    # ------------------------------------------------------------------
    # At-rest digest for opaque tokens
    # ------------------------------------------------------------------

    def hash_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
        return hmac.new(self._secret.encode(), raw_token.encode(), hashlib.sha256).hexdigest()
