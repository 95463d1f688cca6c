"""
auth/tokens.py -- Token issuance: JWT access tokens, opaque secrets, password hashing.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry user id, email, role code, privilege names and a short expiry.
       Verification returns None on any failure -- the caller turns that into
       a 401.

  Refresh / reset secrets: secrets.token_urlsafe(32) gives 256 bits of
       entropy. Refresh secrets are stored as HMAC-SHA256(SECRET_KEY, secret)
       so lookup by hash is O(1) and a copy of the database alone cannot be
       turned back into a usable bearer token. bcrypt's slowness is
       unnecessary for secrets this long.

  Passwords: bcrypt, used directly. _DUMMY_HASH enables timing equalization
       in the login flow so response time does not reveal whether an email
       is registered.

  Everything time-dependent reads the injected Clock; everything random reads
  the injected secret factory. Tests replace both.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import ValidationError
from auth.models import AccessClaims, IssuedAccessToken, PasswordResetToken, RefreshToken, User, new_id
from core.clock import Clock, SystemClock
from core.config import Settings, get_settings

logger = logging.getLogger("credcore.auth")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt 5.x rejects input beyond 72 bytes; 4.x silently truncated it.
BCRYPT_MAX_BYTES = 72


def check_password(plain: str, field: str = "password") -> None:
    """Raise ValidationError unless plain is non-empty and fits bcrypt's 72-byte limit.

    The limit is in UTF-8 bytes, not characters: 20 emoji are 80 bytes.
    """
    if not plain:
        raise ValidationError("Password cannot be null or empty.", detail={"field": field})
    if len(plain.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(
            f"Password cannot be longer than {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.",
            detail={"field": field},
        )


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValidationError for empty or over-long passwords instead of
    letting bcrypt raise a bare ValueError.
    """
    check_password(plain)
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("credcore_timing_dummy")


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    return secrets.token_urlsafe(32)


def hash_secret(raw_secret: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw_secret) as a hex string.

    Deterministic, so the store can look tokens up by hash. Keyed, so an
    attacker who reads the table cannot test guesses without also knowing
    SECRET_KEY.
    """
    return hmac.new(key.encode(), raw_secret.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


class JWTSigner:
    """Encodes and verifies claim sets with a shared secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", issuer: str | None = None) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer

    def sign(self, claims: dict) -> str:
        payload = dict(claims)
        if self.issuer:
            payload["iss"] = self.issuer
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> dict | None:
        """Return the verified payload, or None on any signature/expiry/issuer failure."""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm], issuer=self.issuer)
        except JWTError:
            return None


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Creates every credential the core hands out and owns their expiry policy.

    Usage:
        issuer = TokenIssuer()
        raw, record = issuer.issue_refresh_token(user.id)
        store.save_refresh_token(record)     # persist the hash, return raw to the client
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock | None = None,
        signer: JWTSigner | None = None,
        secret_factory: Callable[[], str] = generate_secret,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.signer = signer or JWTSigner(
            self.settings.secret_key,
            algorithm=self.settings.jwt_algorithm,
            issuer=self.settings.jwt_issuer,
        )
        self.secret_factory = secret_factory

    @property
    def access_lifetime(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_expire_minutes)

    @property
    def refresh_lifetime(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_expire_days)

    @property
    def reset_window(self) -> timedelta:
        return timedelta(minutes=self.settings.password_reset_expire_minutes)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User, role_code: str, privileges: Iterable[str]) -> IssuedAccessToken:
        """Sign a short-lived access token carrying identity, role code and privileges."""
        now = self.clock.now()
        expires_at = now + self.access_lifetime
        jti = new_id()
        claims = {
            "sub": user.id,
            "email": user.email,
            "role": role_code,
            "privileges": sorted(privileges),
            "jti": jti,
            "type": "access",
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedAccessToken(token=self.signer.sign(claims), jti=jti, expires_at=expires_at)

    def decode_access_token(self, token: str) -> AccessClaims | None:
        """Verify an access token. Returns None on any failure, including refresh-type tokens.

        Expiry is checked against the injected clock as well as by jose, so a
        frozen test clock behaves the same as wall time.
        """
        payload = self.signer.verify(token)
        if payload is None or payload.get("type") != "access":
            return None
        try:
            claims = AccessClaims(
                user_id=payload["sub"],
                email=payload["email"],
                role=payload["role"],
                privileges=frozenset(payload.get("privileges", [])),
                jti=payload["jti"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Access token with malformed claims rejected")
            return None
        if claims.expires_at <= self.clock.now():
            return None
        return claims

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def hash_secret(self, raw_secret: str) -> str:
        return hash_secret(raw_secret, self.settings.secret_key)

    def issue_refresh_token(self, user_id: str) -> tuple[str, RefreshToken]:
        """Return (raw_secret, record). Only the record's hash is ever stored."""
        raw_secret = self.secret_factory()
        now = self.clock.now()
        record = RefreshToken(
            user_id=user_id,
            token_hash=self.hash_secret(raw_secret),
            created_at=now,
            expires_at=now + self.refresh_lifetime,
        )
        return raw_secret, record

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def issue_reset_token(self, user_id: str) -> PasswordResetToken:
        now = self.clock.now()
        return PasswordResetToken(
            user_id=user_id,
            token=self.secret_factory(),
            expires_at=now + self.reset_window,
            created_at=now,
        )
