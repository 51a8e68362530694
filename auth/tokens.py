"""
auth/tokens.py -- JWT signing and verification for every token kind.

Security design decisions:
  JWT: python-jose with HS256. One codec signs access, refresh, reset, and
       invite tokens; the `kind` claim namespaces them. verify() insists on
       the kind the caller expects, so a reset token never authorizes a
       session and an access token never resets a password.

  Failures: signature, shape, and kind problems all raise TokenInvalid with
       the same message so a caller cannot learn which check tripped. Expiry
       raises TokenExpired (a TokenInvalid subclass) because clients need to
       know when a refresh is worth attempting.

  Fingerprints: refresh tokens are stored as HMAC-SHA256(secret, token), the
       same scheme as API key hashing. Deterministic, so the store can do a
       conditional UPDATE on the hash, and useless to anyone who reads the DB
       without the secret.

  Secret: handed in by the caller (built from core.config.get_settings() in
       the lifespan) and never mutated afterwards.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid, TokenKindMismatch
from auth.models import Role, TokenClaims, TokenKind

logger = logging.getLogger("accountd.auth.tokens")

_ALGORITHM = "HS256"
# Registered claims. issue() refuses them in **extra (sub/iat/exp/jti; role
# and kind are positional parameters) and verify() strips all of them from
# TokenClaims.extra.
_RESERVED = {"sub", "role", "kind", "iat", "exp", "jti"}


class TokenCodec:
    """Sign and verify kind-scoped JWTs.

    Usage:
        codec = TokenCodec(settings.secret_key, ttls={TokenKind.access: 900})
        token = codec.issue(42, Role.USER, TokenKind.access)
        claims = codec.verify(token, TokenKind.access)
    """

    def __init__(self, secret_key: str, ttls: dict[TokenKind, int] | None = None) -> None:
        if not secret_key:
            raise ValueError("TokenCodec requires a signing secret")
        self._secret = secret_key
        self._ttls = dict(ttls or {})

    def issue(
        self,
        subject_id: int,
        role: Role | None,
        kind: TokenKind,
        ttl: int | None = None,
        **extra,
    ) -> str:
        """Encode a signed token for subject_id.

        Args:
            subject_id: Principal id, stored as the string `sub` claim.
            role:       Included for access/refresh tokens; None for purpose tokens.
            kind:       Token namespace checked by verify().
            ttl:        Lifetime in seconds. Defaults to the per-kind TTL given
                        at construction.
            extra:      Additional claims (e.g. `ver` for purpose tokens).
        """
        clash = _RESERVED.intersection(extra)
        if clash:
            raise ValueError(f"Reserved claim names in extra: {sorted(clash)}")
        lifetime = ttl if ttl is not None else self._ttls.get(kind)
        if lifetime is None:
            raise ValueError(f"No lifetime configured for {kind.value} tokens")
        now = int(time.time())
        payload = {
            "sub": str(subject_id),
            "kind": kind.value,
            "iat": now,
            "exp": now + lifetime,
            "jti": secrets.token_urlsafe(16),
            **extra,
        }
        if role is not None:
            payload["role"] = Role(role).value
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """Decode a token and return its claims, or raise.

        Raises:
            TokenExpired: signature and kind are valid but `exp` is in the past.
            TokenInvalid: anything else -- bad signature, malformed payload,
                          or a `kind` other than expected_kind.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"require_exp": True, "require_iat": True, "require_sub": True, "leeway": 0},
            )
        except ExpiredSignatureError as exc:
            # The signature has already been checked at this point. Only
            # report expiry for the kind the caller asked for.
            if jwt.get_unverified_claims(token).get("kind") != expected_kind.value:
                raise TokenKindMismatch() from exc
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc

        if payload.get("kind") != expected_kind.value:
            logger.info("Rejected %s token presented as %s", payload.get("kind"), expected_kind.value)
            raise TokenKindMismatch()

        try:
            subject_id = int(payload["sub"])
            role = Role(payload["role"]) if "role" in payload else None
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if expected_kind in (TokenKind.access, TokenKind.refresh) and role is None:
            raise TokenInvalid()

        return TokenClaims(
            subject_id=subject_id,
            kind=expected_kind,
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            role=role,
            extra={k: v for k, v in payload.items() if k not in _RESERVED},
        )

    def fingerprint(self, token: str) -> str:
        """Return HMAC-SHA256(secret, token) as hex -- what the store keeps for refresh tokens."""
        return hmac.new(self._secret.encode(), token.encode(), hashlib.sha256).hexdigest()
