"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these types only carry shape.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Provider(str, Enum):
    manual = "manual"
    google = "google"
    facebook = "facebook"
    linkedin = "linkedin"
    apple = "apple"


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"
    reset = "reset"
    invite = "invite"


@dataclass
class Principal:
    """An account record as stored by auth.store.UserStore.

    password_hash is None for social-only accounts and for invited users who
    have not accepted yet.

    refresh_token_hash holds HMAC-SHA256 of the single currently valid
    refresh token (None after logout). token_version is bumped every time a
    purpose token is consumed or the password changes, which invalidates any
    outstanding reset/invite token.
    """

    email: str
    name: str = ""
    id: int | None = None
    password_hash: str | None = None
    role: Role = Role.USER
    provider: Provider = Provider.manual
    provider_subject: str | None = None
    email_verified: bool = False
    active: bool = True
    blocked: bool = False
    refresh_token_hash: str | None = None
    token_version: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a signed token."""

    subject_id: int
    kind: TokenKind
    issued_at: int
    expires_at: int
    role: Role | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful login: a fresh token pair plus the principal."""

    tokens: TokenPair
    principal: Principal


@dataclass(frozen=True)
class VerifiedIdentity:
    """Identity returned by a social provider after its token was verified.

    email is only ever populated with an address the provider has confirmed.
    """

    provider: Provider
    email: str
    subject: str
    name: str = ""
    picture: str | None = None


@dataclass(frozen=True)
class AuthContext:
    """What AuthorizationGate hands to a protected handler."""

    principal_id: int
    role: Role
    principal: Principal
