"""
auth/dependencies.py -- AuthorizationGate and its FastAPI Depends() helpers.

Every protected route runs the same sequence before its handler:

  Unauthenticated -> TokenExtracted -> TokenVerified -> RoleChecked -> Authorized

  1. Extract the bearer token from the Authorization header   (MissingToken)
  2. Verify it as an *access* token                           (TokenInvalid / TokenExpired)
  3. Load the principal it names                              (PrincipalNotFound)
  4. Refuse blocked or deactivated accounts                   (AccountBlocked)
  5. Check the role against the route's allowed set           (Forbidden)

Identity comes only from the header. Query-string or body fields that claim
a user id are never consulted, and refresh tokens are refused at step 2
because their kind is "refresh".

Roles have no implicit hierarchy: a route that admits ADMIN must list it.

Layer rule: this module may import from fastapi because it is part of the
dependency injection system; the gate itself (AuthorizationGate) does not.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from fastapi import Request

from auth.errors import AccountBlocked, Forbidden, MissingToken, PrincipalNotFound
from auth.models import AuthContext, Role, TokenKind
from auth.store import UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("accountd.auth.gate")

_BEARER_PREFIX = "bearer "


def extract_bearer(authorization: str | None) -> str:
    """Return the token from an `Authorization: Bearer <token>` header value."""
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        raise MissingToken()
    token = authorization[len(_BEARER_PREFIX) :].strip()
    if not token:
        raise MissingToken()
    return token


class AuthorizationGate:
    def __init__(self, codec: TokenCodec, store: UserStore) -> None:
        self._codec = codec
        self._store = store

    def authorize(self, authorization: str | None, allowed_roles: Iterable[Role]) -> AuthContext:
        """Run the full gate for one request. Returns the context or raises."""
        token = extract_bearer(authorization)
        claims = self._codec.verify(token, TokenKind.access)
        principal = self._store.get_by_id(claims.subject_id)
        if principal is None:
            raise PrincipalNotFound()
        if principal.blocked:
            raise AccountBlocked()
        if not principal.active:
            raise AccountBlocked("This account is not active.")
        # The stored role wins over the claim, so a demotion applies to
        # access tokens issued before it.
        if principal.role not in set(allowed_roles):
            logger.info("user_id=%s role=%s refused", principal.id, principal.role.value)
            raise Forbidden()
        return AuthContext(principal_id=principal.id, role=principal.role, principal=principal)


def require_roles(*roles: Role) -> Callable[[Request], AuthContext]:
    """Build a dependency admitting exactly the given roles.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        async def route(ctx: AuthContext = Depends(require_roles(Role.ADMIN))): ...
    """
    if not roles:
        raise ValueError("require_roles() needs at least one role")
    allowed = frozenset(roles)

    def dependency(request: Request) -> AuthContext:
        gate: AuthorizationGate = request.app.state.gate
        return gate.authorize(request.headers.get("Authorization"), allowed)

    return dependency


require_user = require_roles(Role.USER, Role.ADMIN)
require_admin = require_roles(Role.ADMIN)
