"""
auth/purpose.py -- Single-use tokens for password reset and invitations.

Purpose tokens are signed by the same TokenCodec as session tokens but carry
kind=reset or kind=invite, so verify() refuses them anywhere a session token
is expected (and vice versa).

Single use: every purpose token embeds the principal's token_version as the
`ver` claim. consume() only succeeds while the stored version still matches,
and it bumps the version in the same conditional UPDATE that applies the
caller's field changes (new password hash, active flag). After that, every
token carrying the old version -- including the one just used -- fails. A
password change bumps the version too, which kills outstanding reset links.
"""

from __future__ import annotations

import logging

from auth.errors import TokenInvalid
from auth.models import Principal, TokenKind
from auth.store import UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("accountd.auth.purpose")

PURPOSE_KINDS = (TokenKind.reset, TokenKind.invite)


class PurposeTokenIssuer:
    def __init__(self, codec: TokenCodec, store: UserStore) -> None:
        self._codec = codec
        self._store = store

    def issue_reset_token(self, principal: Principal) -> str:
        return self._issue(principal, TokenKind.reset)

    def issue_invite_token(self, principal: Principal) -> str:
        return self._issue(principal, TokenKind.invite)

    def _issue(self, principal: Principal, kind: TokenKind) -> str:
        return self._codec.issue(principal.id, None, kind, ver=principal.token_version)

    def peek(self, token: str, kind: TokenKind) -> Principal:
        """Verify a purpose token without consuming it; return its principal.

        Raises TokenExpired / TokenInvalid exactly as consume() would.
        """
        if kind not in PURPOSE_KINDS:
            raise ValueError(f"{kind.value} is not a purpose token kind")
        claims = self._codec.verify(token, kind)
        principal = self._store.get_by_id(claims.subject_id)
        if principal is None or claims.extra.get("ver") != principal.token_version:
            raise TokenInvalid()
        return principal

    def consume(self, token: str, kind: TokenKind, **updates) -> int:
        """Verify and spend a purpose token; return the subject id.

        `updates` are principal fields written in the same atomic statement
        that invalidates the token. If another request spent the token first,
        raises TokenInvalid and writes nothing.
        """
        principal = self.peek(token, kind)
        if not self._store.consume_token_version(principal.id, principal.token_version, **updates):
            logger.warning("Purpose token for user_id=%s lost a consume race", principal.id)
            raise TokenInvalid()
        logger.info("Consumed %s token for user_id=%s", kind.value, principal.id)
        return principal.id
