"""
auth/refresh.py -- The single currently-valid refresh token per principal.

Backed by one column on the users table (refresh_token_hash), not a table of
sessions, so each account has at most one live refresh token: minting a new
one on any device invalidates the previous one, and logout clears it.

Rotation is a compare-and-set executed by the store as one conditional
UPDATE. Reading the current hash and writing the new one in two calls would
let two concurrent refreshes with the same stale token both succeed.
"""

from __future__ import annotations

import hmac
import logging

from auth.errors import Revoked
from auth.store import UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("accountd.auth.refresh")


class RefreshStore:
    def __init__(self, store: UserStore, codec: TokenCodec) -> None:
        self._store = store
        self._codec = codec

    def rotate(self, subject_id: int, new_token: str, expected: str | None = None) -> None:
        """Make new_token the principal's only valid refresh token.

        With expected=None (fresh login) the token is stored unconditionally.
        Otherwise the swap only happens if the stored token is still
        `expected`; if it is not, raises Revoked and stores nothing.
        """
        new_hash = self._codec.fingerprint(new_token)
        if expected is None:
            if not self._store.set_refresh_token(subject_id, new_hash):
                raise Revoked()
            return
        if not self._store.swap_refresh_token(subject_id, self._codec.fingerprint(expected), new_hash):
            logger.warning("Stale refresh token presented for user_id=%s", subject_id)
            raise Revoked()

    def validate(self, subject_id: int, presented: str) -> None:
        """Raise Revoked unless presented is the principal's current refresh token."""
        principal = self._store.get_by_id(subject_id)
        stored = principal.refresh_token_hash if principal is not None else None
        if stored is None or not hmac.compare_digest(stored, self._codec.fingerprint(presented)):
            raise Revoked()

    def clear(self, subject_id: int) -> None:
        self._store.set_refresh_token(subject_id, None)
