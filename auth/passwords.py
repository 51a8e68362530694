"""
auth/passwords.py -- Password hashing, verification, and complexity rules.

Passwords: bcrypt used directly (no passlib wrapper). passlib's internal
wrap-bug detection builds a password longer than 72 bytes, which bcrypt 4.x
rejects, so the direct API is simpler.

Timing equalization [C1]: dummy_verify() runs a full bcrypt check against a
hash computed once at construction, so a login for an unknown email costs
the same as a login with a wrong password.

The same PasswordPolicy instance is shared by registration, login,
change-password, reset, and invite-accept so the rules cannot drift apart.
"""

from __future__ import annotations

import re

import bcrypt

# bcrypt only looks at the first 72 bytes of its input. Anything longer
# would be silently truncated, so it is rejected instead.
BCRYPT_MAX_BYTES = 72

_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"\d")


class PasswordPolicy:
    """bcrypt hashing plus the complexity rules every password must pass."""

    def __init__(self, min_length: int = 8, rounds: int = 12) -> None:
        self.min_length = min_length
        self.rounds = rounds
        self._dummy_hash = self.hash("accountd_timing_dummy1")

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if the plaintext matches the hash. Never raises."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash or over-long input.
            return False

    def dummy_verify(self, plain: str) -> None:
        """Burn one bcrypt check so the caller's timing matches a real verify [C1]."""
        self.verify(plain, self._dummy_hash)

    def validate(self, password: str, field: str = "password") -> list[dict]:
        """Return a list of {field, message} problems; empty when the password is acceptable."""
        problems: list[dict] = []
        if len(password) < self.min_length:
            problems.append({"field": field, "message": f"Password must be at least {self.min_length} characters."})
        if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
            problems.append({"field": field, "message": f"Password must be at most {BCRYPT_MAX_BYTES} bytes."})
        if not _LETTER_RE.search(password):
            problems.append({"field": field, "message": "Password must contain at least one letter."})
        if not _DIGIT_RE.search(password):
            problems.append({"field": field, "message": "Password must contain at least one digit."})
        return problems
