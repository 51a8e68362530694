"""
auth/service.py -- AuthenticationService: login, sessions, passwords, invitations.

Every collaborator is passed in at construction (see build_auth_service());
nothing here reads settings or creates connections on its own.

Security:
  [C1] Credential login always runs bcrypt, against a dummy hash when the
       email is unknown, so response time does not reveal account existence.
       Unknown email, wrong password, password-less and deactivated
       accounts all fail with the same InvalidCredentials.

  Enumeration: request_password_reset() returns nothing and raises nothing
       for unknown emails; the HTTP layer answers identically either way.

  Sessions: one refresh token per principal. refresh() swaps it with a
       compare-and-set, logout() clears it, blocking an account clears it.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountBlocked,
    Conflict,
    IdentityVerificationFailed,
    InvalidCredentials,
    NotFound,
    PasswordMismatch,
    TokenInvalid,
    ValidationError,
    WrongCurrentPassword,
)
from auth.identity import SocialVerifier
from auth.models import AuthResult, Principal, Provider, Role, TokenKind, TokenPair
from auth.passwords import PasswordPolicy
from auth.purpose import PurposeTokenIssuer
from auth.refresh import RefreshStore
from auth.store import UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("accountd.auth.service")


class Mailer(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_invitation(self, to_email: str, token: str) -> bool: ...


class AuthenticationService:
    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        refresh_tokens: RefreshStore,
        purpose_tokens: PurposeTokenIssuer,
        passwords: PasswordPolicy,
        mailer: Mailer,
        verifiers: dict[Provider, SocialVerifier] | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.purpose_tokens = purpose_tokens
        self.passwords = passwords
        self.mailer = mailer
        self.verifiers = dict(verifiers or {})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_session(self, principal: Principal, expected_refresh: str | None = None) -> TokenPair:
        access = self.codec.issue(principal.id, principal.role, TokenKind.access)
        refresh = self.codec.issue(principal.id, principal.role, TokenKind.refresh)
        self.refresh_tokens.rotate(principal.id, refresh, expected=expected_refresh)
        return TokenPair(access_token=access, refresh_token=refresh)

    def _login(self, principal: Principal) -> AuthResult:
        tokens = self._issue_session(principal)
        self.store.update_last_login(principal.id)
        return AuthResult(tokens=tokens, principal=self._require(principal.id))

    def _require(self, user_id: int) -> Principal:
        principal = self.store.get_by_id(user_id)
        if principal is None:
            raise NotFound("User not found.")
        return principal

    def _check_new_password(self, password: str, confirm_password: str) -> None:
        if password != confirm_password:
            raise PasswordMismatch(errors=[{"field": "confirmPassword", "message": "Passwords do not match."}])
        problems = self.passwords.validate(password)
        if problems:
            raise ValidationError("Password does not meet the requirements.", errors=problems)

    def _create(self, principal: Principal) -> Principal:
        try:
            user_id = self.store.create_user(principal)
        except IntegrityError as exc:
            raise Conflict() from exc
        return self._require(user_id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str, confirm_password: str) -> Principal:
        """Create a USER account with a password. Conflict if the email is taken."""
        self._check_new_password(password, confirm_password)
        principal = self._create(Principal(email=email, name=name, password_hash=self.passwords.hash(password)))
        logger.info("Registered user_id=%s", principal.id)
        return principal

    def create_admin(self, name: str, email: str, password: str, confirm_password: str) -> Principal:
        self._check_new_password(password, confirm_password)
        principal = self._create(
            Principal(
                email=email,
                name=name,
                password_hash=self.passwords.hash(password),
                role=Role.ADMIN,
                email_verified=True,
            )
        )
        logger.info("Created admin user_id=%s", principal.id)
        return principal

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login_with_credentials(self, email: str, password: str) -> AuthResult:
        """Email + password login with timing equalization [C1]."""
        principal = self.store.get_by_email(email)
        if principal is None or principal.password_hash is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            self.passwords.dummy_verify(password)
            raise InvalidCredentials()
        if not self.passwords.verify(password, principal.password_hash):
            raise InvalidCredentials()
        if principal.blocked:
            raise AccountBlocked()
        if not principal.active:
            # Deactivated accounts look like any other failed login.
            raise InvalidCredentials()
        logger.info("Credential login for user_id=%s", principal.id)
        return self._login(principal)

    def login_with_social_identity(self, provider: Provider, verified_email: str, verified_profile: dict) -> AuthResult:
        """Find or create the principal for an email a provider has already verified.

        New accounts get provider=<provider>, email_verified=True and no
        password. Existing accounts are marked email_verified; accounts that
        have no password of their own (social-only, pending invitations) are
        also switched to this provider and activated.
        """
        provider = Provider(provider)
        if provider is Provider.manual:
            raise ValidationError("Social login requires a social provider.")

        principal = self.store.get_by_email(verified_email)
        if principal is None:
            try:
                user_id = self.store.create_user(
                    Principal(
                        email=verified_email,
                        name=verified_profile.get("name") or "",
                        provider=provider,
                        provider_subject=verified_profile.get("subject"),
                        email_verified=True,
                        active=True,
                    )
                )
            except IntegrityError:
                # A concurrent first login created it; use that record.
                principal = self.store.get_by_email(verified_email)
                if principal is None:
                    raise
            else:
                logger.info("Created %s account user_id=%s", provider.value, user_id)
                return self._login(self._require(user_id))

        if principal.blocked:
            raise AccountBlocked()
        updates: dict = {}
        if not principal.email_verified:
            updates["email_verified"] = True
        if principal.password_hash is None:
            if principal.provider is not provider:
                updates["provider"] = provider
                updates["provider_subject"] = verified_profile.get("subject")
            if not principal.active:
                updates["active"] = True
        elif not principal.active:
            raise AccountBlocked("This account is not active.")
        if updates.get("active"):
            # Activating a pending invitation spends it, so the emailed link
            # can no longer set a password on this account.
            if not self.store.consume_token_version(principal.id, principal.token_version, **updates):
                raise Conflict("The account was modified concurrently. Please try again.")
        elif updates:
            self.store.update_user(principal.id, **updates)
        logger.info("%s login for user_id=%s", provider.value, principal.id)
        return self._login(principal)

    def social_login(self, provider: Provider, provider_token: str) -> AuthResult:
        """Verify a provider token with the matching verifier, then log in."""
        verifier = self.verifiers.get(Provider(provider))
        if verifier is None:
            raise IdentityVerificationFailed(f"{Provider(provider).value} login is not enabled.")
        identity = verifier.verify(provider_token)
        profile = {"name": identity.name, "subject": identity.subject, "picture": identity.picture}
        return self.login_with_social_identity(identity.provider, identity.email, profile)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def refresh(self, presented_refresh_token: str) -> TokenPair:
        """Exchange the current refresh token for a new access + refresh pair.

        The presented token must be the one stored for the principal; the
        swap is atomic, so it succeeds at most once.
        """
        claims = self.codec.verify(presented_refresh_token, TokenKind.refresh)
        principal = self.store.get_by_id(claims.subject_id)
        if principal is None:
            raise TokenInvalid()
        if principal.blocked:
            raise AccountBlocked()
        self.refresh_tokens.validate(principal.id, presented_refresh_token)
        return self._issue_session(principal, expected_refresh=presented_refresh_token)

    def logout(self, subject_id: int) -> None:
        self.refresh_tokens.clear(subject_id)
        logger.info("Logout for user_id=%s", subject_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(
        self,
        subject_id: int,
        current_password: str | None,
        new_password: str,
        confirm_password: str,
    ) -> None:
        """Change (or, for password-less social accounts, set) the password.

        Accounts that already have a password must prove it. The version bump
        invalidates any reset link issued before the change.
        """
        self._check_new_password(new_password, confirm_password)
        principal = self._require(subject_id)
        if principal.password_hash is not None:
            if not current_password or not self.passwords.verify(current_password, principal.password_hash):
                raise WrongCurrentPassword(errors=[{"field": "currentPassword", "message": "Incorrect password."}])
        new_hash = self.passwords.hash(new_password)
        if not self.store.consume_token_version(principal.id, principal.token_version, password_hash=new_hash):
            raise Conflict("The account was modified concurrently. Please try again.")
        logger.info("Password changed for user_id=%s", principal.id)

    def request_password_reset(self, email: str) -> None:
        """Email a reset link if the account exists. Never signals either way.

        Pending invitations (inactive, no password) get nothing: they finish
        through their invitation link, and a reset would void it.
        """
        principal = self.store.get_by_email(email)
        if principal is None or principal.blocked:
            logger.info("Password reset requested for unknown or blocked account")
            return
        if not principal.active and principal.password_hash is None:
            logger.info("Password reset requested for pending invitation user_id=%s", principal.id)
            return
        token = self.purpose_tokens.issue_reset_token(principal)
        try:
            self.mailer.send_password_reset(principal.email, token)
        except Exception:
            # Best-effort delivery: a mail failure must not change the response.
            logger.exception("Password reset email failed for user_id=%s", principal.id)

    def reset_password(self, token: str, new_password: str, confirm_password: str) -> None:
        """Spend a reset token and set the new password; other sessions are logged out."""
        self._check_new_password(new_password, confirm_password)
        subject_id = self.purpose_tokens.consume(
            token,
            TokenKind.reset,
            password_hash=self.passwords.hash(new_password),
            email_verified=True,
        )
        self.refresh_tokens.clear(subject_id)
        logger.info("Password reset for user_id=%s", subject_id)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def invite_user(self, email: str, name: str = "") -> Principal:
        """Create (or re-invite) an inactive account and email it an invitation.

        Re-inviting a pending account bumps its token version, so only the
        newest invitation link works.
        """
        principal = self.store.get_by_email(email)
        if principal is None:
            principal = self._create(Principal(email=email, name=name, active=False))
        elif principal.active or principal.password_hash is not None:
            raise Conflict()
        else:
            self.store.consume_token_version(principal.id, principal.token_version)
            principal = self._require(principal.id)

        token = self.purpose_tokens.issue_invite_token(principal)
        try:
            self.mailer.send_invitation(principal.email, token)
        except Exception:
            logger.exception("Invitation email failed for user_id=%s", principal.id)
        logger.info("Invited user_id=%s", principal.id)
        return principal

    def accept_invitation(self, token: str, password: str, confirm_password: str) -> AuthResult:
        """Spend an invite token, set the password, activate, and log in.

        A blocked invitee is refused before anything is written; the token
        stays unspent and the account stays inactive.
        """
        self._check_new_password(password, confirm_password)
        if self.purpose_tokens.peek(token, TokenKind.invite).blocked:
            raise AccountBlocked()
        subject_id = self.purpose_tokens.consume(
            token,
            TokenKind.invite,
            password_hash=self.passwords.hash(password),
            active=True,
            email_verified=True,
        )
        principal = self._require(subject_id)
        logger.info("Invitation accepted for user_id=%s", subject_id)
        return self._login(principal)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> Principal:
        return self._require(user_id)

    def list_users(self) -> list[Principal]:
        return self.store.list_users()

    def update_user(
        self,
        actor_id: int,
        user_id: int,
        *,
        name: str | None = None,
        role: Role | None = None,
        active: bool | None = None,
        blocked: bool | None = None,
    ) -> Principal:
        """Admin edit of name, role, and status.

        [M4] An admin cannot demote, deactivate, or block themselves, and the
        last active admin cannot be taken away. Blocking or deactivating an
        account revokes its refresh token.
        """
        target = self._require(user_id)
        updates: dict = {}
        if name is not None:
            updates["name"] = name
        if role is not None and Role(role) is not target.role:
            updates["role"] = Role(role)
        if active is not None:
            updates["active"] = active
        if blocked is not None:
            updates["blocked"] = blocked
        if not updates:
            raise ValidationError("No fields to update.")

        loses_admin = target.role is Role.ADMIN and (
            updates.get("role", Role.ADMIN) is not Role.ADMIN
            or updates.get("active") is False
            or updates.get("blocked") is True
        )
        if loses_admin and target.id == actor_id:
            raise ValidationError("You cannot remove your own admin access.")
        if loses_admin and target.active and not target.blocked and self.store.count_active_admins() <= 1:
            raise ValidationError("Cannot remove the last active admin.")

        self.store.update_user(user_id, **updates)
        if updates.get("blocked") is True or updates.get("active") is False:
            self.refresh_tokens.clear(user_id)
        logger.info("user_id=%s updated user_id=%s (%s)", actor_id, user_id, ", ".join(sorted(updates)))
        return self._require(user_id)

    def delete_user(self, actor_id: int, user_id: int) -> None:
        if user_id == actor_id:
            raise ValidationError("You cannot delete your own account.")
        if not self.store.delete_user(user_id):
            raise NotFound("User not found.")
        logger.info("user_id=%s deleted user_id=%s", actor_id, user_id)


def build_auth_service(settings, store: UserStore, mailer: Mailer, verifiers=None) -> AuthenticationService:
    """Wire the authentication object graph from Settings.

    Called once from the API lifespan and from manage.py; tests call it with
    their own Settings and store.
    """
    codec = TokenCodec(
        settings.secret_key,
        ttls={
            TokenKind.access: settings.access_token_expire_seconds,
            TokenKind.refresh: settings.refresh_token_expire_seconds,
            TokenKind.reset: settings.reset_token_expire_seconds,
            TokenKind.invite: settings.invite_token_expire_seconds,
        },
    )
    return AuthenticationService(
        store=store,
        codec=codec,
        refresh_tokens=RefreshStore(store, codec),
        purpose_tokens=PurposeTokenIssuer(codec, store),
        passwords=PasswordPolicy(min_length=settings.password_min_length, rounds=settings.bcrypt_rounds),
        mailer=mailer,
        verifiers=verifiers,
    )
