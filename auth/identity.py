"""
auth/identity.py -- Social identity verification (Google, Facebook, LinkedIn, Apple).

The client finishes the provider's own login flow and posts us the provider
token. Each verifier here turns that token into a VerifiedIdentity or raises
IdentityVerificationFailed -- nothing else. The set of providers is closed and
dispatched explicitly through build_verifiers(); there is no runtime strategy
registration.

Security notes:
  [H1] Email verification is mandatory. A verifier only returns an identity
       whose email the provider confirms. An unverified address could be a
       victim's email added by an attacker.

  Audience: Google, Facebook and Apple tokens are checked against our own
       client/app id, so a token minted for some other application cannot be
       replayed here.

Outbound HTTP uses one requests.Session per verifier with a short timeout and
max_redirects=3, mirroring the fetcher layer.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import requests
from jose import JWTError, jwt

from auth.errors import IdentityVerificationFailed
from auth.models import Provider, VerifiedIdentity

logger = logging.getLogger("accountd.auth.identity")

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
FACEBOOK_GRAPH_URL = "https://graph.facebook.com/v19.0"
LINKEDIN_USERINFO_URL = "https://api.linkedin.com/v2/userinfo"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"

_TIMEOUT = 10


def _truthy(value: Any) -> bool:
    # Google tokeninfo and Apple sometimes send booleans as strings.
    return value is True or (isinstance(value, str) and value.lower() == "true")


def _new_session() -> requests.Session:
    session = requests.Session()
    session.max_redirects = 3
    return session


class SocialVerifier:
    """Base class: verify(token) -> VerifiedIdentity or raise."""

    provider: Provider

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or _new_session()

    def verify(self, token: str) -> VerifiedIdentity:
        raise NotImplementedError

    def _fail(self, reason: str) -> IdentityVerificationFailed:
        logger.warning("%s identity verification failed: %s", self.provider.value, reason)
        return IdentityVerificationFailed()

    def _get_json(self, url: str, **kwargs) -> dict:
        try:
            resp = self._session.get(url, timeout=_TIMEOUT, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise self._fail(f"request to {url} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise self._fail(f"unexpected payload from {url}")
        return data


class GoogleVerifier(SocialVerifier):
    """Verify a Google OAuth access token.

    Two calls are required, as with other providers that keep the profile out
    of the token:
      1. tokeninfo -- audience check and the verified-email flag.
      2. userinfo  -- display name and picture.
    """

    provider = Provider.google

    def __init__(self, client_id: str, session: requests.Session | None = None) -> None:
        super().__init__(session)
        self.client_id = client_id

    def verify(self, token: str) -> VerifiedIdentity:
        info = self._get_json(GOOGLE_TOKENINFO_URL, params={"access_token": token})
        if info.get("aud") != self.client_id and info.get("azp") != self.client_id:
            raise self._fail("token audience does not match client id")
        if not info.get("email") or not _truthy(info.get("email_verified")):
            raise self._fail("email missing or not verified")
        profile = self._get_json(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {token}"})
        return VerifiedIdentity(
            provider=self.provider,
            email=info["email"],
            subject=str(info.get("sub") or profile.get("sub", "")),
            name=profile.get("name", ""),
            picture=profile.get("picture"),
        )


class FacebookVerifier(SocialVerifier):
    """Verify a Facebook user access token.

    debug_token (authenticated with the app token) proves the user token was
    issued to our app. The Graph API only returns an email Facebook has
    confirmed, so a missing email is treated as unverified.
    """

    provider = Provider.facebook

    def __init__(self, app_id: str, app_secret: str, session: requests.Session | None = None) -> None:
        super().__init__(session)
        self.app_id = app_id
        self.app_secret = app_secret

    def verify(self, token: str) -> VerifiedIdentity:
        debug = self._get_json(
            f"{FACEBOOK_GRAPH_URL}/debug_token",
            params={"input_token": token, "access_token": f"{self.app_id}|{self.app_secret}"},
        ).get("data", {})
        if not debug.get("is_valid") or str(debug.get("app_id")) != self.app_id:
            raise self._fail("token not valid for this app")

        proof = hmac.new(self.app_secret.encode(), token.encode(), hashlib.sha256).hexdigest()
        me = self._get_json(
            f"{FACEBOOK_GRAPH_URL}/me",
            params={"fields": "id,name,email,picture", "access_token": token, "appsecret_proof": proof},
        )
        if not me.get("email") or not me.get("id"):
            raise self._fail("no confirmed email on profile")
        picture = (me.get("picture") or {}).get("data", {}).get("url")
        return VerifiedIdentity(
            provider=self.provider,
            email=me["email"],
            subject=str(me["id"]),
            name=me.get("name", ""),
            picture=picture,
        )


class LinkedInVerifier(SocialVerifier):
    """Verify a LinkedIn access token through the OpenID Connect userinfo endpoint."""

    provider = Provider.linkedin

    def verify(self, token: str) -> VerifiedIdentity:
        info = self._get_json(LINKEDIN_USERINFO_URL, headers={"Authorization": f"Bearer {token}"})
        if not info.get("email") or not info.get("sub") or not _truthy(info.get("email_verified")):
            raise self._fail("email missing or not verified")
        return VerifiedIdentity(
            provider=self.provider,
            email=info["email"],
            subject=str(info["sub"]),
            name=info.get("name", ""),
            picture=info.get("picture"),
        )


class AppleVerifier(SocialVerifier):
    """Verify a Sign in with Apple id_token against Apple's published JWKS.

    The id_token is an RS256 JWT. We pick the signing key by `kid`, then let
    python-jose check signature, expiry, issuer, and audience in one call.
    """

    provider = Provider.apple

    def __init__(self, client_id: str, session: requests.Session | None = None) -> None:
        super().__init__(session)
        self.client_id = client_id

    def verify(self, token: str) -> VerifiedIdentity:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as exc:
            raise self._fail("malformed id_token") from exc
        keys = self._get_json(APPLE_KEYS_URL).get("keys", [])
        key = next((k for k in keys if k.get("kid") == kid), None)
        if key is None:
            raise self._fail(f"no Apple signing key for kid={kid!r}")
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=APPLE_ISSUER,
                options={"verify_at_hash": False},
            )
        except JWTError as exc:
            raise self._fail(f"id_token rejected: {exc}") from exc
        if not claims.get("email") or not _truthy(claims.get("email_verified")):
            raise self._fail("email missing or not verified")
        return VerifiedIdentity(provider=self.provider, email=claims["email"], subject=str(claims["sub"]))


def build_verifiers(settings) -> dict[Provider, SocialVerifier]:
    """Return a verifier for every provider that is configured in settings.

    A provider without its client/app id is simply absent from the mapping;
    the service reports it as unavailable.
    """
    verifiers: dict[Provider, SocialVerifier] = {}
    if settings.google_client_id:
        verifiers[Provider.google] = GoogleVerifier(settings.google_client_id)
    if settings.facebook_app_id and settings.facebook_app_secret:
        verifiers[Provider.facebook] = FacebookVerifier(settings.facebook_app_id, settings.facebook_app_secret)
    if settings.linkedin_enabled:
        verifiers[Provider.linkedin] = LinkedInVerifier()
    if settings.apple_client_id:
        verifiers[Provider.apple] = AppleVerifier(settings.apple_client_id)
    for provider in verifiers:
        logger.info("%s identity verifier enabled", provider.value)
    return verifiers
