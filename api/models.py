"""
API request and response models for the accountd REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
separate from the dataclasses in auth/models.py, which own the internal
domain representation. Route handlers map between the two.

Wire format is camelCase (refreshToken, confirmPassword, ...) to match the
existing web client; Python attributes stay snake_case via the alias
generator. The social login bodies keep the providers' own field names
(access_token, id_token).
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from auth.models import Principal, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Emails and display names are trimmed. Passwords are never touched: a
# password is exactly the string the user typed.
Email = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255, pattern=EMAIL_PATTERN)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /register and POST /admin/create."""

    name: Name
    email: Email
    password: str = Field(min_length=1, max_length=255)
    confirm_password: str = Field(min_length=1, max_length=255)


class LoginRequest(_CamelModel):
    email: Email
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(_CamelModel):
    """currentPassword may be omitted by social accounts setting their first password."""

    current_password: Optional[str] = Field(default=None, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    confirm_password: str = Field(min_length=1, max_length=255)


class EmailRequest(_CamelModel):
    """Request body for POST /forgot-password."""

    email: Email


class InviteRequest(_CamelModel):
    email: Email
    name: Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)] = ""


class TokenPasswordRequest(_CamelModel):
    """Request body for POST /reset-password and POST /verify-invitation."""

    token: str = Field(min_length=1)
    password: str = Field(min_length=1, max_length=255)
    confirm_password: str = Field(min_length=1, max_length=255)


class SocialAccessTokenRequest(BaseModel):
    """Google, Facebook, and LinkedIn send the provider access token."""

    access_token: str = Field(min_length=1)


class SocialIdTokenRequest(BaseModel):
    """Sign in with Apple sends an id_token."""

    id_token: str = Field(min_length=1)


class UserUpdateRequest(_CamelModel):
    """Request body for PUT /admin/update/{id}. All fields optional."""

    name: Optional[Name] = None
    role: Optional[Role] = None
    active: Optional[bool] = None
    blocked: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_CamelModel):
    """Public view of a principal. Never includes hashes or tokens."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    name: str
    email: str
    role: Role
    provider: str
    email_verified: bool
    active: bool
    blocked: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserOut":
        return cls(
            id=principal.id,
            name=principal.name,
            email=principal.email,
            role=principal.role,
            provider=principal.provider.value,
            email_verified=principal.email_verified,
            active=principal.active,
            blocked=principal.blocked,
            created_at=principal.created_at,
            last_login=principal.last_login,
        )


class TokenData(_CamelModel):
    access_token: str
    refresh_token: str


class AuthData(TokenData):
    user: UserOut


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class AuthResponse(MessageResponse):
    data: AuthData


class TokenResponse(MessageResponse):
    data: TokenData


class UserResponse(MessageResponse):
    data: UserOut


class UserListResponse(MessageResponse):
    data: list[UserOut]


class ErrorItem(BaseModel):
    field: str
    msg: str


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    message: str
    code: str
    errors: Optional[list[ErrorItem]] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
