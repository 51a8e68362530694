"""
api/routes/v1/users.py -- Authentication, password, and user management endpoints.

Routes (prefix /api/v1/users):
  POST   /register             -- create a USER account
  POST   /login                -- email + password; returns access + refresh tokens
  POST   /refresh-token        -- rotate the refresh token; returns a new pair
  POST   /logout               -- revoke the refresh token (requires auth)
  GET    /me                   -- current user (requires auth)
  POST   /change-password      -- change or set password (requires auth)
  POST   /forgot-password      -- email a reset link; identical answer for any email
  POST   /reset-password       -- spend a reset token
  POST   /invite               -- invite a user by email (admin only)
  POST   /verify-invitation    -- spend an invite token; returns tokens
  POST   /social/{provider}    -- google, facebook, linkedin (access_token), apple (id_token)
  GET    /                     -- list users (admin only)
  GET    /{id}                 -- one user (admin only)
  POST   /admin/create         -- create an admin (admin only)
  PUT    /admin/update/{id}    -- update name/role/active/blocked (admin only)
  DELETE /{id}                 -- delete a user (admin only)

Security:
  [H2] /login and /forgot-password are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Refresh tokens travel only in request bodies, access tokens only in the
  Authorization header.

Auth failures are raised as auth.errors exceptions; api/main.py turns them
into the error envelope.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AuthData,
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    InviteRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SocialAccessTokenRequest,
    SocialIdTokenRequest,
    TokenData,
    TokenPasswordRequest,
    TokenResponse,
    UserListResponse,
    UserOut,
    UserResponse,
    UserUpdateRequest,
)
from auth.dependencies import require_admin, require_user
from auth.errors import NotFound
from auth.models import AuthContext, AuthResult, Provider
from auth.service import AuthenticationService
from core.config import get_settings

# Auth policy:
# - register, login, refresh-token, forgot-password, reset-password,
#   verify-invitation, social/*:   public
# - logout, me, change-password:     USER or ADMIN (require_user)
# - invite, list, admin/*, delete:   ADMIN only (require_admin)
router = APIRouter(prefix="/users")

_RESET_REQUESTED = "If an account exists for that email, a password reset link has been sent."


def _service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


def _auth_response(result: AuthResult, message: str, response: Response) -> AuthResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        message=message,
        data=AuthData(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            user=UserOut.from_principal(result.principal),
        ),
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    principal = _service(request).register(body.name, body.email, body.password, body.confirm_password)
    return UserResponse(message="User created.", data=UserOut.from_principal(principal))


@router.post("/login", response_model=AuthResponse)
@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    The same 401 is returned for an unknown email and a wrong password.
    """
    result = _service(request).login_with_credentials(body.email, body.password)
    return _auth_response(result, "Login successful.", response)


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Rotate the refresh token. The presented token is dead afterwards.

    401 with code TOKEN_EXPIRED means the refresh token itself expired and the
    client must log in again.
    """
    pair = _service(request).refresh(body.refresh_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(
        message="Token refreshed.",
        data=TokenData(access_token=pair.access_token, refresh_token=pair.refresh_token),
    )


@router.post("/forgot-password", response_model=MessageResponse)
@limiter.limit(lambda: get_settings().forgot_password_rate_limit)  # [H2]
def forgot_password(request: Request, body: EmailRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Queue a reset email and answer immediately.

    The lookup and email run after the response is sent, so neither the body
    nor the response time depends on whether the account exists.
    """
    background_tasks.add_task(_service(request).request_password_reset, body.email)
    return MessageResponse(message=_RESET_REQUESTED)


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: TokenPasswordRequest) -> MessageResponse:
    _service(request).reset_password(body.token, body.password, body.confirm_password)
    return MessageResponse(message="Password has been reset.")


@router.post("/verify-invitation", response_model=AuthResponse)
def verify_invitation(request: Request, response: Response, body: TokenPasswordRequest) -> AuthResponse:
    result = _service(request).accept_invitation(body.token, body.password, body.confirm_password)
    return _auth_response(result, "Invitation accepted.", response)


@router.post("/social/apple", response_model=AuthResponse)
def apple_login(request: Request, response: Response, body: SocialIdTokenRequest) -> AuthResponse:
    result = _service(request).social_login(Provider.apple, body.id_token)
    return _auth_response(result, "Login successful.", response)


@router.post("/social/{provider}", response_model=AuthResponse)
def social_login(
    request: Request, response: Response, provider: Provider, body: SocialAccessTokenRequest
) -> AuthResponse:
    """Google, Facebook, and LinkedIn login with a provider access token."""
    if provider in (Provider.manual, Provider.apple):
        raise NotFound("Unknown social provider.")
    result = _service(request).social_login(provider, body.access_token)
    return _auth_response(result, "Login successful.", response)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request, ctx: AuthContext = Depends(require_user)) -> MessageResponse:
    """Revoke the caller's refresh token. Access tokens expire on their own."""
    _service(request).logout(ctx.principal_id)
    return MessageResponse(message="Logged out.")


@router.get("/me", response_model=UserResponse)
def me(ctx: AuthContext = Depends(require_user)) -> UserResponse:
    return UserResponse(message="Current user.", data=UserOut.from_principal(ctx.principal))


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(require_user),
) -> MessageResponse:
    _service(request).change_password(ctx.principal_id, body.current_password, body.password, body.confirm_password)
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Administration (admin only)
# ---------------------------------------------------------------------------


@router.post("/invite", response_model=UserResponse, status_code=201)
def invite(request: Request, body: InviteRequest, ctx: AuthContext = Depends(require_admin)) -> UserResponse:
    principal = _service(request).invite_user(body.email, body.name)
    return UserResponse(message="Invitation sent.", data=UserOut.from_principal(principal))


@router.get("", response_model=UserListResponse)
def list_users(request: Request, ctx: AuthContext = Depends(require_admin)) -> UserListResponse:
    users = _service(request).list_users()
    return UserListResponse(message="Users.", data=[UserOut.from_principal(u) for u in users])


@router.post("/admin/create", response_model=UserResponse, status_code=201)
def create_admin(request: Request, body: RegisterRequest, ctx: AuthContext = Depends(require_admin)) -> UserResponse:
    principal = _service(request).create_admin(body.name, body.email, body.password, body.confirm_password)
    return UserResponse(message="Admin created.", data=UserOut.from_principal(principal))


@router.put("/admin/update/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdateRequest,
    ctx: AuthContext = Depends(require_admin),
) -> UserResponse:
    principal = _service(request).update_user(
        ctx.principal_id,
        user_id,
        name=body.name,
        role=body.role,
        active=body.active,
        blocked=body.blocked,
    )
    return UserResponse(message="User updated.", data=UserOut.from_principal(principal))


# Declared after GET /me so the literal path wins.
@router.get("/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, ctx: AuthContext = Depends(require_admin)) -> UserResponse:
    principal = _service(request).get_user(user_id)
    return UserResponse(message="User.", data=UserOut.from_principal(principal))


@router.delete("/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, ctx: AuthContext = Depends(require_admin)) -> MessageResponse:
    _service(request).delete_user(ctx.principal_id, user_id)
    return MessageResponse(message="User deleted.")
