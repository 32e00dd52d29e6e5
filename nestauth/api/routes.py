from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Request

from nestauth.api.schemas import (
    AdminLoginRequest,
    AdminLoginResponse,
    AdminLogoutRequest,
    AdminProfileResponse,
    AdminRefreshRequest,
    AdminSessionListResponse,
    AdminSessionResponse,
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    OAuthLoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RevokeSessionsResponse,
    SignupRequest,
    TokenRefreshRequest,
    UserResponse,
)
from nestauth.service.admin_auth import AdminIdentity, AdminLoginResult
from nestauth.service.errors import AuthenticationError
from nestauth.service.result import unwrap
from nestauth.service.runtime import get_runtime
from nestauth.service.tokens import AccessClaims
from nestauth.service.user_auth import AuthResult, UserProfile
from nestauth.storage.models import User

router = APIRouter()


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing bearer token")
    return token.strip()


def _client(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip = request.client.host if request.client else None
    return request.headers.get("user-agent"), ip


async def get_current_claims(
    authorization: Optional[str] = Header(None),
) -> AccessClaims:
    runtime = get_runtime()
    return unwrap(await runtime.user_auth.authenticate(_bearer_token(authorization)))


async def get_current_admin(
    authorization: Optional[str] = Header(None),
) -> AdminIdentity:
    runtime = get_runtime()
    identity = unwrap(
        await runtime.admin_auth.validate_session(_bearer_token(authorization))
    )
    if identity is None:
        raise AuthenticationError("invalid token")
    return identity


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
        role=result.user.role,
        status=result.user.status.value,
        email_verified=result.user.email_verified,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        status=user.status.value,
        email_verified=user.email_verified,
        family_id=user.family_id,
        first_name=user.first_name,
        last_name=user.last_name,
        timezone=user.timezone,
        language=user.language,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _admin_login_response(result: AdminLoginResult) -> AdminLoginResponse:
    if result.requires_two_factor or result.tokens is None:
        return AdminLoginResponse(requires_two_factor=True)
    account = result.account
    return AdminLoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
        admin_id=account.id,
        email=account.email,
        role=account.role.value,
        role_level=account.role_level,
        permissions=sorted(account.permissions),
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
    )


# user auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Register with email and password; the account starts pending verification."""
    runtime = get_runtime()
    user_agent, ip = _client(request)
    result = unwrap(
        await runtime.user_auth.signup(
            body.email,
            body.password,
            UserProfile(
                first_name=body.first_name,
                last_name=body.last_name,
                timezone=body.timezone,
                language=body.language,
            ),
            user_agent=user_agent,
            ip_addr=ip,
        )
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    user_agent, ip = _client(request)
    result = unwrap(
        await runtime.user_auth.login(
            body.email, body.password, user_agent=user_agent, ip_addr=ip
        )
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/oauth", response_model=Envelope, tags=["auth"])
async def oauth_login(body: OAuthLoginRequest, request: Request):
    """Sign in with a provider-issued access token (google, facebook, github)."""
    runtime = get_runtime()
    user_agent, ip = _client(request)
    result = unwrap(
        await runtime.user_auth.federated_login(
            body.provider,
            body.token,
            body.email,
            UserProfile(
                first_name=body.first_name,
                last_name=body.last_name,
            ),
            user_agent=user_agent,
            ip_addr=ip,
        )
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    user_agent, ip = _client(request)
    result = unwrap(
        await runtime.user_auth.refresh(
            body.refresh_token, user_agent=user_agent, ip_addr=ip
        )
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    logged_out = unwrap(await runtime.user_auth.logout(_bearer_token(authorization)))
    return Envelope(status="ok", data={"logged_out": logged_out})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    user = unwrap(await runtime.user_auth.get_user(claims.user_id))
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Same answer whether or not the address is registered."""
    runtime = get_runtime()
    unwrap(await runtime.user_auth.request_password_reset(body.email))
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    revoked = unwrap(
        await runtime.user_auth.confirm_password_reset(body.token, body.new_password)
    )
    return Envelope(status="ok", data={"status": "reset", "sessions_revoked": revoked})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = unwrap(await runtime.user_auth.verify_email(body.token))
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(claims: AccessClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    sent = unwrap(await runtime.user_auth.request_email_verification(claims.user_id))
    return Envelope(status="ok", data={"sent": sent})


# admin console auth


@router.post("/admin/auth/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminLoginRequest, request: Request):
    """Password login; answers ``requires_two_factor`` with empty tokens when a code is needed."""
    runtime = get_runtime()
    user_agent, ip = _client(request)
    result = unwrap(
        await runtime.admin_auth.authenticate(
            body.email,
            body.password,
            body.two_factor_code,
            client_ip=ip,
            user_agent=user_agent,
        )
    )
    return Envelope(status="ok", data=_admin_login_response(result))


@router.post("/admin/auth/refresh", response_model=Envelope, tags=["admin"])
async def admin_refresh(body: AdminRefreshRequest):
    runtime = get_runtime()
    result = unwrap(await runtime.admin_auth.refresh(body.refresh_token))
    return Envelope(status="ok", data=_admin_login_response(result))


@router.post("/admin/auth/logout", response_model=Envelope, tags=["admin"])
async def admin_logout(
    body: Optional[AdminLogoutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = body.token if body and body.token else _bearer_token(authorization)
    logged_out = unwrap(await runtime.admin_auth.logout(token))
    return Envelope(status="ok", data={"logged_out": logged_out})


@router.get("/admin/auth/profile", response_model=Envelope, tags=["admin"])
async def admin_profile(identity: AdminIdentity = Depends(get_current_admin)):
    runtime = get_runtime()
    account = unwrap(await runtime.admin_auth.get_profile(identity.admin_id))
    return Envelope(
        status="ok",
        data=AdminProfileResponse(
            admin_id=account.id,
            email=account.email,
            role=account.role.value,
            role_level=account.role_level,
            permissions=sorted(account.permissions),
            first_name=account.first_name,
            last_name=account.last_name,
            two_factor_enabled=account.two_factor_enabled,
            last_login_at=account.last_login_at,
            session_id=identity.session_id,
        ),
    )


@router.get("/admin/auth/sessions", response_model=Envelope, tags=["admin"])
async def admin_sessions(identity: AdminIdentity = Depends(get_current_admin)):
    runtime = get_runtime()
    sessions = unwrap(await runtime.admin_auth.list_sessions(identity.admin_id))
    items = [
        AdminSessionResponse(
            id=s.id,
            created_at=s.created_at,
            expires_at=s.expires_at,
            last_activity=s.last_activity,
            ip_addr=s.ip_addr,
            user_agent=s.user_agent,
            current=s.id == identity.session_id,
        )
        for s in sessions
    ]
    return Envelope(status="ok", data=AdminSessionListResponse(items=items))


@router.post("/admin/auth/sessions/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(identity: AdminIdentity = Depends(get_current_admin)):
    """Forced logout of every session of the calling admin, this one included."""
    runtime = get_runtime()
    revoked = unwrap(await runtime.admin_auth.revoke_all_sessions(identity.admin_id))
    return Envelope(status="ok", data=RevokeSessionsResponse(revoked=revoked))
