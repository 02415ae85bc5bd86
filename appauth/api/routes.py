from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from appauth.api.schemas import (
    AccountStatusRequest,
    AuthResponse,
    ChangeAuthMethodRequest,
    DeactivateAppRequest,
    EmailVerificationRequest,
    EmailVerificationResend,
    Envelope,
    GrantAppAccessRequest,
    LoginRequest,
    LogoutRequest,
    OAuthStartRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UpdateAppRolesRequest,
)
from appauth.logging import get_logger
from appauth.service.auth import AuthContext, AuthResult, public_user_view
from appauth.service.runtime import Runtime
from appauth.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _tokens(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=result.user,
            tokens=_tokens(result.tokens),
            app_identifier=result.app_identifier,
            role=result.role,
            warnings=result.warnings,
        ),
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime(request)
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


# auth ------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Register an email for one app.

    Creates the account on first use of an email; registering the same email
    from another app adds a registration to the existing account.

    Raises:
        400: Unknown app endpoint, invalid role or a provider auth method
        409: Email already registered for this app
    """
    runtime = get_runtime(request)
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        app_endpoint=body.app_endpoint,
        roles=body.roles,
        auth_method=body.auth_method,
        username=body.username,
        **_client_meta(request),
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password against one app.

    Raises:
        401: Invalid credentials or wrong auth method for this app
        403: Deactivated account or app access, or role not granted
        423: App access locked after repeated failures
    """
    runtime = get_runtime(request)
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        app_endpoint=body.app_endpoint,
        selected_role=body.role,
        **_client_meta(request),
    )
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token into a new token pair."""
    runtime = get_runtime(request)
    result = await runtime.auth.refresh_tokens(body.refresh_token, **_client_meta(request))
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime(request)
    revoked = await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_user)):
    """Revoke every refresh token of the caller, across all apps."""
    runtime = get_runtime(request)
    count = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"revoked": count})


@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(provider: str, body: OAuthStartRequest, request: Request):
    runtime = get_runtime(request)
    start = await runtime.auth.start_oauth(provider, body.app_endpoint)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Finish the provider round trip and redirect back to the app.

    Success lands on ``{app}/auth/success`` with email and tokens in the URL fragment;
    failures land on ``/auth/error`` with a message.
    """
    runtime = get_runtime(request)
    fallback = runtime.settings.frontend_url.rstrip("/")
    if error or not code or not state:
        query = urlencode({"message": error or "missing authorization code"})
        return RedirectResponse(f"{fallback}/auth/error?{query}", status_code=302)

    completion = await runtime.auth.complete_oauth(
        provider, code, state, **_client_meta(request)
    )
    target = (completion.app_endpoint or fallback).rstrip("/")
    if completion.auth is None:
        reason = completion.link.reason
        params = {"message": reason.message if reason else "authentication failed"}
        if reason is not None:
            params["code"] = reason.error_code
            if reason.detail.get("auth_method"):
                params["auth_method"] = reason.detail["auth_method"]
        return RedirectResponse(f"{target}/auth/error?{urlencode(params)}", status_code=302)

    result = completion.auth
    query = urlencode({"method": f"{provider}-oauth"})
    fragment = urlencode(
        {
            "email": result.user["email"],
            "access_token": result.tokens.access_token,
            "refresh_token": result.tokens.refresh_token,
            "role": result.role,
        }
    )
    return RedirectResponse(f"{target}/auth/success?{query}#{fragment}", status_code=302)


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    """Change the password of the caller's registration for the token's app."""
    if not principal.app_identifier:
        raise _http_error("validation_error", "token is not scoped to an app", status_code=400)
    runtime = get_runtime(request)
    pair = await runtime.auth.change_app_password(
        principal.user_id,
        principal.app_identifier,
        body.current_password,
        body.new_password,
    )
    return Envelope(status="ok", data=_tokens(pair))


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime(request)
    # Same body for every outcome; delivery failures are only logged
    await runtime.auth.request_password_reset(body.email, body.app_endpoint)
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a reset link has been sent"},
    )


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime(request)
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/auth/verify_email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime(request)
    user = await runtime.auth.complete_email_verification(body.token)
    return Envelope(status="ok", data={"email_verified": user.email_verified})


@router.post("/auth/verify_email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailVerificationResend,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime(request)
    warnings = await runtime.auth.request_email_verification(
        principal.user_id, body.app_endpoint
    )
    return Envelope(status="ok", data={"warnings": warnings})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    user = runtime.auth.get_user(principal.user_id)
    return Envelope(
        status="ok",
        data=public_user_view(user, principal.app_identifier, principal.role),
    )


@router.patch("/me", response_model=Envelope, tags=["auth"])
async def update_me(
    body: ProfileUpdateRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    """Update the caller's display name or email.

    A changed email is marked unverified and a verification link is sent
    through the app the token belongs to.

    Raises:
        409: Email already used by another account
    """
    runtime = get_runtime(request)
    app_endpoint = (
        runtime.auth.registry.endpoint_for(principal.app_identifier)
        if principal.app_identifier
        else None
    )
    result = await runtime.auth.update_profile(
        principal.user_id,
        username=body.username,
        email=body.email,
        app_endpoint=app_endpoint,
    )
    data = public_user_view(result.user, principal.app_identifier, principal.role)
    data["warnings"] = result.warnings
    return Envelope(status="ok", data=data)


@router.delete("/me", response_model=Envelope, tags=["auth"])
async def delete_me(request: Request, principal: AuthContext = Depends(get_user)):
    """Delete the caller's account across every app."""
    runtime = get_runtime(request)
    deleted = await runtime.auth.delete_own_account(principal.user_id)
    return Envelope(status="ok", data={"deleted": deleted})


# admin -----------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    request: Request,
    app_identifier: Optional[str] = Query(None, max_length=128),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_admin_user),
):
    """List users, optionally only those registered for one app.

    Admins see users of their own app; superadmins may list any app or all.
    """
    runtime = get_runtime(request)
    users = runtime.auth.admin_list_users(
        principal, app_identifier, limit=limit, offset=offset
    )
    return Envelope(status="ok", data={"users": users, "count": len(users)})


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str, request: Request, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime(request)
    return Envelope(status="ok", data=runtime.auth.admin_get_user(principal, user_id))


@router.post("/admin/users/{user_id}/apps", response_model=Envelope, tags=["admin"])
async def admin_grant_app_access(
    user_id: str,
    body: GrantAppAccessRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    """Grant app access, merging roles into an existing registration."""
    runtime = get_runtime(request)
    data = runtime.auth.admin_grant_app_access(
        principal,
        user_id,
        body.app_identifier,
        body.roles,
        body.auth_method,
        body.password,
    )
    return Envelope(status="ok", data=data)


@router.put("/admin/users/{user_id}/apps/{app_identifier}", response_model=Envelope, tags=["admin"])
async def admin_set_app_roles(
    user_id: str,
    app_identifier: str,
    body: UpdateAppRolesRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    """Replace the roles of a registration wholesale."""
    runtime = get_runtime(request)
    data = runtime.auth.admin_set_app_roles(
        principal, user_id, app_identifier, body.roles, body.auth_method, body.password
    )
    return Envelope(status="ok", data=data)


@router.put(
    "/admin/users/{user_id}/apps/{app_identifier}/auth_method",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_change_auth_method(
    user_id: str,
    app_identifier: str,
    body: ChangeAuthMethodRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime(request)
    data = runtime.auth.admin_change_auth_method(
        principal, user_id, app_identifier, body.auth_method, body.password
    )
    return Envelope(status="ok", data=data)


@router.post(
    "/admin/users/{user_id}/apps/{app_identifier}/deactivate",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_deactivate_app(
    user_id: str,
    app_identifier: str,
    body: DeactivateAppRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime(request)
    data = runtime.auth.admin_set_app_active(
        principal, user_id, app_identifier, False, reason=body.reason
    )
    return Envelope(status="ok", data=data)


@router.post(
    "/admin/users/{user_id}/apps/{app_identifier}/reactivate",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_reactivate_app(
    user_id: str,
    app_identifier: str,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime(request)
    data = runtime.auth.admin_set_app_active(principal, user_id, app_identifier, True)
    return Envelope(status="ok", data=data)


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_account_status(
    user_id: str,
    body: AccountStatusRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    """Activate or deactivate the whole account (superadmin only)."""
    runtime = get_runtime(request)
    data = await runtime.auth.admin_set_account_active(principal, user_id, body.is_active)
    return Envelope(status="ok", data=data)


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str, request: Request, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime(request)
    deleted = await runtime.auth.admin_delete_user(principal, user_id)
    return Envelope(status="ok", data={"deleted": deleted})
