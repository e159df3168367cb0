from __future__ import annotations

import random
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, Path, Response

from warden.api.schemas import (
    ApiTokenCreateRequest,
    ApiTokenResponse,
    EmailChangeRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    RenewRequest,
    ResetCredentialsRequest,
    RightRequest,
    RightResponse,
    RoleRequest,
    RoleResponse,
    SelfUpdateRequest,
    SessionTokenResponse,
    SetPasswordRequest,
    TokenResponse,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from warden.logging import get_logger
from warden.service.auth import AuthContext, AuthService
from warden.service.errors import (
    NotAllowedError,
    ServiceError,
    UnauthorizedError,
)
from warden.service.runtime import get_runtime
from warden.storage.models import Right

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
_random = random.SystemRandom()


def _uniform_delay() -> None:
    """Sleep a random, non-cancellable interval so response timing reveals nothing."""
    settings = get_runtime().settings
    high = settings.reset_delay_max_ms
    if high <= 0:
        return
    time.sleep(_random.uniform(settings.reset_delay_min_ms, high) / 1000.0)


def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(AuthService.extract_bearer(authorization))


def requires(right: str):
    def dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        AuthService.require_right(principal, right)
        return principal

    return dependency


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        httponly=True,
        secure=not settings.test_mode,
        samesite="strict",
        path="/v1/auth",
    )


# authentication
@router.post("/auth/token", response_model=Envelope, tags=["auth"])
def login(
    body: LoginRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    try:
        tokens = runtime.auth.login(body.email, body.password, user_agent=user_agent)
    except UnauthorizedError:
        _uniform_delay()
        raise
    _set_refresh_cookie(response, tokens.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token, refresh_token=tokens.refresh_token
        ),
    )


@router.post("/auth/renew", response_model=Envelope, tags=["auth"])
def renew(
    body: Optional[RenewRequest] = None,
    authorization: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    refresh_token = (
        (body.refresh_token if body else None)
        or refresh_cookie
        or AuthService.extract_bearer(authorization)
    )
    if not refresh_token:
        raise UnauthorizedError("Missing refresh token")
    access_token = runtime.sessions.renew(refresh_token, user_agent)
    return Envelope(status="ok", data=TokenResponse(access_token=access_token))


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
def validate_pair(
    refresh_token: str = Body(..., embed=True),
    access_token: str = Body(..., embed=True),
):
    runtime = get_runtime()
    valid = runtime.verifier.is_access_token_valid(refresh_token, access_token)
    return Envelope(status="ok", data={"valid": valid})


@router.post("/auth/logout", status_code=204, response_class=Response, tags=["auth"])
def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = (body.token if body else None) or AuthService.extract_bearer(authorization) or refresh_cookie
    if not token:
        raise UnauthorizedError("Missing token")
    runtime.sessions.logout(token)
    response = Response(status_code=204)
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth")
    return response


# password reset
@router.post("/reset-credentials", status_code=204, response_class=Response, tags=["auth"])
def reset_credentials(body: ResetCredentialsRequest):
    runtime = get_runtime()
    try:
        runtime.users.create_reset_token(body.email)
    except NotAllowedError as exc:
        # same answer as for unknown users
        logger.info("password_reset_rejected", reason=exc.message)
    _uniform_delay()
    return Response(status_code=204)


@router.post("/set-password", status_code=204, response_class=Response, tags=["auth"])
def set_password(body: SetPasswordRequest):
    runtime = get_runtime()
    try:
        runtime.users.reset_password(body.token, body.password)
    except ServiceError:
        _uniform_delay()
        raise
    _uniform_delay()
    return Response(status_code=204)


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = runtime.users.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# self service
@router.get("/me", response_model=Envelope, tags=["me"])
def get_me(principal: AuthContext = Depends(get_principal)):
    return Envelope(status="ok", data=UserResponse.from_user(principal.user))


@router.patch("/me", response_model=Envelope, tags=["me"])
def patch_me(body: SelfUpdateRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.users.update_self(principal.user_id, body.model_dump(exclude_unset=True))
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/me/password", status_code=204, response_class=Response, tags=["me"])
def change_password(body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.users.update_password(principal.user_id, body.password, body.verification)
    return Response(status_code=204)


@router.put("/me/email", status_code=202, response_model=Envelope, tags=["me"])
def request_email_change(body: EmailChangeRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    token = runtime.users.request_email_change(principal.user_id, body.email)
    return Envelope(status="ok", data={"status": "sent" if token else "unchanged"})


@router.get("/me/token", response_model=Envelope, tags=["me"])
def list_my_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    tokens = runtime.sessions.get_tokens(principal.user.email)
    return Envelope(status="ok", data=[SessionTokenResponse.from_token(t) for t in tokens])


@router.delete("/me/token/{token_id}", status_code=204, response_class=Response, tags=["me"])
def delete_my_session(
    token_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.sessions.delete_token(principal.user.email, token_id)
    return Response(status_code=204)


@router.post("/me/terminate", status_code=204, response_class=Response, tags=["me"])
def terminate_my_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.users.terminate_sessions(principal.user_id)
    return Response(status_code=204)


# users
@router.get("/users", response_model=Envelope, tags=["users"])
def list_users(principal: AuthContext = Depends(requires("USER_READ"))):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=[UserResponse.from_user(u) for u in runtime.users.list_users()]
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
def get_user(user_id: str, principal: AuthContext = Depends(requires("USER_READ"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=UserResponse.from_user(runtime.users.get_user(user_id)))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
def create_user(body: UserCreateRequest, principal: AuthContext = Depends(requires("USER_CREATE"))):
    runtime = get_runtime()
    user = runtime.users.create_user(
        body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        mobile=body.mobile,
        locale=body.locale,
        roles=body.roles,
        password=body.password,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
def update_user(
    user_id: str,
    body: UserUpdateRequest,
    principal: AuthContext = Depends(requires("USER_UPDATE")),
):
    runtime = get_runtime()
    user = runtime.users.update_user(user_id, body.model_dump())
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
def patch_user(
    user_id: str,
    changes: Dict[str, Any] = Body(...),
    principal: AuthContext = Depends(requires("USER_UPDATE")),
):
    runtime = get_runtime()
    user = runtime.users.patch_user(user_id, changes)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", status_code=204, response_class=Response, tags=["users"])
def delete_user(user_id: str, principal: AuthContext = Depends(requires("USER_DELETE"))):
    runtime = get_runtime()
    runtime.users.delete_user(user_id)
    return Response(status_code=204)


@router.post("/users/{user_id}/terminate", status_code=204, response_class=Response, tags=["users"])
def terminate_user_sessions(
    user_id: str, principal: AuthContext = Depends(requires("USER_UPDATE"))
):
    runtime = get_runtime()
    runtime.users.terminate_sessions(user_id)
    return Response(status_code=204)


# roles
@router.get("/roles", response_model=Envelope, tags=["roles"])
def list_roles(principal: AuthContext = Depends(requires("ROLE_READ"))):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=[RoleResponse.from_role(r) for r in runtime.roles.list_roles()]
    )


@router.get("/roles/{name}", response_model=Envelope, tags=["roles"])
def get_role(name: str, principal: AuthContext = Depends(requires("ROLE_READ"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=RoleResponse.from_role(runtime.roles.get_role(name)))


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
def create_role(body: RoleRequest, principal: AuthContext = Depends(requires("ROLE_CREATE"))):
    runtime = get_runtime()
    role = runtime.roles.create_role(body.to_role())
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.put("/roles/{name}", response_model=Envelope, tags=["roles"])
def update_role(
    name: str,
    body: RoleRequest,
    principal: AuthContext = Depends(requires("ROLE_UPDATE")),
):
    runtime = get_runtime()
    role = runtime.roles.update_role(name, body.to_role())
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.patch("/roles/{name}", response_model=Envelope, tags=["roles"])
def patch_role(
    name: str,
    changes: Dict[str, Any] = Body(...),
    principal: AuthContext = Depends(requires("ROLE_UPDATE")),
):
    runtime = get_runtime()
    role = runtime.roles.patch_role(name, changes)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.delete("/roles/{name}", status_code=204, response_class=Response, tags=["roles"])
def delete_role(name: str, principal: AuthContext = Depends(requires("ROLE_DELETE"))):
    runtime = get_runtime()
    runtime.roles.delete_role(name)
    return Response(status_code=204)


# rights
@router.get("/rights", response_model=Envelope, tags=["rights"])
def list_rights(principal: AuthContext = Depends(requires("RIGHT_READ"))):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=[RightResponse.from_right(r) for r in runtime.rights.list_rights()]
    )


@router.get("/rights/{authority}", response_model=Envelope, tags=["rights"])
def get_right(authority: str, principal: AuthContext = Depends(requires("RIGHT_READ"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=RightResponse.from_right(runtime.rights.get_right(authority)))


@router.post("/rights", response_model=Envelope, status_code=201, tags=["rights"])
def create_right(body: RightRequest, principal: AuthContext = Depends(requires("RIGHT_UPDATE"))):
    runtime = get_runtime()
    right = runtime.rights.create_right(body.authority, body.description)
    return Envelope(status="ok", data=RightResponse.from_right(right))


@router.put("/rights/{authority}", response_model=Envelope, tags=["rights"])
def update_right(
    authority: str,
    body: RightRequest,
    principal: AuthContext = Depends(requires("RIGHT_UPDATE")),
):
    runtime = get_runtime()
    right = runtime.rights.update_right(
        authority, Right(authority=body.authority, description=body.description)
    )
    return Envelope(status="ok", data=RightResponse.from_right(right))


@router.delete("/rights/{authority}", status_code=204, response_class=Response, tags=["rights"])
def delete_right(authority: str, principal: AuthContext = Depends(requires("RIGHT_UPDATE"))):
    runtime = get_runtime()
    runtime.rights.delete_right(authority)
    return Response(status_code=204)


# api tokens
@router.post("/api-tokens", response_model=Envelope, status_code=201, tags=["api-tokens"])
def create_api_token(
    body: ApiTokenCreateRequest,
    principal: AuthContext = Depends(requires("USER_TOKEN_CREATE")),
):
    runtime = get_runtime()
    api_token, raw = runtime.api_tokens.create_token(
        principal.user, body.description, body.rights, body.valid_until
    )
    return Envelope(status="ok", data=ApiTokenResponse.from_api_token(api_token, raw))


@router.get("/api-tokens", response_model=Envelope, tags=["api-tokens"])
def list_api_tokens(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    tokens = runtime.api_tokens.list_tokens(principal.user)
    return Envelope(status="ok", data=[ApiTokenResponse.from_api_token(t) for t in tokens])


@router.delete("/api-tokens/{token_id}", response_model=Envelope, tags=["api-tokens"])
def revoke_api_token(token_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    if principal.api_token_id is not None:
        raise NotAllowedError("API tokens cannot revoke API tokens")
    api_token = runtime.api_tokens.revoke_token(principal.user, token_id)
    return Envelope(status="ok", data=ApiTokenResponse.from_api_token(api_token))
