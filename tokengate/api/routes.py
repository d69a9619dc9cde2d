from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path

from tokengate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenVerifyResponse,
    UserChangeResponse,
    UserResponse,
)
from tokengate.logging import get_logger
from tokengate.service.auth import AuthContext, AuthResult
from tokengate.service.errors import ForbiddenError
from tokengate.service.runtime import get_runtime
from tokengate.storage.models import ROLE_ADMIN

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
    if principal.role != ROLE_ADMIN:
        raise ForbiddenError("admin access required")
    return principal


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.access_token,
            user=UserResponse.from_user(result.user),
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and return its first access token.

    The first account becomes admin when FIRST_USER_IS_ADMIN is set.

    Raises:
        409: If the username or email is already taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        bio=body.bio,
        profile_image=body.profile_image,
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with username or email; every login issues a new token.

    Raises:
        401: If the credentials are invalid or the account is inactive
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.revoke_token(principal.token_id, principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="token revoked"))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(principal.user))


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_current_user)):
    return Envelope(
        status="ok",
        data=TokenVerifyResponse(
            user_id=principal.user_id,
            role=principal.role,
            token_id=principal.token_id,
        ),
    )


@router.patch("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_current_user)
):
    """Change the caller's password and revoke all of their tokens.

    Revocation is asynchronous: tokens stop validating once the user-state
    worker has processed the job.
    """
    runtime = get_runtime()
    change = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="password changed",
            propagation_enqueued=change.propagation_enqueued,
        ),
    )


@router.patch("/auth/promote/{user_id}", response_model=Envelope, tags=["admin"])
async def promote(
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    change = await runtime.auth.promote_to_admin(user_id)
    logger.info("admin_promoted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=UserChangeResponse.from_change(change))


@router.patch("/auth/deactivate/{user_id}", response_model=Envelope, tags=["admin"])
async def deactivate(
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    change = await runtime.auth.deactivate_user(user_id)
    logger.info("admin_deactivated_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="user deactivated",
            propagation_enqueued=change.propagation_enqueued,
        ),
    )


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    change = await runtime.auth.update_profile(
        principal.user_id,
        username=body.username,
        email=body.email,
        bio=body.bio,
        profile_image=body.profile_image,
    )
    return Envelope(status="ok", data=UserChangeResponse.from_change(change))
