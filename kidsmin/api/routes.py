from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from kidsmin.api.schemas import (
    AdminExistsResponse,
    CreateAdminRequest,
    CreatedIndividualResponse,
    CreateIndividualRequest,
    Envelope,
    IdentityResponse,
    InviteRequest,
    LoginRequest,
    OkResponse,
    PasswordResetRequest,
    SessionResponse,
    SetPasswordRequest,
    TwoFactorRequiredResponse,
    TwoFactorVerifyRequest,
)
from kidsmin.logging import get_logger
from kidsmin.service.auth import AuthContext, SessionGrant
from kidsmin.service.runtime import get_runtime

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


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    return ctx


def _session_data(grant: SessionGrant) -> SessionResponse:
    return SessionResponse.model_validate(grant.to_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Returns a session token and the caller's active roles, or a
    ``2FA_REQUIRED`` marker after mailing a one-time code.

    Raises:
        400: If email or password is missing
        401: If the credentials are not valid (never says which part)
    """
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.email, body.password)
    if isinstance(outcome, SessionGrant):
        return Envelope(status="ok", data=_session_data(outcome))
    return Envelope(
        status="ok", data=TwoFactorRequiredResponse.model_validate(outcome.to_dict())
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest):
    """Exchange a mailed one-time code for a session token."""
    runtime = get_runtime()
    grant = await runtime.auth.verify_two_factor(body.email, body.code)
    return Envelope(status="ok", data=_session_data(grant))


@router.post("/auth/request-reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Mail a set-password link if the address is registered.

    The response is identical whether or not the account exists.
    """
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=OkResponse())


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(body: SetPasswordRequest):
    """Set a password using an invite or reset token and activate the account."""
    if not body.token or not body.password:
        raise _http_error("validation_error", "Missing token or password.", status_code=400)
    runtime = get_runtime()
    await runtime.auth.set_password(body.token, body.password)
    return Envelope(status="ok", data=OkResponse())


@router.post("/auth/invite", response_model=Envelope, tags=["auth"])
async def invite_individual(body: InviteRequest, principal: AuthContext = Depends(get_user)):
    """Give an existing individual a login and mail them a set-password link."""
    runtime = get_runtime()
    await runtime.auth.invite_existing_individual(
        body.individual_id, body.email, invited_by=principal.individual_id
    )
    return Envelope(status="ok", data=OkResponse())


@router.post("/auth/create-admin", response_model=Envelope, status_code=201, tags=["auth"])
async def create_admin(body: CreateAdminRequest):
    """One-time creation of the first administrator.

    Raises:
        400: If a field is missing
        403: If an administrator already exists
        409: If the email is already registered
    """
    runtime = get_runtime()
    await runtime.auth.bootstrap_first_admin(body.first_name, body.last_name, body.email)
    return Envelope(status="ok", data=OkResponse())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def current_identity(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    roles = runtime.roles.active_role_dicts(principal.individual_id)
    return Envelope(
        status="ok",
        data=IdentityResponse.model_validate(
            {"individualId": principal.individual_id, "roles": roles}
        ),
    )


@router.get("/system/admin-exists", response_model=Envelope, tags=["system"])
async def admin_exists():
    runtime = get_runtime()
    return Envelope(status="ok", data=AdminExistsResponse(exists=runtime.auth.admin_exists()))


@router.post("/people/individuals", response_model=Envelope, status_code=201, tags=["people"])
async def create_individual(
    body: CreateIndividualRequest, principal: AuthContext = Depends(get_user)
):
    """Create an individual record that can later be invited to sign in."""
    runtime = get_runtime()
    individual = runtime.people.create_individual(
        body.first_name,
        body.last_name,
        body.grade,
        special=body.special,
        created_by=principal.individual_id,
    )
    return Envelope(status="ok", data=CreatedIndividualResponse(id=individual.id))
