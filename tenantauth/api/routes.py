from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tenantauth.api.schemas import (
    AdminMfaResendRequest,
    AdminMfaVerifyRequest,
    Envelope,
    MagicLinkRequest,
    OAuthCallbackRequest,
    OAuthPreflightRequest,
    OpenAppSignInRequest,
    PreflightRequest,
    SignInRequest,
)
from tenantauth.service.guard import Capability, CurrentUser
from tenantauth.service.runtime import Runtime

router = APIRouter(prefix="/api")
metrics_router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def guard(*capabilities: Capability):
    """Dependency resolving the caller under the given route capabilities.

    Without ``Capability.PUBLIC`` an anonymous request is rejected with
    ``AUTHENTICATION_REQUIRED``.
    """

    async def _resolve(
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ) -> Optional[CurrentUser]:
        return runtime.guard.authenticate(request, response, capabilities)

    return _resolve


# --- auth --------------------------------------------------------------------


@router.post("/auth/preflight", response_model=Envelope, tags=["auth"])
async def preflight(
    body: PreflightRequest,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    """Report whether an email is registered and can use a password."""
    return Envelope(status="ok", data=runtime.auth.preflight(body.email))


@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(
    body: SignInRequest,
    request: Request,
    response: Response,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC, Capability.VERSION)),
    runtime: Runtime = Depends(get_runtime),
):
    """Password sign-in, or send a magic link when no password is given.

    Administrators asking for step-up get ``202`` with a challenge ticket
    instead of cookies.
    """
    status_code, data = await runtime.auth.sign_in(
        request,
        response,
        email=body.email,
        password=body.password,
        callback_url=body.callback_url,
        client_nonce=body.client_nonce,
        admin_step_up=body.admin_step_up,
    )
    response.status_code = status_code
    return Envelope(status="ok", data=data)


@router.post("/auth/admin/verify-mfa", response_model=Envelope, status_code=201, tags=["auth"])
async def verify_admin_mfa(
    body: AdminMfaVerifyRequest,
    request: Request,
    response: Response,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC, Capability.VERSION)),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.verify_admin_mfa(
        request, response, ticket=body.ticket, otp=body.otp
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/admin/resend-mfa", response_model=Envelope, status_code=201, tags=["auth"])
async def resend_admin_mfa(
    body: AdminMfaResendRequest,
    request: Request,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC, Capability.VERSION)),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.resend_admin_mfa(request, ticket=body.ticket)
    return Envelope(status="ok", data=data)


@router.get("/auth/admin/trusted-devices", response_model=Envelope, tags=["auth"])
async def list_trusted_devices(
    current: CurrentUser = Depends(guard(Capability.ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=await runtime.auth.list_trusted_devices(current))


@router.delete("/auth/admin/trusted-devices", response_model=Envelope, tags=["auth"])
async def revoke_trusted_devices(
    fingerprint: Optional[str] = Query(None, max_length=128),
    current: CurrentUser = Depends(guard(Capability.ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    """Forget one trusted device, or all of them when no fingerprint is given."""
    data = await runtime.auth.revoke_trusted_devices(current, fingerprint)
    return Envelope(status="ok", data=data)


@router.post("/auth/magic-link", response_model=Envelope, status_code=201, tags=["auth"])
async def magic_link_sign_in(
    body: MagicLinkRequest,
    request: Request,
    response: Response,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC, Capability.VERSION)),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.magic_link_sign_in(
        request,
        response,
        email=body.email,
        otp=body.token,
        client_nonce=body.client_nonce,
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(
    request: Request,
    response: Response,
    user_id: Optional[str] = Query(None, max_length=128),
    current: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.auth.sign_out(request, response, current, user_id=user_id)
    return Envelope(status="ok", data=data)


@router.get("/auth/sign-out", response_model=Envelope, tags=["auth"], deprecated=True)
async def sign_out_deprecated(
    request: Request,
    response: Response,
    user_id: Optional[str] = Query(None, max_length=128),
    current: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    response.headers["Deprecation"] = "true"
    data = runtime.auth.sign_out(request, response, current, user_id=user_id, check_csrf=False)
    return Envelope(status="ok", data=data)


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    current: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=await runtime.auth.current_session(current))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def session_users(
    request: Request,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.auth.session_users(request))


@router.post(
    "/auth/open-app/sign-in-code", response_model=Envelope, status_code=201, tags=["auth"]
)
async def open_app_sign_in_code(
    current: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    """Mint a short-lived code that hands this sign-in to the desktop app."""
    return Envelope(status="ok", data=runtime.auth.open_app_sign_in_code(current))


@router.post("/auth/open-app/sign-in", response_model=Envelope, status_code=201, tags=["auth"])
async def open_app_sign_in(
    body: OpenAppSignInRequest,
    request: Request,
    response: Response,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC)),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.auth.open_app_sign_in(request, response, code=body.code)
    return Envelope(status="ok", data=data)


# --- oauth -------------------------------------------------------------------


@router.post("/oauth/preflight", response_model=Envelope, tags=["oauth"])
async def oauth_preflight(
    body: OAuthPreflightRequest,
    request: Request,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC, Capability.VERSION)),
    runtime: Runtime = Depends(get_runtime),
):
    """Return the provider authorization URL for a fresh single-use state."""
    data = await runtime.auth.oauth_preflight(
        request,
        provider=body.provider,
        client_nonce=body.client_nonce,
        redirect_uri=body.redirect_uri,
        client=body.client,
    )
    return Envelope(status="ok", data=data)


@router.post("/oauth/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    body: OAuthCallbackRequest,
    request: Request,
    response: Response,
    _: Optional[CurrentUser] = Depends(guard(Capability.PUBLIC, Capability.VERSION)),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.oauth_callback(
        request,
        response,
        code=body.code,
        state=body.state,
        client_nonce=body.client_nonce,
    )
    return Envelope(status="ok", data=data)


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
