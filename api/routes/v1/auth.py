"""
api/routes/v1/auth.py -- Three-step sign-in and token session endpoints.

Routes:
  POST /api/v1/auth/step1           -- username + password; returns sessionId
  POST /api/v1/auth/step2/send      -- email a fresh verification code
  POST /api/v1/auth/step2/verify    -- check the code; returns step2Token
  POST /api/v1/auth/step3/initiate  -- issue a passkey challenge
  POST /api/v1/auth/step3/verify    -- verify the assertion; returns token pair
  POST /api/v1/auth/refresh         -- rotate the refresh token
  POST /api/v1/auth/logout          -- revoke the refresh token
  GET  /api/v1/auth/status          -- is the Bearer token live?
  GET  /api/v1/auth/me              -- current user info (requires auth)

Handlers are plain `def` so FastAPI runs them in its thread pool; scrypt and
signature verification never block the event loop.

AuthError subclasses raised by the guard propagate to the exception handler
in api/main.py, which owns the status-code mapping.

Security:
  [H2] step1 and step2/verify are throttled per IP and per identity by
       LockoutGuard; step2/send is throttled per IP by slowapi.
  [M5] Cache-Control: no-store on every response that carries a credential.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import client_ip, limiter
from api.models import (
    MeResponse,
    PasskeyInitiateRequest,
    PasskeyInitiateResponse,
    PasskeyVerifyRequest,
    RefreshRequest,
    SendCodeRequest,
    SendCodeResponse,
    StatusResponse,
    Step1Request,
    Step1Response,
    TokenPairResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from auth.dependencies import get_current_user, try_get_current_user
from auth.guard import LockoutGuard
from auth.models import TokenPair, User
from core.config import get_settings

router = APIRouter()


def _guard(request: Request) -> LockoutGuard:
    return request.app.state.guard


def _token_pair_response(pair: TokenPair, response: Response) -> TokenPairResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=get_settings().access_token_ttl_seconds,
    )


# ---------------------------------------------------------------------------
# Step 1 -- password
# ---------------------------------------------------------------------------


@router.post("/auth/step1", response_model=Step1Response)
def step1(request: Request, body: Step1Request, response: Response) -> Step1Response:
    """Check username and password. Unknown user and wrong password look identical."""
    session_id = _guard(request).begin_password(client_ip(request), body.username.strip(), body.password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return Step1Response(session_id=session_id)


# ---------------------------------------------------------------------------
# Step 2 -- email code
# ---------------------------------------------------------------------------


@limiter.limit(lambda: get_settings().code_send_rate_limit)  # must be ABOVE @router
@router.post("/auth/step2/send", response_model=SendCodeResponse)
def step2_send(request: Request, body: SendCodeRequest) -> SendCodeResponse:
    """Email a fresh code to the session's user. Older codes stay valid until they expire."""
    _guard(request).request_email_code(body.session_id)
    return SendCodeResponse()


@router.post("/auth/step2/verify", response_model=VerifyCodeResponse)
def step2_verify(request: Request, body: VerifyCodeRequest, response: Response) -> VerifyCodeResponse:
    step2_token = _guard(request).verify_email_code(client_ip(request), body.session_id, body.code)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return VerifyCodeResponse(step2_token=step2_token)


# ---------------------------------------------------------------------------
# Step 3 -- passkey
# ---------------------------------------------------------------------------


@router.post("/auth/step3/initiate", response_model=PasskeyInitiateResponse)
def step3_initiate(request: Request, body: PasskeyInitiateRequest) -> PasskeyInitiateResponse:
    """Issue a single-use challenge plus the options navigator.credentials.get() expects."""
    issued = _guard(request).begin_passkey(body.step2_token)
    return PasskeyInitiateResponse.model_validate(issued)


@router.post("/auth/step3/verify", response_model=TokenPairResponse)
def step3_verify(request: Request, body: PasskeyVerifyRequest, response: Response) -> TokenPairResponse:
    """Verify the assertion against the stored passkey and issue an opaque token pair.

    The expected origin is the configured APP_URL, never the request's Origin
    header.
    """
    pair = _guard(request).complete_passkey(
        body.step2_token,
        body.credential.to_assertion(),
        expected_origin=get_settings().origin,
    )
    return _token_pair_response(pair, response)


# ---------------------------------------------------------------------------
# Token session
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest, response: Response) -> TokenPairResponse:
    """Spend the refresh token. The old one is dead once this returns."""
    pair = _guard(request).refresh(body.refresh_token)
    return _token_pair_response(pair, response)


@router.post("/auth/logout")
def logout(request: Request, body: RefreshRequest) -> dict:
    _guard(request).logout(body.refresh_token)
    return {"message": "Logged out."}


@router.get("/auth/status", response_model=StatusResponse)
def status(request: Request) -> StatusResponse:
    """Report whether the Bearer access token (if any) is live. Never 401s."""
    user = try_get_current_user(request)
    if user is None:
        return StatusResponse(authenticated=False)
    return StatusResponse(authenticated=True, user_id=user.id)


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(id=current_user.id, username=current_user.username, email=current_user.email)
