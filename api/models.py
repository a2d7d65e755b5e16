"""
API request and response models for StepGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are kept
separate from the dataclasses in auth/models.py, which own the internal
domain representation. Route handlers map between the two.

Field names follow the browser clients' camelCase JSON (sessionId,
clientDataJSON, ...) through explicit aliases; populate_by_name lets Python
callers use the snake_case names too.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import PasskeyAssertion

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Step 1
# ---------------------------------------------------------------------------


class Step1Request(BaseModel):
    """Passwords are taken verbatim; only the username is trimmed."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class Step1Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


# ---------------------------------------------------------------------------
# Step 2
# ---------------------------------------------------------------------------


class SendCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    session_id: str = Field(alias="sessionId", min_length=1, max_length=256)


class SendCodeResponse(BaseModel):
    success: bool = True


class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    session_id: str = Field(alias="sessionId", min_length=1, max_length=256)
    code: str = Field(pattern=r"^\d{6}$")


class VerifyCodeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step2_token: str = Field(alias="step2Token")


# ---------------------------------------------------------------------------
# Step 3
# ---------------------------------------------------------------------------


class PasskeyInitiateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    step2_token: str = Field(alias="step2Token", min_length=1, max_length=256)


class PasskeyOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    challenge: str
    timeout: int
    rp_id: str = Field(alias="rpId")
    user_verification: str = Field(alias="userVerification")
    allow_credentials: list[dict] = Field(alias="allowCredentials", default_factory=list)


class PasskeyInitiateResponse(BaseModel):
    challenge: str
    options: PasskeyOptions


class AssertionResponseBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_data_json: str = Field(alias="clientDataJSON", max_length=8192)
    authenticator_data: Optional[str] = Field(default=None, alias="authenticatorData", max_length=8192)
    signature: Optional[str] = Field(default=None, max_length=4096)
    user_handle: Optional[str] = Field(default=None, alias="userHandle", max_length=1024)


class PasskeyCredential(BaseModel):
    """The browser's PublicKeyCredential serialized to JSON."""

    id: str = Field(min_length=1, max_length=1024)
    type: Literal["public-key"]
    response: AssertionResponseBody

    def to_assertion(self) -> PasskeyAssertion:
        return PasskeyAssertion.from_dict(self.model_dump(by_alias=True))


class PasskeyVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step2_token: str = Field(alias="step2Token", min_length=1, max_length=256)
    credential: PasskeyCredential


# ---------------------------------------------------------------------------
# Tokens and session
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")  # access token TTL in seconds


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    refresh_token: str = Field(alias="refreshToken", min_length=1, max_length=512)


class StatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    authenticated: bool
    user_id: Optional[int] = Field(default=None, alias="userId")


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
