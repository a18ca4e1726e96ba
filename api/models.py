"""
API request and response models for the Portcullis REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Credential inputs (email, password, token, code) are Optional on purpose: the protocol
services own their validation and answer with the 400 ValidationError
envelope, not a framework 422.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ApiKey, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class MagicLinkRequest(BaseModel):
    """Request body for POST /api/v1/auth/magic-link/request."""

    email: Optional[str] = None


class MagicLinkVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/magic-link/verify."""

    token: Optional[str] = None


class OTPRequest(BaseModel):
    email: Optional[str] = None


class OTPVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp/verify.

    should_login=false only verifies the email address; true also returns a
    token pair.
    """

    email: Optional[str] = None
    code: Optional[str] = None
    should_login: bool = False


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: Optional[str] = None
    password: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = None


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/password/reset. token comes from the emailed link."""

    token: Optional[str] = None
    password: Optional[str] = None


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/auth/api-keys.

    user_id selects the key owner; omitted means the calling admin.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(default="default", min_length=1, max_length=100)
    user_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    """Generic success body. Identical whether or not the account exists."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool
    roles: list[str]
    is_active: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            picture=user.picture,
            email_verified=user.email_verified,
            roles=list(user.roles),
            is_active=user.is_active,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class TokenResponse(BaseModel):
    """Successful login: a token pair plus the account."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class OTPVerifyResponse(BaseModel):
    success: bool = True
    message: str
    user: UserResponse
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class ApiKeyResponse(BaseModel):
    """An API key as listed. The raw key is never included."""

    id: int
    user_id: int
    name: str
    key_prefix: str
    created_at: str
    last_used: Optional[str] = None

    @classmethod
    def from_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            user_id=key.user_id,
            name=key.name,
            key_prefix=key.key_prefix,
            created_at=key.created_at or "",
            last_used=key.last_used,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once, at creation. key is the only copy of the raw value."""

    key: str


class OwnerResponse(BaseModel):
    id: int
    email: str
    roles: list[str]
    email_verified: bool


class WhoAmIResponse(BaseModel):
    """Response for GET /api/v1/service/whoami."""

    key_id: int
    key_prefix: str
    owner: Optional[OwnerResponse] = None


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
    auth_mode: str
