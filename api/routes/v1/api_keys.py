"""
api/routes/v1/api_keys.py -- API key administration and the key-gated service probe.

Routes:
  POST   /api/v1/auth/api-keys        -- generate a key (admin); raw key returned ONCE
  GET    /api/v1/auth/api-keys        -- list keys (admin); ?user_id= narrows to one owner
  DELETE /api/v1/auth/api-keys/{id}   -- revoke a key (admin)
  GET    /api/v1/service/whoami       -- requires a valid API key; echoes the key owner

router follows AUTH_MODE like the other /auth routes; service_router is
always mounted.

Security:
  Keys are stored as HMAC-SHA256(SECRET_KEY, "api-key:" + raw). Only the
  12-char prefix is kept in clear for display.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse, OwnerResponse, WhoAmIResponse
from auth.dependencies import ApiKeyAuth, require_admin
from auth.errors import NotFoundError
from auth.models import ApiKey, Principal

logger = logging.getLogger("portcullis.api.api_keys")

KEY_PREFIX_LENGTH = 12

# Auth policy:
# - /api/v1/auth/api-keys*:     requires admin role (require_admin)
# - GET /api/v1/service/whoami:  requires a valid API key (ApiKeyAuth)
router = APIRouter()
service_router = APIRouter()

require_api_key = ApiKeyAuth()


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    admin: Principal = Depends(require_admin),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored."""
    accounts = request.app.state.accounts
    codec = request.app.state.codec

    owner_id = body.user_id if body.user_id is not None else admin.subject_id
    if accounts.get_by_id(owner_id) is None:
        raise NotFoundError("User not found.")

    raw_key = codec.generate_api_key()
    key_id = accounts.create_api_key(
        ApiKey(
            user_id=owner_id,
            name=body.name,
            key_hash=codec.hash_api_key(raw_key),
            key_prefix=raw_key[:KEY_PREFIX_LENGTH],
        )
    )
    created = accounts.get_api_key(key_id)
    logger.info("API key %s (%s) created for user_id=%s by admin %s", key_id, created.key_prefix, owner_id, admin.subject_id)
    return ApiKeyCreatedResponse(**ApiKeyResponse.from_key(created).model_dump(), key=raw_key)


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
async def list_api_keys(
    request: Request,
    user_id: int | None = None,
    admin: Principal = Depends(require_admin),
) -> list[ApiKeyResponse]:
    """List API keys, newest first. Raw key values are never returned."""
    return [ApiKeyResponse.from_key(k) for k in request.app.state.accounts.list_api_keys(user_id)]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
async def revoke_api_key(
    request: Request,
    key_id: int,
    admin: Principal = Depends(require_admin),
) -> Response:
    if not request.app.state.accounts.revoke_api_key(key_id):
        raise NotFoundError("API key not found.")
    logger.info("API key %s revoked by admin %s", key_id, admin.subject_id)
    return Response(status_code=204)


@service_router.get("/service/whoami", response_model=WhoAmIResponse)
async def whoami(request: Request, key: ApiKey = Depends(require_api_key)) -> WhoAmIResponse:
    """Identify the caller's API key and, when it resolves, its owner."""
    owner: Principal | None = request.state.owner
    return WhoAmIResponse(
        key_id=key.id,
        key_prefix=key.key_prefix,
        owner=OwnerResponse(
            id=owner.subject_id,
            email=owner.email,
            roles=owner.roles,
            email_verified=owner.email_verified,
        )
        if owner is not None
        else None,
    )
