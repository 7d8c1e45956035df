from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator
import asyncio
import logging
import time

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.apps.api.response import get_request_id
from upgradeguard.core.config import get_settings
from upgradeguard.domain.actor import CHANGE_SOURCE_API, ActorContext
from upgradeguard.domain.models import ApiKey, User
from upgradeguard.persistence.db import SessionLocal, get_session
from upgradeguard.services.auth.api_keys import hash_api_key, normalize_role, parse_api_key, role_allows


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Capture the authenticated identity used for tenant scoping and RBAC.
    subject_id: str
    tenant_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    # Cache principals briefly to reduce auth DB load between requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    # Store principals with a fixed expiry to keep revocations responsive.
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def clear_auth_cache() -> None:
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow tenant headers only when explicitly enabled for local dev.
    tenant_id = request.headers.get("X-Tenant-Id")
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required in dev bypass mode")
    role_header = request.headers.get("X-Role", "admin")
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        subject_id=request.headers.get("X-Actor-Id") or f"dev-{tenant_id}",
        tenant_id=tenant_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def reject_tenant_id_in_body(request: Request) -> None:
    # Reject client-supplied tenant_id to enforce credential-bound tenancy.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and "tenant_id" in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "TENANT_ID_NOT_ALLOWED",
                "message": "tenant_id must be derived from the API key",
            },
        )


async def _touch_last_used(api_key_id: str) -> None:
    # Update last_used_at asynchronously without affecting request transactions.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key_id)
                .values(last_used_at=func.now())
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("api_key_touch_failed api_key_id=%s error=%s", api_key_id, exc)


def _is_expired(expires_at: datetime | None) -> bool:
    if expires_at is None:
        return False
    # SQLite hands back naive timestamps; treat them as UTC.
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= datetime.now(timezone.utc)


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    header_value = request.headers.get(settings.auth_api_key_header)
    bearer_token = _parse_bearer_token(header_value)

    if not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")

    if not bearer_token:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        raise _auth_error("Missing API key")

    key_id = parse_api_key(bearer_token)
    if key_id is None:
        logger.info("auth_denied reason=malformed_key path=%s", request.url.path)
        raise _auth_error("Invalid API key")

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        return cached

    try:
        result = await db.execute(
            select(ApiKey, User)
            .join(User, ApiKey.user_id == User.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        logger.error("auth_lookup_failed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    row = result.first()
    if row is None:
        logger.info("auth_denied reason=unknown_key path=%s", request.url.path)
        raise _auth_error("Invalid API key")
    api_key, user = row
    if api_key.id != key_id:
        logger.warning("auth_denied reason=key_id_mismatch api_key_id=%s", api_key.id)
        raise _auth_error("Invalid API key")
    if api_key.revoked_at is not None or not user.is_active:
        logger.info("auth_denied reason=revoked api_key_id=%s", api_key.id)
        raise _auth_error("API key is revoked or inactive")
    if _is_expired(api_key.expires_at):
        # Deny expired credentials explicitly so operators can distinguish expiry from revocation.
        logger.info("auth_denied reason=expired api_key_id=%s", api_key.id)
        raise _auth_error("API key expired")
    if api_key.tenant_id != user.tenant_id:
        logger.warning("auth_denied reason=tenant_mismatch api_key_id=%s", api_key.id)
        raise _forbidden_error("Tenant mismatch for API key")

    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc

    principal = Principal(
        subject_id=user.id,
        tenant_id=user.tenant_id,
        role=role,
        api_key_id=api_key.id,
        auth_method="api_key",
    )
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    asyncio.create_task(_touch_last_used(api_key.id))
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.info(
                "rbac_forbidden tenant_id=%s role=%s required_role=%s path=%s",
                principal.tenant_id,
                principal.role,
                minimum_role,
                request.url.path,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def actor_from_principal(principal: Principal, request: Request) -> ActorContext:
    # Every write carries the caller identity into rows and history entries.
    return ActorContext(
        tenant_id=principal.tenant_id,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        source=CHANGE_SOURCE_API,
        request_id=get_request_id(request),
    )
