from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.apps.api.deps import get_db
from upgradeguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from upgradeguard.apps.api.response import SuccessEnvelope, success_response
from upgradeguard.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # A trivial round trip proves the pool can hand out connections.
    await db.execute(text("SELECT 1"))
    payload = HealthResponse(status="ok", database="ok", pool=pool_stats())
    return success_response(request=request, data=payload)
