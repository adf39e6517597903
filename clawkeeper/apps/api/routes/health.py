from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from clawkeeper.persistence.db import pool_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", db_pool=pool_stats())
