from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.apps.api.deps import get_db, get_org_id
from clawkeeper.services.credits import credit_headers, get_credit_ledger

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("")
async def get_credits(
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    # Read-only projection; a due refill is shown but not persisted.
    balance = await get_credit_ledger().peek(session=db, org_id=org_id)
    return JSONResponse(
        content={"remaining": balance.remaining, "cap": balance.cap},
        headers=credit_headers(balance),
    )
