from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.apps.api.deps import get_db, get_org_id
from clawkeeper.core.errors import ValidationError
from clawkeeper.services.credits import credit_headers
from clawkeeper.services.ingestion import ingest_scan

router = APIRouter(prefix="/scans", tags=["scans"])


async def read_json_body(request: Request) -> Any:
    # Parse manually so malformed JSON becomes the same 400 the validator uses.
    raw = await request.body()
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("Invalid JSON body") from exc


@router.post("")
async def upload_scan(
    request: Request,
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    body = await read_json_body(request)
    result = await ingest_scan(session=db, org_id=org_id, raw=body)
    return JSONResponse(content=result.to_response(), headers=credit_headers(result.credits))
