"""Authorization and unit ledger routes.

Routes:
- POST /api/authorizations                             - Register an authorization
- GET  /api/authorizations/{authorization_id}/remaining - Remaining units (ledger-derived)
- GET  /api/authorizations/{authorization_id}/balance  - Used / missed / remaining / overdraft
- GET  /api/authorizations/{authorization_id}/ledger   - Ledger history
- POST /api/authorizations/ledger/{entry_id}/reverse   - Post a reversing adjustment
- POST /api/authorizations/rebuild-projections         - Recompute cached totals
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.db.connection import get_db
from careroster.ledger.service import AuthorizationLedger
from careroster.web.models import AuthorizationCreateRequest
from careroster.web.serializers import row_to_dict

router = APIRouter(prefix="/api/authorizations", tags=["authorizations"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_authorization(
    request: AuthorizationCreateRequest, db: AsyncSession = Depends(get_db)
):
    authorization = await AuthorizationLedger(db).create_authorization(**request.model_dump())
    await db.commit()
    return row_to_dict(authorization)


@router.post("/rebuild-projections")
async def rebuild_projections(db: AsyncSession = Depends(get_db)):
    drifted = await AuthorizationLedger(db).rebuild_projections()
    await db.commit()
    return {"rebuilt": drifted}


@router.post("/ledger/{entry_id}/reverse", status_code=status.HTTP_201_CREATED)
async def reverse_entry(entry_id: UUID, db: AsyncSession = Depends(get_db)):
    posting = await AuthorizationLedger(db).reverse_consumption(entry_id)
    await db.commit()
    return {
        "entry": posting.entry.model_dump(),
        "created": posting.created,
        "remaining_after": posting.remaining_after,
    }


@router.get("/{authorization_id}/remaining")
async def remaining_units(authorization_id: UUID, db: AsyncSession = Depends(get_db)):
    remaining = await AuthorizationLedger(db).remaining_units(authorization_id)
    return {"authorization_id": authorization_id, "remaining_units": remaining}


@router.get("/{authorization_id}/balance")
async def authorization_balance(authorization_id: UUID, db: AsyncSession = Depends(get_db)):
    balance = await AuthorizationLedger(db).balance(authorization_id)
    return balance.model_dump()


@router.get("/{authorization_id}/ledger")
async def authorization_ledger(authorization_id: UUID, db: AsyncSession = Depends(get_db)):
    entries = await AuthorizationLedger(db).entries(authorization_id)
    return [entry.model_dump() for entry in entries]
