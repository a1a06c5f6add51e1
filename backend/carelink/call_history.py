from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import auth as auth_utils
from .db import get_db
from .models import CallRecord
from .schemas import CallRecordOut


router = APIRouter(prefix="/api/calls", tags=["calls"])


async def _get_participant_call(
    db: AsyncSession,
    call_id: str,
    user_id: str,
) -> CallRecord:
    result = await db.execute(select(CallRecord).where(CallRecord.id == call_id))
    record = result.scalar_one_or_none()
    if record is None:
        raise HTTPException(status_code=404, detail="Call not found")
    if user_id not in (record.caller_id, record.callee_id):
        raise HTTPException(status_code=403, detail="Not authorised to access this call")
    return record


@router.get("", response_model=list[CallRecordOut])
async def list_calls(
    current_user: dict = Depends(auth_utils.get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[CallRecordOut]:
    """List calls the authenticated user placed or received, newest first."""
    user_id = current_user["uid"]
    result = await db.execute(
        select(CallRecord)
        .where(or_(CallRecord.caller_id == user_id, CallRecord.callee_id == user_id))
        .order_by(CallRecord.created_at.desc())
    )
    records = result.scalars().all()
    return [CallRecordOut.model_validate(record) for record in records]


@router.get("/{call_id}", response_model=CallRecordOut)
async def get_call(
    call_id: str,
    current_user: dict = Depends(auth_utils.get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CallRecordOut:
    """Fetch one call by id for one of its participants."""
    record = await _get_participant_call(db, call_id, current_user["uid"])
    return CallRecordOut.model_validate(record)
