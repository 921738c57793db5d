import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_session, utcnow
from .errors import NotFoundError, ValidationError
from .models import WAITLIST_STATUSES, WaitlistEntry

router = APIRouter(prefix="/waitlist", tags=["waitlist"])


class WaitlistCreate(BaseModel):
    branch_id: str
    party_name: str = Field(min_length=1, max_length=120)
    party_size: int = Field(default=2, ge=1)
    contact_info: Optional[str] = None


class WaitlistUpdate(BaseModel):
    party_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    party_size: Optional[int] = Field(default=None, ge=1)
    contact_info: Optional[str] = None
    status: Optional[str] = None


class WaitlistOut(BaseModel):
    id: str
    branch_id: str
    party_name: str
    party_size: int
    contact_info: Optional[str]
    status: str
    requested_at: datetime
    notified_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


def _get_entry(s: Session, entry_id: str) -> WaitlistEntry:
    w = s.get(WaitlistEntry, entry_id)
    if w is None:
        raise NotFoundError("waitlist entry", entry_id)
    return w


@router.post("", response_model=WaitlistOut)
def create_waitlist_entry(req: WaitlistCreate, s: Session = Depends(get_session)):
    w = WaitlistEntry(
        id=str(uuid.uuid4()),
        branch_id=req.branch_id,
        party_name=req.party_name.strip(),
        party_size=req.party_size,
        contact_info=req.contact_info,
        status="waiting",
        requested_at=utcnow(),
    )
    s.add(w); s.commit(); s.refresh(w)
    return w


@router.get("", response_model=List[WaitlistOut])
def list_waitlist(branch_id: Optional[str] = None, status: Optional[str] = None, s: Session = Depends(get_session)):
    stmt = select(WaitlistEntry)
    if branch_id:
        stmt = stmt.where(WaitlistEntry.branch_id == branch_id)
    if status:
        stmt = stmt.where(WaitlistEntry.status == status)
    # first come, first seated
    return s.execute(stmt.order_by(WaitlistEntry.requested_at.asc())).scalars().all()


@router.get("/{entry_id}", response_model=WaitlistOut)
def get_waitlist_entry(entry_id: str, s: Session = Depends(get_session)):
    return _get_entry(s, entry_id)


@router.patch("/{entry_id}", response_model=WaitlistOut)
def update_waitlist_entry(entry_id: str, req: WaitlistUpdate, s: Session = Depends(get_session)):
    w = _get_entry(s, entry_id)
    if req.status is not None:
        if req.status not in WAITLIST_STATUSES:
            raise ValidationError(f"waitlist status must be one of {', '.join(WAITLIST_STATUSES)}")
        if req.status == "notified" and w.status != "notified":
            w.notified_at = utcnow()
        w.status = req.status
    if req.party_name:
        w.party_name = req.party_name.strip()
    if req.party_size is not None:
        w.party_size = req.party_size
    if req.contact_info is not None:
        w.contact_info = req.contact_info
    s.commit(); s.refresh(w)
    return w


@router.delete("/{entry_id}")
def delete_waitlist_entry(entry_id: str, s: Session = Depends(get_session)):
    s.delete(_get_entry(s, entry_id)); s.commit()
    return {"ok": True}
