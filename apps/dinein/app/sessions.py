import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import List, Optional

import qrcode
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import DateTime, String, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .db import dialect_insert, get_session, utcnow
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .models import DiningSession, DiningTable, SessionMember, SessionOrder
from .ws import Notifier, branch_room, get_notifier, session_room

_log = logging.getLogger("dinein.sessions")

_QR_ATTEMPTS = 5

router = APIRouter(prefix="/sessions", tags=["sessions"])


class MemberOut(BaseModel):
    client_id: str
    user_label: str
    joined_at: datetime
    model_config = ConfigDict(from_attributes=True)


class SessionOut(BaseModel):
    id: str
    branch_id: str
    table_id: str
    qr_code: str
    checkin_at: datetime
    checkout_at: Optional[datetime]
    is_open: bool
    members: List[MemberOut]
    order_ids: List[str]
    model_config = ConfigDict(from_attributes=True)


class CheckInReq(BaseModel):
    branch_id: str
    table_id: str
    qr_code: Optional[str] = Field(default=None, max_length=128)


class JoinReq(BaseModel):
    qr_code: str
    client_id: str = Field(max_length=120)
    user_label: str = Field(max_length=120)


class SessionUpdate(BaseModel):
    branch_id: Optional[str] = None
    table_id: Optional[str] = None
    qr_code: Optional[str] = Field(default=None, max_length=128)


@dataclass
class SessionFilter:
    branch_id: Optional[str] = None
    table_id: Optional[str] = None
    active_only: bool = False


def session_to_out(sess: DiningSession) -> SessionOut:
    return SessionOut.model_validate(sess)


class SessionLifecycle:
    """
    Check-in, join, order attachment and checkout of dining sessions.

    A session is OPEN until checkout_at is set and CLOSED (terminal) after.
    Members and order references are only ever written through single
    upsert / insert-if-absent statements.
    """

    def __init__(self, s: Session, notifier: Notifier, auto_table_status: Optional[bool] = None):
        self.s = s
        self.notifier = notifier
        self.auto_table_status = config.TABLE_AUTO_STATUS if auto_table_status is None else auto_table_status

    def get(self, session_id: str) -> DiningSession:
        sess = self.s.get(DiningSession, session_id)
        if sess is None:
            raise NotFoundError("session", session_id)
        return sess

    def check_in(self, branch_id: str, table_id: str, qr_code: Optional[str] = None) -> DiningSession:
        table = self.s.get(DiningTable, table_id)
        if table is None:
            raise NotFoundError("table", table_id)
        if table.branch_id != branch_id:
            raise ValidationError(f"table {table_id} does not belong to branch {branch_id}")
        if qr_code is not None and not qr_code.strip():
            raise ValidationError("qr_code must not be blank")
        for attempt in range(_QR_ATTEMPTS):
            sess = DiningSession(
                id=str(uuid.uuid4()),
                branch_id=branch_id,
                table_id=table_id,
                qr_code=qr_code.strip() if qr_code else secrets.token_hex(16),
                checkin_at=utcnow(),
            )
            self.s.add(sess)
            try:
                if self.auto_table_status:
                    self._set_table_status(table_id, "occupied")
                self.s.commit()
            except IntegrityError:
                self.s.rollback()
                if qr_code:
                    raise ConflictError(f"qr code {qr_code!r} already in use")
                _log.warning("qr code collision, regenerating", extra={"attempt": attempt + 1})
                continue
            self.s.refresh(sess)
            _log.info("session checked in", extra={"session_id": sess.id, "branch_id": branch_id, "table_id": table_id})
            return sess
        raise ConflictError("could not allocate a unique qr code")

    def _require_open(self, session_id: str) -> None:
        # direct column read; the identity map may hold a stale checkout_at
        row = self.s.execute(select(DiningSession.checkout_at).where(DiningSession.id == session_id)).first()
        if row is None:
            raise NotFoundError("session", session_id)
        if row.checkout_at is not None:
            raise InvalidStateError("session already checked out")

    def _if_open(self, session_id: str, *columns):
        """SELECT feeding an INSERT, yielding a row only while the session is open."""
        return select(*columns).where(DiningSession.id == session_id, DiningSession.checkout_at.is_(None))

    def join(self, qr_code: str, client_id: str, user_label: str) -> DiningSession:
        if not client_id.strip() or not user_label.strip():
            raise ValidationError("client_id and user_label are required")
        sess = self.s.execute(select(DiningSession).where(DiningSession.qr_code == qr_code)).scalar_one_or_none()
        if sess is None:
            raise NotFoundError("session for qr code")
        # the open check lives in the INSERT ... SELECT so a concurrent checkout cannot slip in between
        stmt = dialect_insert(self.s, SessionMember).from_select(
            ["session_id", "client_id", "user_label", "joined_at"],
            self._if_open(
                sess.id,
                DiningSession.id,
                literal(client_id, String),
                literal(user_label, String),
                literal(utcnow(), DateTime),
            ),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_id", "client_id"],
            set_={"user_label": stmt.excluded.user_label},
        )
        res = self.s.execute(stmt)
        if res.rowcount == 0:
            self.s.rollback()
            self._require_open(sess.id)
            raise InvalidStateError("session already checked out")
        self.s.commit()
        self.s.refresh(sess)
        _log.info("member joined", extra={"session_id": sess.id, "client_id": client_id})
        return sess

    def attach_order(self, session_id: str, order_id: str) -> DiningSession:
        stmt = dialect_insert(self.s, SessionOrder).from_select(
            ["session_id", "order_id", "attached_at"],
            self._if_open(session_id, DiningSession.id, literal(order_id, String), literal(utcnow(), DateTime)),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["session_id", "order_id"])
        res = self.s.execute(stmt)
        if res.rowcount == 0:
            attached = self.s.execute(
                select(SessionOrder.id).where(SessionOrder.session_id == session_id, SessionOrder.order_id == order_id)
            ).first()
            if attached is None:
                # no commit here: the caller may hold unflushed work it wants rolled back
                self._require_open(session_id)
                raise InvalidStateError("session already checked out")
        self.s.commit()
        return self.get(session_id)

    def checkout(self, session_id: str) -> DiningSession:
        res = self.s.execute(
            update(DiningSession)
            .where(DiningSession.id == session_id, DiningSession.checkout_at.is_(None))
            .values(checkout_at=utcnow())
        )
        if res.rowcount == 0:
            self.s.rollback()
            self.get(session_id)
            raise InvalidStateError("session already checked out")
        sess = self.s.get(DiningSession, session_id)
        if self.auto_table_status:
            self._set_table_status(sess.table_id, "available")
        self.s.commit()
        self.s.refresh(sess)
        _log.info("session checked out", extra={"session_id": session_id, "orders": len(sess.order_refs)})
        payload = session_to_out(sess).model_dump(mode="json")
        self.notifier.publish(session_room(sess.id), "sessionCheckout", payload)
        self.notifier.publish(branch_room(sess.branch_id), "sessionCheckout", payload)
        return sess

    def find(self, f: SessionFilter) -> List[DiningSession]:
        stmt = select(DiningSession)
        if f.branch_id:
            stmt = stmt.where(DiningSession.branch_id == f.branch_id)
        if f.table_id:
            stmt = stmt.where(DiningSession.table_id == f.table_id)
        if f.active_only:
            stmt = stmt.where(DiningSession.checkout_at.is_(None))
        return list(self.s.execute(stmt.order_by(DiningSession.checkin_at.desc())).scalars().all())

    def find_by_qr(self, qr_code: str, include_inactive: bool = False) -> DiningSession:
        stmt = select(DiningSession).where(DiningSession.qr_code == qr_code)
        if not include_inactive:
            stmt = stmt.where(DiningSession.checkout_at.is_(None))
        sess = self.s.execute(stmt).scalar_one_or_none()
        if sess is None:
            raise NotFoundError("session for qr code")
        return sess

    def active_for_table(self, table_id: str) -> DiningSession:
        stmt = (
            select(DiningSession)
            .where(DiningSession.table_id == table_id, DiningSession.checkout_at.is_(None))
            .order_by(DiningSession.checkin_at.desc())
            .limit(1)
        )
        sess = self.s.execute(stmt).scalar_one_or_none()
        if sess is None:
            raise NotFoundError("active session for table", table_id)
        return sess

    def update(self, session_id: str, req: SessionUpdate) -> DiningSession:
        sess = self.get(session_id)
        if req.branch_id:
            sess.branch_id = req.branch_id
        if req.table_id:
            if self.s.get(DiningTable, req.table_id) is None:
                raise NotFoundError("table", req.table_id)
            sess.table_id = req.table_id
        if req.qr_code:
            sess.qr_code = req.qr_code.strip()
        try:
            self.s.commit()
        except IntegrityError:
            self.s.rollback()
            raise ConflictError(f"qr code {req.qr_code!r} already in use")
        self.s.refresh(sess)
        return sess

    def remove(self, session_id: str) -> None:
        sess = self.get(session_id)
        self.s.delete(sess)
        self.s.commit()
        _log.info("session removed", extra={"session_id": session_id})

    def _set_table_status(self, table_id: str, status: str) -> None:
        self.s.execute(update(DiningTable).where(DiningTable.id == table_id).values(status=status, updated_at=utcnow()))


def get_session_lifecycle(
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> SessionLifecycle:
    return SessionLifecycle(s, notifier)


@router.post("/checkin", response_model=SessionOut)
def check_in(req: CheckInReq, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.check_in(req.branch_id, req.table_id, req.qr_code))


@router.post("/join", response_model=SessionOut)
def join_session(req: JoinReq, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.join(req.qr_code, req.client_id, req.user_label))


@router.post("/{session_id}/checkout", response_model=SessionOut)
def checkout(session_id: str, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.checkout(session_id))


@router.get("", response_model=List[SessionOut])
def list_sessions(active_only: bool = False, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return [session_to_out(x) for x in lc.find(SessionFilter(active_only=active_only))]


@router.get("/branch/{branch_id}", response_model=List[SessionOut])
def list_branch_sessions(branch_id: str, active_only: bool = False, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return [session_to_out(x) for x in lc.find(SessionFilter(branch_id=branch_id, active_only=active_only))]


@router.get("/table/{table_id}", response_model=List[SessionOut])
def list_table_sessions(table_id: str, active_only: bool = False, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return [session_to_out(x) for x in lc.find(SessionFilter(table_id=table_id, active_only=active_only))]


@router.get("/table/{table_id}/active", response_model=SessionOut)
def active_table_session(table_id: str, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.active_for_table(table_id))


@router.get("/qr/{qr_code}", response_model=SessionOut)
def session_by_qr(qr_code: str, include_inactive: bool = False, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.find_by_qr(qr_code, include_inactive=include_inactive))


@router.get("/{session_id}/qr.png")
def session_qr_png(
    session_id: str,
    box_size: int = 6,
    border: int = 2,
    lc: SessionLifecycle = Depends(get_session_lifecycle),
):
    """QR of the session token, for the printed card on the table."""
    sess = lc.get(session_id)
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=max(1, min(box_size, 20)),
        border=max(1, min(border, 8)),
    )
    qr.add_data(sess.qr_code)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO(); img.save(buf, format="PNG"); buf.seek(0)
    return StreamingResponse(buf, media_type="image/png")


@router.get("/{session_id}", response_model=SessionOut)
def get_dining_session(session_id: str, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.get(session_id))


@router.patch("/{session_id}", response_model=SessionOut)
def update_dining_session(session_id: str, req: SessionUpdate, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    return session_to_out(lc.update(session_id, req))


@router.delete("/{session_id}")
def remove_dining_session(session_id: str, lc: SessionLifecycle = Depends(get_session_lifecycle)):
    lc.remove(session_id)
    return {"ok": True}
