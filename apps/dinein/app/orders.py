import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .db import get_session, utcnow
from .errors import DomainError, NotFoundError, ValidationError
from .models import ORDER_STATUSES, DiningTable, MenuItem, Order, OrderLine, SessionMember
from .sessions import SessionLifecycle
from .ws import GLOBAL_TOPIC, Notifier, branch_room, get_notifier, order_room, session_room

_log = logging.getLogger("dinein.orders")

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderAttacher(Protocol):
    def attach_order(self, session_id: str, order_id: str) -> object:
        ...


class OrderLineIn(BaseModel):
    menu_item_id: str
    qty: int = 1
    note: Optional[str] = Field(default=None, max_length=200)


class OrderCreate(BaseModel):
    session_id: str
    branch_id: str
    table_id: str
    lines: List[OrderLineIn]
    total_amount: float
    client_id: Optional[str] = None
    order_by: Optional[str] = None


class OrderUpdate(BaseModel):
    lines: Optional[List[OrderLineIn]] = None
    total_amount: Optional[float] = None
    order_by: Optional[str] = None
    status: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class MenuItemBrief(BaseModel):
    id: str
    name: str
    price: float
    image_url: Optional[str]
    category_id: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class TableBrief(BaseModel):
    id: str
    name: str
    status: str
    model_config = ConfigDict(from_attributes=True)


class OrderLineOut(BaseModel):
    id: int
    menu_item_id: str
    qty: int
    note: Optional[str]
    menu_item: Optional[MenuItemBrief] = None


class OrderOut(BaseModel):
    id: str
    session_id: str
    branch_id: str
    table_id: str
    status: str
    total_amount: float
    client_id: Optional[str]
    order_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    lines: List[OrderLineOut]
    table: Optional[TableBrief] = None


@dataclass
class OrderFilter:
    session_id: Optional[str] = None
    branch_id: Optional[str] = None
    table_id: Optional[str] = None
    status: Optional[str] = None
    client_id: Optional[str] = None
    order_by: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


def resolve_orders(s: Session, orders: Iterable[Order]) -> List[OrderOut]:
    """Inline menu items and tables for display, two queries for the whole batch."""
    orders = list(orders)
    item_ids = {ln.menu_item_id for od in orders for ln in od.lines}
    table_ids = {od.table_id for od in orders}
    items: Dict[str, MenuItem] = {}
    tables: Dict[str, DiningTable] = {}
    if item_ids:
        items = {m.id: m for m in s.execute(select(MenuItem).where(MenuItem.id.in_(item_ids))).scalars()}
    if table_ids:
        tables = {t.id: t for t in s.execute(select(DiningTable).where(DiningTable.id.in_(table_ids))).scalars()}
    out: List[OrderOut] = []
    for od in orders:
        lines = []
        for ln in od.lines:
            mi = items.get(ln.menu_item_id)
            lines.append(
                OrderLineOut(
                    id=ln.id,
                    menu_item_id=ln.menu_item_id,
                    qty=ln.qty,
                    note=ln.note,
                    menu_item=MenuItemBrief.model_validate(mi) if mi else None,
                )
            )
        tb = tables.get(od.table_id)
        out.append(
            OrderOut(
                id=od.id,
                session_id=od.session_id,
                branch_id=od.branch_id,
                table_id=od.table_id,
                status=od.status,
                total_amount=od.total_amount,
                client_id=od.client_id,
                order_by=od.order_by,
                created_at=od.created_at,
                updated_at=od.updated_at,
                lines=lines,
                table=TableBrief.model_validate(tb) if tb else None,
            )
        )
    return out


def _check_status(status: str) -> str:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status {status!r}")
    return status


class OrderLifecycle:
    def __init__(self, s: Session, notifier: Notifier, sessions: OrderAttacher):
        self.s = s
        self.notifier = notifier
        self.sessions = sessions

    def get(self, order_id: str) -> Order:
        od = self.s.get(Order, order_id)
        if od is None:
            raise NotFoundError("order", order_id)
        return od

    def resolve(self, od: Order) -> OrderOut:
        return resolve_orders(self.s, [od])[0]

    def _build_lines(self, lines: List[OrderLineIn]) -> List[OrderLine]:
        if not lines:
            raise ValidationError("order has no lines")
        for ln in lines:
            if ln.qty < 1:
                raise ValidationError(f"quantity must be at least 1 (menu item {ln.menu_item_id})")
        wanted = {ln.menu_item_id for ln in lines}
        found = set(self.s.execute(select(MenuItem.id).where(MenuItem.id.in_(wanted))).scalars())
        for ln in lines:
            if ln.menu_item_id not in found:
                raise NotFoundError("menu item", ln.menu_item_id)
        return [OrderLine(menu_item_id=ln.menu_item_id, qty=ln.qty, note=ln.note) for ln in lines]

    def create(self, req: OrderCreate) -> Order:
        if req.total_amount < 0:
            raise ValidationError("total_amount must not be negative")
        lines = self._build_lines(req.lines)
        order_by = req.order_by
        if req.client_id and not order_by:
            order_by = self.s.execute(
                select(SessionMember.user_label).where(
                    SessionMember.session_id == req.session_id,
                    SessionMember.client_id == req.client_id,
                )
            ).scalar_one_or_none()
        od = Order(
            id=str(uuid.uuid4()),
            session_id=req.session_id,
            branch_id=req.branch_id,
            table_id=req.table_id,
            status="received",
            total_amount=req.total_amount,
            client_id=req.client_id,
            order_by=order_by,
            lines=lines,
        )
        self.s.add(od)
        try:
            self.s.flush()
            # commits the order together with the session reference
            self.sessions.attach_order(req.session_id, od.id)
        except DomainError:
            self.s.rollback()
            raise
        self.s.refresh(od)
        _log.info("order created", extra={"order_id": od.id, "session_id": od.session_id, "lines": len(lines)})
        payload = self.resolve(od).model_dump(mode="json")
        self.notifier.publish(GLOBAL_TOPIC, "newOrder", payload)
        self.notifier.publish(branch_room(od.branch_id), "newOrder", payload)
        return od

    def update_status(self, order_id: str, status: str) -> Order:
        _check_status(status)
        res = self.s.execute(
            update(Order).where(Order.id == order_id).values(status=status, updated_at=utcnow())
        )
        if res.rowcount == 0:
            self.s.rollback()
            raise NotFoundError("order", order_id)
        self.s.commit()
        od = self.get(order_id)
        self.s.refresh(od)
        _log.info("order status changed", extra={"order_id": order_id, "status": status})
        payload = self.resolve(od).model_dump(mode="json")
        for topic in (GLOBAL_TOPIC, branch_room(od.branch_id), session_room(od.session_id), order_room(od.id)):
            self.notifier.publish(topic, "orderStatusChanged", payload)
        return od

    def update(self, order_id: str, req: OrderUpdate) -> Order:
        od = self.get(order_id)
        if req.total_amount is not None and req.total_amount < 0:
            raise ValidationError("total_amount must not be negative")
        if req.status is not None:
            _check_status(req.status)
        if req.lines is not None:
            od.lines = self._build_lines(req.lines)
        if req.total_amount is not None:
            od.total_amount = req.total_amount
        if req.order_by is not None:
            od.order_by = req.order_by
        self.s.commit()
        if req.status is not None:
            return self.update_status(order_id, req.status)
        self.s.refresh(od)
        return od

    def remove(self, order_id: str) -> None:
        od = self.get(order_id)
        self.s.delete(od)
        self.s.commit()
        _log.info("order removed", extra={"order_id": order_id})

    def find(self, f: OrderFilter) -> List[Order]:
        stmt = select(Order)
        if f.session_id:
            stmt = stmt.where(Order.session_id == f.session_id)
        if f.branch_id:
            stmt = stmt.where(Order.branch_id == f.branch_id)
        if f.table_id:
            stmt = stmt.where(Order.table_id == f.table_id)
        if f.status:
            stmt = stmt.where(Order.status == _check_status(f.status))
        if f.client_id:
            stmt = stmt.where(Order.client_id == f.client_id)
        if f.order_by:
            stmt = stmt.where(Order.order_by == f.order_by)
        if f.start:
            stmt = stmt.where(Order.created_at >= f.start)
        if f.end:
            stmt = stmt.where(Order.created_at <= f.end)
        return list(self.s.execute(stmt.order_by(Order.created_at.desc())).scalars().all())

    def find_by_session(self, session_id: str, client_id: Optional[str] = None) -> List[Order]:
        return self.find(OrderFilter(session_id=session_id, client_id=client_id))

    def find_by_branch(self, branch_id: str, status: Optional[str] = None) -> List[Order]:
        return self.find(OrderFilter(branch_id=branch_id, status=status))

    def find_by_table(self, table_id: str, f: Optional[OrderFilter] = None) -> List[Order]:
        f = f or OrderFilter()
        f.table_id = table_id
        return self.find(f)


def get_order_lifecycle(
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> OrderLifecycle:
    return OrderLifecycle(s, notifier, SessionLifecycle(s, notifier))


@router.post("", response_model=OrderOut)
def create_order(req: OrderCreate, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return lc.resolve(lc.create(req))


@router.get("", response_model=List[OrderOut])
def list_orders(
    branch_id: Optional[str] = None,
    session_id: Optional[str] = None,
    table_id: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    lc: OrderLifecycle = Depends(get_order_lifecycle),
):
    f = OrderFilter(
        branch_id=branch_id,
        session_id=session_id,
        table_id=table_id,
        status=status,
        start=start_date,
        end=end_date,
    )
    return resolve_orders(lc.s, lc.find(f))


@router.get("/session/{session_id}", response_model=List[OrderOut])
def list_session_orders(session_id: str, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return resolve_orders(lc.s, lc.find_by_session(session_id))


@router.get("/session/{session_id}/client/{client_id}", response_model=List[OrderOut])
def list_session_client_orders(session_id: str, client_id: str, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return resolve_orders(lc.s, lc.find_by_session(session_id, client_id=client_id))


@router.get("/branch/{branch_id}", response_model=List[OrderOut])
def list_branch_orders(branch_id: str, status: Optional[str] = None, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return resolve_orders(lc.s, lc.find_by_branch(branch_id, status=status))


@router.get("/table/{table_id}", response_model=List[OrderOut])
def list_table_orders(
    table_id: str,
    status: Optional[str] = None,
    client_id: Optional[str] = None,
    order_by: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    lc: OrderLifecycle = Depends(get_order_lifecycle),
):
    f = OrderFilter(status=status, client_id=client_id, order_by=order_by, start=start_date, end=end_date)
    return resolve_orders(lc.s, lc.find_by_table(table_id, f))


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: str, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return lc.resolve(lc.get(order_id))


@router.patch("/{order_id}/status", response_model=OrderOut)
def update_order_status(order_id: str, req: StatusUpdate, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return lc.resolve(lc.update_status(order_id, req.status))


@router.patch("/{order_id}", response_model=OrderOut)
def update_order(order_id: str, req: OrderUpdate, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    return lc.resolve(lc.update(order_id, req))


@router.delete("/{order_id}")
def remove_order(order_id: str, lc: OrderLifecycle = Depends(get_order_lifecycle)):
    lc.remove(order_id)
    return {"ok": True}
