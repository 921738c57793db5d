import logging
import uuid
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import get_session, utcnow
from .errors import ConflictError, DomainError, InvalidStateError, NotFoundError, ValidationError
from .models import Ingredient, Stock

_log = logging.getLogger("dinein.stocks")

router = APIRouter(prefix="/stocks", tags=["stocks"])


class StockCreate(BaseModel):
    branch_id: str
    ingredient_id: str
    quantity: float = Field(default=0.0, ge=0)
    low_threshold: float = Field(default=0.0, ge=0)


class StockUpdate(BaseModel):
    low_threshold: Optional[float] = Field(default=None, ge=0)
    quantity: Optional[float] = Field(default=None, ge=0)


class StockAdjust(BaseModel):
    type: Literal["add", "remove"]
    quantity: float
    reason: Optional[str] = Field(default=None, max_length=200)


class BulkAdjustItem(StockAdjust):
    stock_id: str


class StockOut(BaseModel):
    id: str
    branch_id: str
    ingredient_id: str
    quantity: float
    low_threshold: float
    last_adjustment_reason: Optional[str]
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class BulkAdjustResult(BaseModel):
    stock_id: str
    ok: bool
    quantity: Optional[float] = None
    error: Optional[str] = None


def _get_stock(s: Session, stock_id: str) -> Stock:
    st = s.get(Stock, stock_id)
    if st is None:
        raise NotFoundError("stock", stock_id)
    return st


def adjust_stock(s: Session, stock_id: str, kind: str, quantity: float, reason: Optional[str] = None) -> Stock:
    """Add to or remove from a stock level in one conditional UPDATE; never goes below zero."""
    if quantity <= 0:
        raise ValidationError("adjustment quantity must be positive")
    if kind not in ("add", "remove"):
        raise ValidationError(f"unknown adjustment type {kind!r}")
    delta = quantity if kind == "add" else -quantity
    stmt = (
        update(Stock)
        .where(Stock.id == stock_id)
        .values(quantity=Stock.quantity + delta, last_adjustment_reason=reason, updated_at=utcnow())
    )
    if kind == "remove":
        stmt = stmt.where(Stock.quantity >= quantity)
    res = s.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount == 0:
        s.rollback()
        st = _get_stock(s, stock_id)
        raise InvalidStateError(f"insufficient stock: have {st.quantity:g}, need {quantity:g}")
    s.commit()
    st = _get_stock(s, stock_id)
    s.refresh(st)
    _log.info("stock adjusted", extra={"stock_id": stock_id, "delta": delta, "quantity": st.quantity})
    return st


def low_stock(s: Session, branch_id: Optional[str] = None) -> List[Stock]:
    stmt = select(Stock).where(Stock.quantity <= Stock.low_threshold)
    if branch_id:
        stmt = stmt.where(Stock.branch_id == branch_id)
    return list(s.execute(stmt.order_by(Stock.quantity.asc())).scalars().all())


def bulk_adjust(s: Session, items: List[BulkAdjustItem]) -> List[BulkAdjustResult]:
    results: List[BulkAdjustResult] = []
    for it in items:
        try:
            st = adjust_stock(s, it.stock_id, it.type, it.quantity, it.reason)
        except DomainError as e:
            _log.warning("bulk stock adjustment skipped", extra={"stock_id": it.stock_id, "error": e.message})
            results.append(BulkAdjustResult(stock_id=it.stock_id, ok=False, error=e.message))
            continue
        results.append(BulkAdjustResult(stock_id=st.id, ok=True, quantity=st.quantity))
    return results


@router.post("", response_model=StockOut)
def create_stock(req: StockCreate, s: Session = Depends(get_session)):
    if s.get(Ingredient, req.ingredient_id) is None:
        raise NotFoundError("ingredient", req.ingredient_id)
    st = Stock(
        id=str(uuid.uuid4()),
        branch_id=req.branch_id,
        ingredient_id=req.ingredient_id,
        quantity=req.quantity,
        low_threshold=req.low_threshold,
        updated_at=utcnow(),
    )
    s.add(st)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise ConflictError("stock for this ingredient already exists in the branch")
    s.refresh(st)
    return st


@router.get("", response_model=List[StockOut])
def list_stocks(branch_id: Optional[str] = None, s: Session = Depends(get_session)):
    stmt = select(Stock)
    if branch_id:
        stmt = stmt.where(Stock.branch_id == branch_id)
    return s.execute(stmt.order_by(Stock.updated_at.desc())).scalars().all()


@router.get("/low", response_model=List[StockOut])
def list_low_stock(branch_id: Optional[str] = None, s: Session = Depends(get_session)):
    return low_stock(s, branch_id)


@router.post("/bulk-adjust", response_model=List[BulkAdjustResult])
def bulk_adjust_stock(items: List[BulkAdjustItem], s: Session = Depends(get_session)):
    return bulk_adjust(s, items)


@router.get("/{stock_id}", response_model=StockOut)
def get_stock(stock_id: str, s: Session = Depends(get_session)):
    return _get_stock(s, stock_id)


@router.patch("/{stock_id}", response_model=StockOut)
def update_stock(stock_id: str, req: StockUpdate, s: Session = Depends(get_session)):
    st = _get_stock(s, stock_id)
    if req.low_threshold is not None:
        st.low_threshold = req.low_threshold
    if req.quantity is not None:
        st.quantity = req.quantity
        st.last_adjustment_reason = "manual count"
    st.updated_at = utcnow()
    s.commit(); s.refresh(st)
    return st


@router.post("/{stock_id}/adjust", response_model=StockOut)
def adjust(stock_id: str, req: StockAdjust, s: Session = Depends(get_session)):
    return adjust_stock(s, stock_id, req.type, req.quantity, req.reason)


@router.delete("/{stock_id}")
def delete_stock(stock_id: str, s: Session = Depends(get_session)):
    s.delete(_get_stock(s, stock_id)); s.commit()
    return {"ok": True}
