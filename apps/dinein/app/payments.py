import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Protocol

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .db import get_session, utcnow
from .errors import InvalidStateError, NotFoundError, ValidationError
from .models import PAYMENT_METHODS, PAYMENT_STATUSES, Order, Payment
from .omise import OmiseClient
from .ws import Notifier, branch_room, get_notifier, order_room

_log = logging.getLogger("dinein.payments")

router = APIRouter(prefix="/payments", tags=["payments"])

# statuses staff may set by hand; "expired" is schema-only
MANUAL_STATUSES = ("pending", "paid", "failed")
SETTLED = ("paid", "failed")


class PaymentGateway(Protocol):
    def create_source(self, amount: int, currency: str, type: str = "promptpay") -> Dict[str, Any]:
        ...

    def create_charge(
        self,
        amount: int,
        currency: str,
        source_id: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        return_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        ...


class PaymentCreate(BaseModel):
    order_id: str
    session_id: str
    branch_id: str
    amount: float
    method: str = "cash"
    status: str = "pending"


class PromptPayCreate(BaseModel):
    order_id: str
    session_id: str
    branch_id: str
    amount: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentStatusUpdate(BaseModel):
    status: str


class PaymentUpdate(BaseModel):
    amount: Optional[float] = None
    method: Optional[str] = None
    status: Optional[str] = None


class PaymentOut(BaseModel):
    id: str
    order_id: str
    session_id: str
    branch_id: str
    amount: float
    method: str
    status: str
    source_id: Optional[str]
    transaction_id: Optional[str]
    payment_details: Optional[Dict[str, Any]]
    qr_code_image: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


@dataclass
class PaymentFilter:
    order_id: Optional[str] = None
    session_id: Optional[str] = None
    branch_id: Optional[str] = None
    status: Optional[str] = None
    method: Optional[str] = None


def payment_to_out(p: Payment) -> PaymentOut:
    return PaymentOut(
        id=p.id,
        order_id=p.order_id,
        session_id=p.session_id,
        branch_id=p.branch_id,
        amount=p.amount,
        method=p.method,
        status=p.status,
        source_id=p.source_id,
        transaction_id=p.transaction_id,
        payment_details=json.loads(p.payment_details_json) if p.payment_details_json else None,
        qr_code_image=p.qr_code_image,
        expires_at=p.expires_at,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


def to_minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_charge_status(gateway_status: Optional[str]) -> str:
    if gateway_status == "successful":
        return "paid"
    if gateway_status in ("failed", "expired"):
        return "failed"
    return "pending"


def qr_image_url(source: Dict[str, Any], charge: Dict[str, Any]) -> str:
    for src in (source, charge.get("source") or {}):
        try:
            uri = src["scannable_code"]["image"]["download_uri"]
        except (KeyError, TypeError):
            continue
        if uri:
            return uri
    return f"{config.OMISE_API_URL}/charges/{charge.get('id')}/documents/qrcode"


class PaymentSettlement:
    """
    Payment records against orders, PromptPay charges through the gateway,
    and convergence of gateway state via webhook push or client poll.
    """

    def __init__(self, s: Session, notifier: Notifier, gateway: PaymentGateway):
        self.s = s
        self.notifier = notifier
        self.gateway = gateway

    def get(self, payment_id: str) -> Payment:
        p = self.s.get(Payment, payment_id)
        if p is None:
            raise NotFoundError("payment", payment_id)
        return p

    def _require_order(self, order_id: str) -> None:
        if self.s.get(Order, order_id) is None:
            raise NotFoundError("order", order_id)

    def create(self, req: PaymentCreate) -> Payment:
        if req.method not in ("cash", "card"):
            raise ValidationError(f"method must be cash or card, got {req.method!r}")
        if req.status not in MANUAL_STATUSES:
            raise ValidationError(f"unknown payment status {req.status!r}")
        if req.amount <= 0:
            raise ValidationError("amount must be positive")
        self._require_order(req.order_id)
        p = Payment(
            id=str(uuid.uuid4()),
            order_id=req.order_id,
            session_id=req.session_id,
            branch_id=req.branch_id,
            amount=req.amount,
            method=req.method,
            status=req.status,
        )
        self.s.add(p); self.s.commit(); self.s.refresh(p)
        _log.info("payment recorded", extra={"payment_id": p.id, "method": p.method, "status": p.status})
        return p

    def create_promptpay(self, req: PromptPayCreate) -> Payment:
        if req.amount < config.PROMPTPAY_MIN_AMOUNT:
            raise ValidationError(
                f"PromptPay amount must be at least {config.PROMPTPAY_MIN_AMOUNT:g} {config.PROMPTPAY_CURRENCY.upper()}"
            )
        self._require_order(req.order_id)
        minor = to_minor_units(req.amount)
        source = self.gateway.create_source(minor, config.PROMPTPAY_CURRENCY, "promptpay")
        charge = self.gateway.create_charge(
            minor,
            config.PROMPTPAY_CURRENCY,
            source["id"],
            f"Payment for order {req.order_id}",
            {"order_id": req.order_id, **req.metadata},
            config.OMISE_RETURN_URI,
        )
        p = Payment(
            id=str(uuid.uuid4()),
            order_id=req.order_id,
            session_id=req.session_id,
            branch_id=req.branch_id,
            amount=req.amount,
            method="promptpay",
            status="pending",
            source_id=source["id"],
            transaction_id=charge["id"],
            payment_details_json=json.dumps(charge, sort_keys=True),
            qr_code_image=qr_image_url(source, charge),
            expires_at=utcnow() + timedelta(hours=config.PROMPTPAY_EXPIRY_HOURS),
        )
        self.s.add(p)
        try:
            self.s.commit()
        except SQLAlchemyError:
            self.s.rollback()
            # the charge exists at the gateway without a local record
            _log.error(
                "promptpay charge created but payment not stored",
                extra={"charge_id": charge["id"], "order_id": req.order_id},
            )
            raise
        self.s.refresh(p)
        _log.info("promptpay payment created", extra={"payment_id": p.id, "charge_id": p.transaction_id})
        return p

    def reconcile_from_webhook(self, charge_id: str, gateway_status: Optional[str]) -> Payment:
        p = self.s.execute(select(Payment).where(Payment.transaction_id == charge_id)).scalars().first()
        if p is None:
            _log.warning("webhook for unknown charge", extra={"charge_id": charge_id})
            raise NotFoundError("payment for charge", charge_id)
        charge = self.gateway.retrieve_charge(charge_id)
        return self._reconcile(p, gateway_status, charge)

    def poll_status(self, payment_id: str) -> Payment:
        p = self.get(payment_id)
        if p.method != "promptpay":
            raise InvalidStateError("only promptpay payments can be polled")
        if not p.transaction_id:
            raise InvalidStateError("payment has no gateway charge to poll")
        if p.status != "pending":
            return p
        charge = self.gateway.retrieve_charge(p.transaction_id)
        return self._reconcile(p, charge.get("status"), charge)

    def _reconcile(self, p: Payment, gateway_status: Optional[str], charge: Dict[str, Any]) -> Payment:
        old = p.status
        new = map_charge_status(gateway_status)
        if new == "pending" and old in SETTLED:
            new = old
        snapshot = json.dumps(charge, sort_keys=True)
        if new == old and snapshot == p.payment_details_json:
            return p
        res = self.s.execute(
            update(Payment)
            .where(Payment.id == p.id, Payment.status == old)
            .values(status=new, payment_details_json=snapshot, updated_at=utcnow())
        )
        self.s.commit()
        self.s.refresh(p)
        if res.rowcount == 0:
            # a concurrent webhook/poll got there first and already notified
            return p
        _log.info(
            "payment reconciled",
            extra={"payment_id": p.id, "charge_id": p.transaction_id, "gateway_status": gateway_status, "status": new},
        )
        if new != old:
            self._publish_change(p)
        return p

    def update_status(self, payment_id: str, status: str) -> Payment:
        if status not in MANUAL_STATUSES:
            raise ValidationError(f"unknown payment status {status!r}")
        p = self.get(payment_id)
        old = p.status
        if old == status:
            return p
        self.s.execute(update(Payment).where(Payment.id == payment_id).values(status=status, updated_at=utcnow()))
        self.s.commit()
        self.s.refresh(p)
        _log.info("payment status set", extra={"payment_id": p.id, "status": status})
        self._publish_change(p)
        return p

    def update(self, payment_id: str, req: PaymentUpdate) -> Payment:
        p = self.get(payment_id)
        if req.method is not None and req.method not in PAYMENT_METHODS:
            raise ValidationError(f"unknown payment method {req.method!r}")
        if req.method is not None and (req.method == "promptpay") != (p.method == "promptpay"):
            # promptpay rows are tied to a gateway charge; cash/card rows have none
            raise ValidationError("cannot switch a payment into or out of promptpay")
        if req.amount is not None:
            if req.amount <= 0:
                raise ValidationError("amount must be positive")
            p.amount = req.amount
        if req.method is not None:
            p.method = req.method
        self.s.commit()
        if req.status is not None:
            return self.update_status(payment_id, req.status)
        self.s.refresh(p)
        return p

    def remove(self, payment_id: str) -> None:
        p = self.get(payment_id)
        self.s.delete(p)
        self.s.commit()
        _log.info("payment removed", extra={"payment_id": payment_id})

    def find(self, f: PaymentFilter) -> List[Payment]:
        stmt = select(Payment)
        if f.order_id:
            stmt = stmt.where(Payment.order_id == f.order_id)
        if f.session_id:
            stmt = stmt.where(Payment.session_id == f.session_id)
        if f.branch_id:
            stmt = stmt.where(Payment.branch_id == f.branch_id)
        if f.status:
            if f.status not in PAYMENT_STATUSES:
                raise ValidationError(f"unknown payment status {f.status!r}")
            stmt = stmt.where(Payment.status == f.status)
        if f.method:
            stmt = stmt.where(Payment.method == f.method)
        return list(self.s.execute(stmt.order_by(Payment.created_at.desc())).scalars().all())

    def _publish_change(self, p: Payment) -> None:
        payload = payment_to_out(p).model_dump(mode="json")
        self.notifier.publish(branch_room(p.branch_id), "paymentStatusChanged", payload)
        self.notifier.publish(order_room(p.order_id), "paymentStatusChanged", payload)


_gateway: Optional[OmiseClient] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = OmiseClient()
    return _gateway


def get_payment_settlement(
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentSettlement:
    return PaymentSettlement(s, notifier, gateway)


@router.post("", response_model=PaymentOut)
def create_payment(req: PaymentCreate, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return payment_to_out(ps.create(req))


@router.post("/promptpay", response_model=PaymentOut)
def create_promptpay_payment(req: PromptPayCreate, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return payment_to_out(ps.create_promptpay(req))


@router.post("/webhook")
def omise_webhook(payload: Dict[str, Any] = Body(...), ps: PaymentSettlement = Depends(get_payment_settlement)):
    data = payload.get("data")
    if not isinstance(data, dict) or data.get("object") != "charge" or not data.get("id"):
        return {"received": True}
    p = ps.reconcile_from_webhook(str(data["id"]), data.get("status"))
    return {"received": True, "payment_id": p.id, "status": p.status}


@router.get("", response_model=List[PaymentOut])
def list_payments(
    branch_id: Optional[str] = None,
    status: Optional[str] = None,
    method: Optional[str] = None,
    ps: PaymentSettlement = Depends(get_payment_settlement),
):
    return [payment_to_out(p) for p in ps.find(PaymentFilter(branch_id=branch_id, status=status, method=method))]


@router.get("/order/{order_id}", response_model=List[PaymentOut])
def list_order_payments(order_id: str, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return [payment_to_out(p) for p in ps.find(PaymentFilter(order_id=order_id))]


@router.get("/session/{session_id}", response_model=List[PaymentOut])
def list_session_payments(session_id: str, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return [payment_to_out(p) for p in ps.find(PaymentFilter(session_id=session_id))]


@router.get("/branch/{branch_id}", response_model=List[PaymentOut])
def list_branch_payments(
    branch_id: str,
    status: Optional[str] = None,
    ps: PaymentSettlement = Depends(get_payment_settlement),
):
    return [payment_to_out(p) for p in ps.find(PaymentFilter(branch_id=branch_id, status=status))]


@router.get("/{payment_id}", response_model=PaymentOut)
def get_payment(payment_id: str, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return payment_to_out(ps.get(payment_id))


@router.post("/{payment_id}/check-status", response_model=PaymentOut)
def poll_payment_status(payment_id: str, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return payment_to_out(ps.poll_status(payment_id))


@router.patch("/{payment_id}/status", response_model=PaymentOut)
def update_payment_status(
    payment_id: str,
    req: PaymentStatusUpdate,
    ps: PaymentSettlement = Depends(get_payment_settlement),
):
    return payment_to_out(ps.update_status(payment_id, req.status))


@router.patch("/{payment_id}", response_model=PaymentOut)
def update_payment(payment_id: str, req: PaymentUpdate, ps: PaymentSettlement = Depends(get_payment_settlement)):
    return payment_to_out(ps.update(payment_id, req))


@router.delete("/{payment_id}")
def remove_payment(payment_id: str, ps: PaymentSettlement = Depends(get_payment_settlement)):
    ps.remove(payment_id)
    return {"ok": True}
