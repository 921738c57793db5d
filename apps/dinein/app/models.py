from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base, fk, table_args, utcnow

TABLE_STATUSES = ("available", "occupied", "reserved")
ORDER_STATUSES = ("received", "preparing", "served", "paid")
PAYMENT_METHODS = ("cash", "promptpay", "card")
PAYMENT_STATUSES = ("pending", "paid", "failed", "expired")
WAITLIST_STATUSES = ("waiting", "notified", "seated", "cancelled")


class Branch(Base):
    __tablename__ = "branches"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    code: Mapped[str] = mapped_column(String(64), unique=True)
    address: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    contact: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class DiningTable(Base):
    __tablename__ = "tables"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(16), default="available")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class MenuCategory(Base):
    __tablename__ = "menu_categories"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    category_id: Mapped[Optional[str]] = mapped_column(String(36), default=None, index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    image_url: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Ingredient(Base):
    __tablename__ = "ingredients"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    unit: Mapped[str] = mapped_column(String(32), default="unit")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Stock(Base):
    __tablename__ = "stocks"
    __table_args__ = table_args(UniqueConstraint("branch_id", "ingredient_id", name="uq_stock_branch_ingredient"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    ingredient_id: Mapped[str] = mapped_column(String(36))
    quantity: Mapped[float] = mapped_column(Float, default=0.0)
    low_threshold: Mapped[float] = mapped_column(Float, default=0.0)
    last_adjustment_reason: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class WaitlistEntry(Base):
    __tablename__ = "waitlist"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    party_name: Mapped[str] = mapped_column(String(120))
    party_size: Mapped[int] = mapped_column(Integer, default=2)
    contact_info: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    status: Mapped[str] = mapped_column(String(16), default="waiting")
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class DiningSession(Base):
    __tablename__ = "dining_sessions"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    table_id: Mapped[str] = mapped_column(String(36), index=True)
    qr_code: Mapped[str] = mapped_column(String(128), unique=True)
    checkin_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    checkout_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    members: Mapped[List["SessionMember"]] = relationship(
        order_by="SessionMember.id", cascade="all, delete-orphan", lazy="selectin"
    )
    order_refs: Mapped[List["SessionOrder"]] = relationship(
        order_by="SessionOrder.id", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def is_open(self) -> bool:
        return self.checkout_at is None

    @property
    def order_ids(self) -> List[str]:
        return [ref.order_id for ref in self.order_refs]


class SessionMember(Base):
    __tablename__ = "session_members"
    __table_args__ = table_args(UniqueConstraint("session_id", "client_id", name="uq_member_session_client"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("dining_sessions.id"), ondelete="CASCADE"))
    client_id: Mapped[str] = mapped_column(String(120))
    user_label: Mapped[str] = mapped_column(String(120))
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SessionOrder(Base):
    __tablename__ = "session_orders"
    __table_args__ = table_args(UniqueConstraint("session_id", "order_id", name="uq_session_order"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("dining_sessions.id"), ondelete="CASCADE"))
    # weak reference: orders are not deleted with the session
    order_id: Mapped[str] = mapped_column(String(36))
    attached_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), index=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    table_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(24), default="received")
    total_amount: Mapped[float] = mapped_column(Float, default=0.0)
    client_id: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    order_by: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    lines: Mapped[List["OrderLine"]] = relationship(
        order_by="OrderLine.id", cascade="all, delete-orphan", lazy="selectin"
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    __table_args__ = table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("orders.id"), ondelete="CASCADE"))
    menu_item_id: Mapped[str] = mapped_column(String(36))
    qty: Mapped[int] = mapped_column(Integer, default=1)
    note: Mapped[Optional[str]] = mapped_column(String(200), default=None)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(36), index=True)
    session_id: Mapped[str] = mapped_column(String(36), index=True)
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    amount: Mapped[float] = mapped_column(Float)
    method: Mapped[str] = mapped_column(String(16), default="cash")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    source_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), default=None, index=True)
    payment_details_json: Mapped[Optional[str]] = mapped_column(Text, default=None)
    qr_code_image: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
