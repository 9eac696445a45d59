from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from tailors_payments.database import Base

ORDER_PENDING_PAYMENT = "pending_payment"
ORDER_PROCESSING = "processing"
ORDER_PARTIALLY_REFUNDED = "partially_refunded"
ORDER_REFUNDED = "refunded"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (
    ORDER_PENDING_PAYMENT,
    ORDER_PROCESSING,
    "shipped",
    "delivered",
    "completed",
    ORDER_PARTIALLY_REFUNDED,
    ORDER_REFUNDED,
    ORDER_CANCELLED,
)

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return uuid4().hex


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_new_id)
    buyer_id = Column(String, index=True, nullable=False)
    seller_id = Column(String, index=True, nullable=False)
    listing_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ORDER_PENDING_PAYMENT, index=True)

    # Minor units (piasters)
    subtotal = Column(Integer, nullable=False, default=0)
    delivery_fee = Column(Integer, nullable=False, default=0)
    tax = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="EGP")

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    status_history = relationship(
        "OrderStatusEntry",
        back_populates="order",
        order_by="OrderStatusEntry.id",
        cascade="all, delete-orphan",
    )
    payment = relationship("Payment", back_populates="order", uselist=False)

    def update_status(self, status, note=None, updated_by=None):
        """Move the order to ``status`` and append the change to its history."""
        if status not in ORDER_STATUSES:
            raise ValueError(f"Unknown order status: {status}")
        self.status = status
        self.status_history.append(
            OrderStatusEntry(status=status, note=note, updated_by=updated_by, date=_utcnow())
        )

    def involves(self, user_id) -> bool:
        return user_id in (self.buyer_id, self.seller_id)


class OrderStatusEntry(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    status = Column(String, nullable=False)
    date = Column(DateTime(timezone=True), default=_utcnow)
    note = Column(Text)
    updated_by = Column(String)

    order = relationship("Order", back_populates="status_history")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "refunded_total >= 0 AND refunded_total <= amount",
            name="ck_payments_refunded_total",
        ),
    )

    id = Column(String, primary_key=True, default=_new_id)
    order_id = Column(String, ForeignKey("orders.id"), unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)                 # minor units
    currency = Column(String, nullable=False, default="EGP")
    payment_method = Column(String, nullable=False)          # gateway name
    reference = Column(String, index=True)                   # gateway reference used for verification
    transaction_id = Column(String, index=True)              # gateway transaction refunds are issued against
    status = Column(String, nullable=False, default=PAYMENT_PENDING)  # pending | paid | failed | refunded
    refunded_total = Column(Integer, nullable=False, default=0)
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    order = relationship("Order", back_populates="payment")
    refunds = relationship(
        "Refund",
        back_populates="payment",
        order_by="Refund.id",
        cascade="all, delete-orphan",
    )

    @property
    def remaining_balance(self) -> int:
        return self.amount - (self.refunded_total or 0)

    @property
    def fully_refunded(self) -> bool:
        return (self.refunded_total or 0) >= self.amount

    def mark_paid(self, note, paid_at=None, transaction_id=None, updated_by=None) -> bool:
        """Record a confirmed payment and move the order into processing.

        Returns False when the payment was already settled, so repeated
        verifications and webhook deliveries change nothing.
        """
        if self.status != PAYMENT_PENDING:
            return False
        self.status = PAYMENT_PAID
        self.paid_at = paid_at or _utcnow()
        if transaction_id:
            self.transaction_id = transaction_id
        if self.order is not None and self.order.status == ORDER_PENDING_PAYMENT:
            self.order.update_status(ORDER_PROCESSING, note=note, updated_by=updated_by)
        return True


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, ForeignKey("payments.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)                 # minor units
    reason = Column(Text)
    transaction_id = Column(String)                          # gateway refund id
    date = Column(DateTime(timezone=True), default=_utcnow)
    processed_by = Column(String)

    payment = relationship("Payment", back_populates="refunds")
