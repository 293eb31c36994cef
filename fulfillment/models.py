import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from fulfillment.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderState(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    # A pending order whose capture or cancel has been claimed by one caller
    PROCESSING = "processing"
    CAPTURED = "captured"
    DISPATCHED = "dispatched"
    CANCELED = "canceled"


class Store(Base):
    __tablename__ = "stores"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    currency = Column(String, default="gbp")


class _StoreAttribute:
    id = Column(String, primary_key=True)
    store_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)


class Color(_StoreAttribute, Base):
    __tablename__ = "colors"


class Size(_StoreAttribute, Base):
    __tablename__ = "sizes"


class Material(_StoreAttribute, Base):
    __tablename__ = "materials"


class Gender(_StoreAttribute, Base):
    __tablename__ = "genders"


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    store_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    our_price = Column(Numeric(10, 2), nullable=False)
    color_id = Column(String, ForeignKey("colors.id"))
    size_id = Column(String, ForeignKey("sizes.id"))
    material_id = Column(String, ForeignKey("materials.id"))
    gender_id = Column(String, ForeignKey("genders.id"))
    is_archived = Column(Boolean, default=False, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    store_id = Column(String, index=True, nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)
    has_been_dispatched = Column(Boolean, default=False, nullable=False)
    status = Column(String, default=OrderState.PENDING_PAYMENT.value, nullable=False)
    payment_intent_id = Column(String, index=True)   # Stripe PaymentIntent ID
    reader_id = Column(String)                       # Stripe Terminal reader holding the payment
    claimed_at = Column(DateTime(timezone=True))
    total_amount = Column(Numeric(10, 2))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    @property
    def state(self) -> OrderState:
        return OrderState(self.status)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    product_amount = Column(Numeric(10, 2))

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class MarketingProfile(Base):
    """Local copy of a Klaviyo profile id. Klaviyo stays authoritative."""

    __tablename__ = "marketing_profiles"

    email = Column(String, primary_key=True)
    profile_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
