"""
Database models for the farm marketplace
----------------------------------------
Tech stack:
- FastAPI
- SQLAlchemy ORM
- SQLite / PostgreSQL compatible

This file contains:
- User model (customers, farmers, delivery personnel)
- Category & Product models
- CartItem model
- Order, OrderItem & Delivery models
- Payment, Subscription & SubscriptionPayment models
- Review & ProductRecommendation models

Every table keeps append/update history except products and cart items,
which are the only rows ever deleted.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Enums

class Role(str, Enum):
    CUSTOMER = "customer"
    FARMER = "farmer"
    DELIVERY = "delivery"


class OrderStatus(str, Enum):
    """Shared by orders and deliveries."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    MOBILE_WALLET = "mobile_wallet"
    BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionTier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    PRO = "pro"


# User

class User(Base):
    """
    Application user. The role is chosen at registration and never changes.
    """

    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    # Login credentials
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)

    role = Column(SQLEnum(Role, values_callable=_enum_values), nullable=False)

    # Profile
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    profile_image = Column(String, nullable=True)

    products = relationship("Product", back_populates="farmer")

    subscription = relationship(
        "Subscription",
        back_populates="farmer",
        uselist=False
    )

    def __str__(self):
        return f"{self.username} ({self.role.value})"


# Category

class Category(Base):
    """
    Product categories (e.g. Vegetables, Dairy).
    """

    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    icon = Column(String, nullable=False)
    color = Column(String, nullable=False)

    products = relationship("Product", back_populates="category")

    def __str__(self):
        return self.name


# Product

class Product(Base):
    """
    A listing owned by one farmer.
    """

    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)

    # Price stored as Decimal for accuracy
    price = Column(Numeric(10, 2), nullable=False)
    unit = Column(String, nullable=False)

    # Ordered list of image references
    image_urls = Column(JSON, nullable=False, default=list)

    stock = Column(Integer, nullable=False, default=0)

    category_id = Column(
        Integer,
        ForeignKey("categories.id"),
        index=True,
        nullable=False
    )
    farmer_id = Column(
        Integer,
        ForeignKey("users.id"),
        index=True,
        nullable=False
    )

    organic = Column(Boolean, default=False)
    featured = Column(Boolean, default=False)

    category = relationship("Category", back_populates="products")
    farmer = relationship("User", back_populates="products")

    def __str__(self):
        return self.name


# CartItem

class CartItem(Base):
    """
    One product line in a user's cart. At most one row per (user, product).
    """

    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id"),
        index=True,
        nullable=False
    )

    # No FK: a listing may be deleted while still sitting in a cart
    product_id = Column(Integer, index=True, nullable=False)

    quantity = Column(Integer, nullable=False)

    def __str__(self):
        return f"CartItem {self.id} (product {self.product_id} x{self.quantity})"


# Order

class Order(Base):
    """
    A customer's purchase, created from a cart snapshot.
    Only status and delivery_person_id change after creation.
    """

    __tablename__ = "orders"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    customer_id = Column(
        Integer,
        ForeignKey("users.id"),
        index=True,
        nullable=False
    )

    # Snapshot of the line total at order time
    total_amount = Column(Numeric(10, 2), nullable=False)

    status = Column(
        SQLEnum(OrderStatus, values_callable=_enum_values),
        default=OrderStatus.PENDING,
        index=True,
        nullable=False
    )

    created_at = Column(DateTime, default=utcnow, nullable=False)

    delivery_address = Column(Text, nullable=False)
    delivery_notes = Column(Text, nullable=True)

    # Set once, on self-assignment
    delivery_person_id = Column(
        Integer,
        ForeignKey("users.id"),
        index=True,
        nullable=True
    )

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id"
    )

    def __str__(self):
        return f"Order No {self.id}"


class OrderItem(Base):
    """
    Individual product entry inside an order.
    Stores snapshot price for order history.
    """

    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(
        Integer,
        ForeignKey("orders.id"),
        index=True,
        nullable=False
    )

    # No FK: order history outlives deleted listings
    product_id = Column(Integer, index=True, nullable=False)

    quantity = Column(Integer, nullable=False)

    # Snapshot price at time of order
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    def __str__(self):
        return f"OrderItem {self.id}"


# Delivery

class Delivery(Base):
    """
    Fulfillment record of one delivery person for one order.
    Its status mirrors the order's status.
    """

    __tablename__ = "deliveries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    delivery_person_id = Column(
        Integer,
        ForeignKey("users.id"),
        index=True,
        nullable=False
    )
    order_id = Column(
        Integer,
        ForeignKey("orders.id"),
        index=True,
        nullable=False
    )

    status = Column(
        SQLEnum(OrderStatus, values_callable=_enum_values),
        default=OrderStatus.CONFIRMED,
        nullable=False
    )

    scheduled_time = Column(DateTime, nullable=False)
    start_time = Column(DateTime, nullable=True)
    completed_time = Column(DateTime, nullable=True)

    route_info = Column(JSON, nullable=True)

    order = relationship("Order")

    def __str__(self):
        return f"Delivery {self.id} (order {self.order_id})"


# Payment

class Payment(Base):
    """
    One checkout attempt for an order. Status moves only on gateway events.
    """

    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(
        Integer,
        ForeignKey("orders.id"),
        index=True,
        nullable=False
    )

    amount = Column(Numeric(10, 2), nullable=False)
    tip_amount = Column(Numeric(10, 2), nullable=False, default=0)

    method = Column(
        SQLEnum(PaymentMethod, values_callable=_enum_values),
        default=PaymentMethod.CREDIT_CARD,
        nullable=False
    )
    status = Column(
        SQLEnum(PaymentStatus, values_callable=_enum_values),
        default=PaymentStatus.PENDING,
        nullable=False
    )

    # Gateway checkout session id
    transaction_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    payment_details = Column(JSON, nullable=True)

    def __str__(self):
        return f"Payment {self.id} ({self.status.value})"


# Subscription

class Subscription(Base):
    """
    Recurring-billing entitlement of a farmer. One row per farmer.
    """

    __tablename__ = "subscriptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    farmer_id = Column(
        Integer,
        ForeignKey("users.id"),
        unique=True,
        nullable=False
    )

    tier = Column(
        SQLEnum(SubscriptionTier, values_callable=_enum_values),
        nullable=False
    )
    price = Column(Numeric(10, 2), nullable=False)

    start_date = Column(DateTime, default=utcnow, nullable=False)
    end_date = Column(DateTime, nullable=False)

    is_active = Column(Boolean, default=False, nullable=False)
    auto_renew = Column(Boolean, default=True, nullable=False)

    features = Column(JSON, nullable=True)

    # Gateway-side subscription id, learned from webhooks
    gateway_subscription_id = Column(String, index=True, nullable=True)

    farmer = relationship("User", back_populates="subscription")

    payments = relationship(
        "SubscriptionPayment",
        back_populates="subscription",
        order_by="SubscriptionPayment.id"
    )

    def __str__(self):
        return f"Subscription {self.id} ({self.tier.value})"


class SubscriptionPayment(Base):
    """
    One billing attempt of a subscription, successful or not.
    """

    __tablename__ = "subscription_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    subscription_id = Column(
        Integer,
        ForeignKey("subscriptions.id"),
        index=True,
        nullable=False
    )

    amount = Column(Numeric(10, 2), nullable=False)
    method = Column(
        SQLEnum(PaymentMethod, values_callable=_enum_values),
        default=PaymentMethod.CREDIT_CARD,
        nullable=False
    )
    status = Column(
        SQLEnum(PaymentStatus, values_callable=_enum_values),
        nullable=False
    )

    # Gateway invoice id
    transaction_id = Column(String, index=True, nullable=True)

    billing_date = Column(DateTime, default=utcnow, nullable=False)
    details = Column(JSON, nullable=True)

    subscription = relationship("Subscription", back_populates="payments")


# Review

class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    product_id = Column(Integer, index=True, nullable=False)
    user_id = Column(
        Integer,
        ForeignKey("users.id"),
        index=True,
        nullable=False
    )

    # 1 to 5 stars
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    helpful = Column(Integer, default=0, nullable=False)
    is_verified_purchase = Column(Boolean, default=False, nullable=False)


class ProductRecommendation(Base):
    __tablename__ = "product_recommendations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)

    source_product_id = Column(Integer, index=True, nullable=False)
    recommended_product_id = Column(Integer, nullable=False)

    score = Column(Numeric(5, 2), nullable=False)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
