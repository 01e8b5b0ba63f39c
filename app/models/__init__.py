"""
SQLAlchemy models for the reconciliation service.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, Enum as SQLEnum, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base
import enum
import uuid


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums
class DataSource(str, enum.Enum):
    STOREFRONT = "storefront"
    MANUAL = "manual"

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"

# Settled orders: excluded from carrier matching and status refresh
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED})

class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    REFUNDED = "refunded"

class IntegrationStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Models
class Operation(Base):
    __tablename__ = "operations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    shopify_integration = relationship("ShopifyIntegration", back_populates="operation", uselist=False)
    orders = relationship("Order", back_populates="operation")


class ShopifyIntegration(Base):
    __tablename__ = "shopify_integrations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation_id = Column("operation_id", String, ForeignKey("operations.id", ondelete="CASCADE"), unique=True, nullable=False)
    shop_domain = Column("shop_domain", String, nullable=False, index=True)
    access_token = Column("access_token", String, nullable=False)  # Encrypted
    webhook_secret = Column("webhook_secret", String, nullable=True)  # Encrypted
    status = Column(SQLEnum(IntegrationStatus, values_callable=_enum_values), default=IntegrationStatus.ACTIVE, nullable=False)
    integration_started_at = Column("integration_started_at", DateTime, nullable=True)
    last_synced_at = Column("last_synced_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    operation = relationship("Operation", back_populates="shopify_integration")


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation_id = Column("operation_id", String, ForeignKey("operations.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column("provider_id", String, nullable=False, index=True)
    value_encrypted = Column("value_encrypted", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("operation_id", "provider_id", name="uq_provider_credentials_operation_provider"),)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    operation_id = Column("operation_id", String, ForeignKey("operations.id", ondelete="CASCADE"), nullable=False, index=True)
    data_source = Column("data_source", SQLEnum(DataSource, values_callable=_enum_values), nullable=False)
    source_order_id = Column("source_order_id", String, nullable=False)
    source_order_number = Column("source_order_number", String, nullable=True)

    customer_name = Column("customer_name", String, nullable=True)
    customer_phone = Column("customer_phone", String, nullable=True)
    customer_email = Column("customer_email", String, nullable=True)
    customer_address = Column("customer_address", String, nullable=True)
    customer_city = Column("customer_city", String, nullable=True)
    customer_state = Column("customer_state", String, nullable=True)
    customer_country = Column("customer_country", String, nullable=True)
    customer_zip = Column("customer_zip", String, nullable=True)

    total = Column("total", Numeric(12, 2), default=0, nullable=False)
    currency = Column("currency", String(3), nullable=True)
    payment_status = Column("payment_status", SQLEnum(PaymentStatus, values_callable=_enum_values), default=PaymentStatus.UNPAID)
    payment_method = Column("payment_method", String, default="cod")
    products = Column("products", JSON, nullable=True)

    status = Column(SQLEnum(OrderStatus, values_callable=_enum_values), default=OrderStatus.PENDING, nullable=False)

    carrier_imported = Column("carrier_imported", Boolean, default=False, nullable=False)
    carrier_matched_at = Column("carrier_matched_at", DateTime, nullable=True)
    carrier_order_id = Column("carrier_order_id", String, nullable=True)
    tracking_number = Column("tracking_number", String, nullable=True)
    provider_data = Column("provider_data", JSON, nullable=True)

    order_date = Column("order_date", DateTime, nullable=True)
    last_status_update = Column("last_status_update", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow)
    updated_at = Column("updated_at", DateTime, default=utcnow, nullable=False)

    raw_source_data = Column("raw_source_data", JSON, nullable=True)

    operation = relationship("Operation", back_populates="orders")

    __table_args__ = (
        UniqueConstraint("data_source", "source_order_id", name="orders_data_source_source_order_unique"),
        Index("ix_orders_operation_match", "operation_id", "data_source", "carrier_imported"),
    )

    @staticmethod
    def build_id(data_source: DataSource, source_order_id: str) -> str:
        """Stable internal id derived from the source and its native order id."""
        return f"{data_source.value}_{source_order_id}"

    @property
    def is_settled(self) -> bool:
        return self.status is not None and OrderStatus(self.status) in TERMINAL_STATUSES

    def touch(self, now: datetime = None) -> None:
        """Bump updated_at; never moves it backwards."""
        now = now or utcnow()
        if self.updated_at is None or now > self.updated_at:
            self.updated_at = now


class PollingExecution(Base):
    __tablename__ = "polling_executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation_id = Column("operation_id", String, ForeignKey("operations.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column("provider", String, nullable=False)
    executed_at = Column("executed_at", DateTime, default=utcnow, nullable=False, index=True)
    orders_found = Column("orders_found", Integer, default=0, nullable=False)
    orders_processed = Column("orders_processed", Integer, default=0, nullable=False)
    orders_succeeded = Column("orders_succeeded", Integer, default=0, nullable=False)
    success = Column("success", Boolean, default=True, nullable=False)
    error_message = Column("error_message", String, nullable=True)
