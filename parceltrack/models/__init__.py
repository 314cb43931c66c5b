"""
SQLAlchemy models for the order fields the tracking engine reads and writes.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Integer, DateTime, Enum as SQLEnum, JSON
from sqlalchemy.sql import func
from parceltrack.database import Base
import enum
import uuid

# Enums
class OrderStatus(str, enum.Enum):
    # Written by the order-placement flow, never produced by reconciliation
    FAILED = "FAILED"
    PAID = "PAID"
    PICKUP = "PICKUP"
    # Parcel lifecycle
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DISPATCHED = "DISPATCHED"
    TRANSIT = "TRANSIT"
    DELIVERED = "DELIVERED"
    UNDELIVERED = "UNDELIVERED"
    EXCEPTION = "EXCEPTION"
    EXPIRED = "EXPIRED"
    NOTFOUND = "NOTFOUND"


# EXCEPTION is recoverable and stays eligible for scheduled reconciliation
TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.UNDELIVERED,
    OrderStatus.EXPIRED,
})


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    USER = "USER"


# Models
class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column("user_id", String, nullable=True, index=True)
    customer_name = Column("customer_name", String, nullable=True)
    customer_email = Column("customer_email", String, nullable=True)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)

    # Tracking fields owned by the reconciliation engine
    carrier_shipment_id = Column("carrier_shipment_id", String, nullable=True, index=True)
    tracking_number = Column("tracking_number", String, nullable=True)
    tracking_last_checked_at = Column("tracking_last_checked_at", DateTime, nullable=True, index=True)
    tracking_status_updated_at = Column("tracking_status_updated_at", DateTime, nullable=True)
    status_history = Column("status_history", JSON, nullable=False, default=list)

    version = Column("version", Integer, nullable=False, default=1)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Order {self.id} status={self.status} shipment={self.carrier_shipment_id}>"
