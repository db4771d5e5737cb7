from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, Boolean, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base
import enum
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


class ProviderType(str, enum.Enum):
    BKASH = "bkash"
    NAGAD = "nagad"
    SSLCOMMERZ = "sslcommerz"
    AAMARPAY = "aamarpay"
    SURJOPAY = "surjopay"


class OrderStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentProvider(Base):
    __tablename__ = "payment_providers"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider_type = Column(String(20), index=True, nullable=False)
    name = Column(String(100), nullable=True)

    is_active = Column(Boolean, default=False)
    is_sandbox = Column(Boolean, default=True)

    # Either plaintext (legacy) or "enc:<base64>"
    store_id = Column(Text, nullable=True)
    store_password = Column(Text, nullable=True)
    config = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=False)
    email = Column(String(255), nullable=True)
    address_line = Column(Text, nullable=False)
    thana = Column(String(100), nullable=True)
    district = Column(String(100), nullable=True)
    division = Column(String(100), nullable=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(50), unique=True, index=True, nullable=False)
    user_id = Column(String(36), nullable=True, index=True)
    address_id = Column(String(36), ForeignKey("addresses.id"), nullable=True)

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False)

    payment_method = Column(String(30), nullable=True)
    payment_transaction_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    address = relationship("Address")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    transactions = relationship("PaymentTransaction", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    product_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="items")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    gateway_code = Column(String(20), nullable=False)

    # Gateway side reference: paymentID, paymentReferenceId, tran_id, sp_order_id
    transaction_id = Column(String(255), index=True, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), default="BDT")
    status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.PENDING)
    gateway_response = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="transactions")


class InvoiceSettings(Base):
    __tablename__ = "invoice_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_name = Column(String(255), nullable=True)
    company_tagline = Column(String(255), nullable=True)
    company_address = Column(Text, nullable=True)
    company_email = Column(String(255), nullable=True)
    company_phone = Column(String(50), nullable=True)
    logo_url = Column(String(1000), nullable=True)
    footer_note = Column(Text, nullable=True)
    terms_and_conditions = Column(Text, nullable=True)

    signatory_name = Column(String(255), nullable=True)
    signatory_title = Column(String(255), nullable=True)
    digital_signature_url = Column(String(1000), nullable=True)

    show_social_links = Column(Boolean, nullable=True)
    social_facebook = Column(String(500), nullable=True)
    social_instagram = Column(String(500), nullable=True)
    social_whatsapp = Column(String(50), nullable=True)
    social_website = Column(String(500), nullable=True)


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), index=True, nullable=False)
    role = Column(String(30), nullable=False)
