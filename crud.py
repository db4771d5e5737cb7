from sqlalchemy.orm import Session, joinedload
from datetime import datetime
from decimal import Decimal
from typing import Optional
import json
from models import (
    PaymentProvider, Order, PaymentTransaction, TransactionStatus,
    InvoiceSettings, UserRole,
)

# ==================== PROVIDER CRUD ====================

def get_active_provider(db: Session, provider_type: str, provider_id: Optional[str] = None):
    """Get the active provider row for a gateway, optionally pinned to an id"""
    query = db.query(PaymentProvider).filter(
        PaymentProvider.provider_type == provider_type,
        PaymentProvider.is_active == True,  # noqa: E712
    )
    if provider_id:
        query = query.filter(PaymentProvider.id == provider_id)
    return query.order_by(PaymentProvider.created_at).first()

# ==================== ORDER CRUD ====================

def get_order(db: Session, order_id: str):
    """Get order by ID with its address and line items"""
    return (
        db.query(Order)
        .options(joinedload(Order.address), joinedload(Order.items))
        .filter(Order.id == order_id)
        .first()
    )

def get_order_by_number(db: Session, order_number: str):
    return db.query(Order).filter(Order.order_number == order_number).first()

# ==================== TRANSACTION LEDGER ====================

def create_payment_transaction(
    db: Session,
    order_id: str,
    gateway_code: str,
    transaction_id: Optional[str],
    amount: Decimal,
    gateway_response: dict,
    currency: str = "BDT",
):
    """Record a payment attempt at init time"""
    txn = PaymentTransaction(
        order_id=order_id,
        gateway_code=gateway_code,
        transaction_id=transaction_id,
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING,
        gateway_response=json.dumps(gateway_response, default=str),
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn

def get_transaction_by_reference(db: Session, gateway_code: str, transaction_id: str):
    return (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.gateway_code == gateway_code,
            PaymentTransaction.transaction_id == transaction_id,
        )
        .order_by(PaymentTransaction.id.desc())
        .first()
    )

def update_transaction_status(
    db: Session,
    gateway_code: str,
    transaction_id: Optional[str],
    status: TransactionStatus,
    gateway_response: Optional[dict] = None,
):
    """Update the ledger entry for a gateway reference, if one was recorded"""
    if not transaction_id:
        return None

    txn = get_transaction_by_reference(db, gateway_code, transaction_id)
    if not txn:
        return None

    txn.status = status
    if gateway_response is not None:
        txn.gateway_response = json.dumps(gateway_response, default=str)
    txn.completed_at = datetime.utcnow() if status == TransactionStatus.COMPLETED else None
    db.commit()
    db.refresh(txn)
    return txn

# ==================== SETTINGS / ROLES ====================

def get_invoice_settings(db: Session):
    return db.query(InvoiceSettings).order_by(InvoiceSettings.id).first()

def is_admin(db: Session, user_id: str) -> bool:
    """Replacement for the backend's is_admin RPC"""
    return (
        db.query(UserRole)
        .filter(UserRole.user_id == user_id, UserRole.role == "admin")
        .first()
        is not None
    )
