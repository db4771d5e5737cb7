import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

import requests
from sqlalchemy.orm import Session

import crud
from config import Settings
from credential_vault import CredentialVault
from errors import (
    ConfigurationError, GatewayError, InvalidRequestError, NotFoundError,
    OrderStateError, PaymentError,
)
from gateways import get_adapter_class
from gateways.base import CallbackData, InitResult, PaymentGatewayAdapter, VerificationResult
from models import OrderStatus, TransactionStatus
from reconciliation import OrderReconciliationService, ReconcileOutcome

logger = logging.getLogger(__name__)

# Paid amounts may differ from the order total by rounding on the gateway side
AMOUNT_TOLERANCE = Decimal("1")


@dataclass
class CallbackOutcome:
    redirect_url: str
    order_id: Optional[str] = None
    confirmed: bool = False
    reason: Optional[str] = None


class PaymentService:
    def __init__(self, db: Session, settings: Settings, vault: CredentialVault, http: requests.Session):
        self.db = db
        self.settings = settings
        self.vault = vault
        self.http = http

    def get_adapter(self, provider_type: str, provider_id: Optional[str] = None) -> PaymentGatewayAdapter:
        adapter_class = get_adapter_class(provider_type)

        provider = crud.get_active_provider(self.db, provider_type, provider_id)
        if not provider:
            raise ConfigurationError(
                f"{adapter_class.display_name} payment is not configured. Please use manual payment."
            )

        return adapter_class.from_provider(
            provider,
            self.vault,
            self.http,
            callback_url=self.settings.callback_url(provider_type),
            app_url=self.settings.app_url,
            timeout=self.settings.gateway_timeout,
        )

    # ==================== INIT ====================

    def initiate(self, provider_type: str, order_id: Optional[str], provider_id: Optional[str] = None) -> InitResult:
        if not order_id:
            raise InvalidRequestError("Order ID is required")

        adapter = self.get_adapter(provider_type, provider_id)

        order = crud.get_order(self.db, order_id)
        if not order:
            raise NotFoundError("Order not found")

        if order.status != OrderStatus.PENDING:
            raise OrderStateError("Order already processed")

        logger.info(f"{adapter.display_name} init for order {order.id} ({order.order_number}), amount {order.total}")
        try:
            result = adapter.init(order)
        except requests.RequestException as e:
            logger.error(f"{adapter.display_name} init for order {order.id} failed: {e}")
            raise GatewayError(f"{adapter.display_name} is not reachable, please try again") from e

        crud.create_payment_transaction(
            self.db,
            order_id=order.id,
            gateway_code=provider_type,
            transaction_id=result.ledger_key,
            amount=order.total,
            gateway_response=result.raw,
        )
        logger.info(f"{adapter.display_name} payment created for order {order.id}, reference {result.reference}")
        return result

    # ==================== CALLBACK ====================

    def _failure(self, reason: str, order_id: Optional[str] = None) -> CallbackOutcome:
        return CallbackOutcome(
            redirect_url=f"{self.settings.app_base}/checkout?error={reason}",
            order_id=order_id,
            confirmed=False,
            reason=reason,
        )

    def _success(self, order_id: str) -> CallbackOutcome:
        return CallbackOutcome(
            redirect_url=f"{self.settings.app_base}/order-success?orderId={order_id}",
            order_id=order_id,
            confirmed=True,
        )

    def handle_callback(self, provider_type: str, action: str, params: Mapping[str, Any]) -> CallbackOutcome:
        """Process a browser return or server IPN. Never raises."""
        try:
            return self._handle_callback(provider_type, action, params)
        except Exception:
            logger.exception(f"{provider_type} callback ({action}) could not be processed")
            self.db.rollback()
            return self._failure("processing")

    def _handle_callback(self, provider_type: str, action: str, params: Mapping[str, Any]) -> CallbackOutcome:
        try:
            adapter = self.get_adapter(provider_type)
        except PaymentError as e:
            logger.error(f"{provider_type} callback ({action}) without a usable provider: {e.message}")
            return self._failure(action if action in ("fail", "cancel") else "processing")

        callback = adapter.parse_callback(action, params)
        logger.info(
            f"{adapter.display_name} callback action={action} reference={callback.reference} "
            f"reported_success={callback.reported_success}"
        )

        if action in ("fail", "cancel") or not callback.reported_success:
            reason = action if action in ("fail", "cancel") else (callback.reason or "failed")
            crud.update_transaction_status(
                self.db, provider_type, callback.ledger_key, TransactionStatus.FAILED, dict(params)
            )
            return self._failure(reason, order_id=callback.order_id)

        try:
            verification = adapter.verify(callback.reference)
        except Exception as e:
            logger.error(f"{adapter.display_name} verification of {callback.reference} failed: {e}")
            return self._failure("verification_failed", order_id=callback.order_id)

        if not verification.confirmed or not verification.transaction_id:
            logger.warning(
                f"{adapter.display_name} did not confirm {callback.reference}: status={verification.status}"
            )
            crud.update_transaction_status(
                self.db, provider_type, callback.ledger_key, TransactionStatus.FAILED, verification.raw
            )
            return self._failure("verification_failed", order_id=callback.order_id)

        order_id = self._resolve_order_id(provider_type, callback, verification)
        order = crud.get_order(self.db, order_id) if order_id else None
        if not order:
            logger.error(f"{adapter.display_name} reference {callback.reference} does not map to a single order")
            return self._failure("invalid")

        for order_number in (verification.order_number, callback.order_number):
            if order_number and order_number != order.order_number:
                logger.error(
                    f"{adapter.display_name} order number {order_number} does not match order "
                    f"{order.id} ({order.order_number})"
                )
                return self._failure("invalid", order_id=order.id)

        paid = verification.amount if verification.amount is not None else callback.amount
        if paid is not None and abs(paid - Decimal(order.total)) > AMOUNT_TOLERANCE:
            OrderReconciliationService(self.db).flag_amount_mismatch(
                order.id, paid, order.total, verification.transaction_id
            )
            crud.update_transaction_status(
                self.db, provider_type, callback.ledger_key, TransactionStatus.FAILED, verification.raw
            )
            return self._failure("amount_mismatch", order_id=order.id)

        outcome = OrderReconciliationService(self.db).confirm(order.id, verification.transaction_id)
        if outcome == ReconcileOutcome.CONFLICT:
            return self._failure("already_processed", order_id=order.id)

        crud.update_transaction_status(
            self.db, provider_type, callback.ledger_key, TransactionStatus.COMPLETED, verification.raw
        )
        return self._success(order.id)

    def _resolve_order_id(
        self, provider_type: str, callback: CallbackData, verification: VerificationResult
    ) -> Optional[str]:
        """Order id agreed on by the verification, the callback and the ledger."""
        ledger = None
        if callback.ledger_key:
            ledger = crud.get_transaction_by_reference(self.db, provider_type, callback.ledger_key)

        candidates = {
            value
            for value in (verification.order_id, callback.order_id, ledger.order_id if ledger else None)
            if value
        }
        if len(candidates) > 1:
            logger.error(f"Conflicting order ids for {provider_type} reference {callback.reference}: {candidates}")
            return None
        if candidates:
            return candidates.pop()

        order_number = verification.order_number or callback.order_number
        if order_number:
            order = crud.get_order_by_number(self.db, order_number)
            return order.id if order else None
        return None

    # ==================== CLIENT VERIFY ====================

    def verify(self, provider_type: str, reference: Optional[str], provider_id: Optional[str] = None) -> VerificationResult:
        """Read-only status lookup requested by the storefront."""
        if not reference:
            raise InvalidRequestError("Payment reference is required")

        adapter = self.get_adapter(provider_type, provider_id)
        try:
            return adapter.query(reference)
        except requests.RequestException as e:
            logger.error(f"{adapter.display_name} status query for {reference} failed: {e}")
            raise GatewayError(f"{adapter.display_name} is not reachable, please try again") from e
