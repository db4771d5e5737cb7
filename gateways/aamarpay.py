import logging
from typing import Any, Mapping

from errors import GatewayError
from gateways.base import (
    CallbackData, InitResult, PaymentGatewayAdapter, VerificationResult,
    format_amount, to_decimal,
)

logger = logging.getLogger(__name__)


class AamarpayAdapter(PaymentGatewayAdapter):
    """aamarPay JSON checkout. ``store_password`` carries the signature key."""

    provider_type = "aamarpay"
    display_name = "AamarPay"
    sandbox_url = "https://sandbox.aamarpay.com"
    live_url = "https://secure.aamarpay.com"
    reference_field = "tran_id"
    sandbox_defaults = ("aamarpaytest", "dbb74894e82415a2f7ff0ec3a97e4183")

    def init(self, order) -> InitResult:
        customer = self.customer_fields(order)

        data = self._post(
            f"{self.base_url}/jsonpost.php",
            "payment request",
            json={
                "store_id": self.credentials.store_id,
                "signature_key": self.credentials.store_password,
                "tran_id": order.order_number,
                "amount": format_amount(order.total),
                "currency": "BDT",
                "desc": f"Order {order.order_number}",
                "cus_name": customer["name"],
                "cus_email": customer["email"],
                "cus_phone": customer["phone"],
                "cus_add1": customer["address"],
                "cus_city": customer["city"],
                "cus_country": "Bangladesh",
                "success_url": self.callback_endpoint("success"),
                "fail_url": self.callback_endpoint("fail"),
                "cancel_url": f"{self.app_url}/checkout?error=cancel",
                "type": "json",
                "opt_a": order.id,
                "opt_b": format_amount(order.total),
            },
            headers={"Content-Type": "application/json"},
        )

        payment_url = data.get("payment_url") if isinstance(data, dict) else None
        if not payment_url:
            # aamarPay answers errors either as a string or as a field dict
            reason = data if isinstance(data, str) else (data or {}).get("error") or "Payment initialization failed"
            raise GatewayError(str(reason), provider_reason=str(reason), payload=data)

        return InitResult(gateway_url=payment_url, reference=order.order_number, raw=data)

    def parse_callback(self, action: str, params: Mapping[str, Any]) -> CallbackData:
        reported_success = action in ("success", "ipn") and params.get("pay_status") == "Successful"

        return CallbackData(
            reference=params.get("mer_txnid"),
            reported_success=reported_success,
            order_id=params.get("opt_a"),
            order_number=params.get("mer_txnid"),
            amount=to_decimal(params.get("amount")),
            reason=None if reported_success else (action if action == "cancel" else "payment_failed"),
        )

    def verify(self, reference: str) -> VerificationResult:
        data = self._get(
            f"{self.base_url}/api/v1/trxcheck/request.php",
            "transaction check",
            params={
                "request_id": reference,
                "store_id": self.credentials.store_id,
                "signature_key": self.credentials.store_password,
                "type": "json",
            },
        )
        if not isinstance(data, dict):
            data = {}

        return VerificationResult(
            confirmed=data.get("pay_status") == "Successful",
            transaction_id=data.get("pg_txnid") or data.get("mer_txnid"),
            status=data.get("pay_status") or data.get("status_title"),
            raw=data,
            order_id=data.get("opt_a"),
            order_number=data.get("mer_txnid"),
            amount=to_decimal(data.get("amount")),
        )
