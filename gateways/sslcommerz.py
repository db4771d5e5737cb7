import logging
from typing import Any, Mapping

from errors import GatewayError
from gateways.base import (
    CallbackData, InitResult, PaymentGatewayAdapter, VerificationResult,
    format_amount, to_decimal,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = ("VALID", "VALIDATED")


class SslcommerzAdapter(PaymentGatewayAdapter):
    provider_type = "sslcommerz"
    display_name = "SSLCommerz"
    sandbox_url = "https://sandbox.sslcommerz.com"
    live_url = "https://securepay.sslcommerz.com"
    reference_field = "val_id"
    sandbox_defaults = ("testbox", "qwerty")

    def init(self, order) -> InitResult:
        customer = self.customer_fields(order)

        data = self._post(
            f"{self.base_url}/gwprocess/v4/api.php",
            "session init",
            data={
                "store_id": self.credentials.store_id,
                "store_passwd": self.credentials.store_password,
                "total_amount": format_amount(order.total),
                "currency": "BDT",
                "tran_id": order.order_number,
                "success_url": self.callback_endpoint("success"),
                "fail_url": self.callback_endpoint("fail"),
                "cancel_url": self.callback_endpoint("cancel"),
                "ipn_url": self.callback_endpoint("ipn"),
                "cus_name": customer["name"],
                "cus_email": customer["email"],
                "cus_add1": customer["address"],
                "cus_city": customer["city"],
                "cus_country": "Bangladesh",
                "cus_phone": customer["phone"],
                "shipping_method": "Courier",
                "product_name": f"Order {order.order_number}",
                "product_category": "General",
                "product_profile": "general",
                "num_of_item": str(len(order.items) or 1),
                "value_a": order.id,
                "value_b": format_amount(order.total),
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if data.get("status") != "SUCCESS" or not data.get("GatewayPageURL"):
            reason = data.get("failedreason") or "Payment initialization failed"
            raise GatewayError(reason, provider_reason=data.get("failedreason"), payload=data)

        return InitResult(
            gateway_url=data["GatewayPageURL"],
            reference=data.get("sessionkey"),
            raw=data,
            extra={"sessionKey": data.get("sessionkey")},
            ledger_reference=order.order_number,
        )

    def parse_callback(self, action: str, params: Mapping[str, Any]) -> CallbackData:
        status = (params.get("status") or "").upper()
        reported_success = action in ("success", "ipn") and status in VALID_STATUSES

        return CallbackData(
            reference=params.get("val_id"),
            reported_success=reported_success and bool(params.get("val_id")),
            order_id=params.get("value_a"),
            order_number=params.get("tran_id"),
            amount=to_decimal(params.get("amount")),
            reason=None if reported_success else (action if action in ("fail", "cancel") else "failed"),
            ledger_reference=params.get("tran_id"),
        )

    def verify(self, reference: str) -> VerificationResult:
        data = self._get(
            f"{self.base_url}/validator/api/validationserverAPI.php",
            "validation",
            params={
                "val_id": reference,
                "store_id": self.credentials.store_id,
                "store_passwd": self.credentials.store_password,
                "format": "json",
            },
        )

        return VerificationResult(
            confirmed=data.get("status") in VALID_STATUSES,
            transaction_id=data.get("val_id") or reference,
            status=data.get("status"),
            raw=data,
            order_id=data.get("value_a"),
            order_number=data.get("tran_id"),
            amount=to_decimal(data.get("amount")),
        )
