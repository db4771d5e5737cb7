import logging
from typing import Any, Dict, Mapping

from errors import GatewayError
from gateways.base import (
    CallbackData, InitResult, PaymentGatewayAdapter, VerificationResult,
    format_amount, to_decimal,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = 1000


class SurjopayAdapter(PaymentGatewayAdapter):
    """shurjoPay v2. ``store_id``/``store_password`` are the API username/password."""

    provider_type = "surjopay"
    display_name = "SurjoPay"
    sandbox_url = "https://sandbox.shurjopayment.com/api"
    live_url = "https://engine.shurjopayment.com/api"
    reference_field = "sp_order_id"
    sandbox_defaults = ("sp_sandbox", "pyaborern")

    def get_token(self) -> Dict[str, Any]:
        data = self._post(
            f"{self.base_url}/get_token",
            "get token",
            json={
                "username": self.credentials.store_id,
                "password": self.credentials.store_password,
            },
            headers={"Content-Type": "application/json"},
        )

        if not isinstance(data, dict) or not data.get("token"):
            reason = (data or {}).get("message") if isinstance(data, dict) else None
            raise GatewayError(reason or "Failed to get SurjoPay token", provider_reason=reason, payload=data)
        return data

    def _auth_header(self, token: Dict[str, Any]) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"{token.get('token_type') or 'Bearer'} {token['token']}",
        }

    def init(self, order) -> InitResult:
        token = self.get_token()
        customer = self.customer_fields(order)
        execute_url = token.get("execute_url") or f"{self.base_url}/secret-pay"

        data = self._post(
            execute_url,
            "secret pay",
            json={
                "prefix": self.credentials.config.get("prefix") or "SP",
                "token": token["token"],
                "store_id": token.get("store_id"),
                "return_url": self.callback_endpoint("success"),
                "cancel_url": f"{self.app_url}/checkout?error=cancel",
                "amount": format_amount(order.total),
                "order_id": order.order_number,
                "currency": "BDT",
                "customer_name": customer["name"],
                "customer_address": customer["address"],
                "customer_email": customer["email"],
                "customer_phone": customer["phone"],
                "customer_city": customer["city"],
                "customer_post_code": "1000",
                "client_ip": self.credentials.config.get("client_ip", "127.0.0.1"),
                "value1": order.id,
                "value2": format_amount(order.total),
            },
            headers=self._auth_header(token),
        )

        if not isinstance(data, dict) or not data.get("checkout_url"):
            reason = (data or {}).get("message") if isinstance(data, dict) else None
            raise GatewayError(reason or "Payment initialization failed", provider_reason=reason, payload=data)

        return InitResult(
            gateway_url=data["checkout_url"],
            reference=data.get("sp_order_id"),
            raw=data,
            extra={"sp_order_id": data.get("sp_order_id")},
        )

    def parse_callback(self, action: str, params: Mapping[str, Any]) -> CallbackData:
        # shurjoPay only returns its own order id; the status comes from verification
        reference = params.get("order_id")
        reported_success = action in ("success", "ipn") and bool(reference)

        return CallbackData(
            reference=reference,
            reported_success=reported_success,
            reason=None if reported_success else (action if action == "cancel" else "payment_failed"),
        )

    def verify(self, reference: str) -> VerificationResult:
        token = self.get_token()
        data = self._post(
            f"{self.base_url}/verification",
            "verification",
            json={"order_id": reference},
            headers=self._auth_header(token),
        )

        item = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else {}
        try:
            sp_code = int(item.get("sp_code"))
        except (TypeError, ValueError):
            sp_code = None

        return VerificationResult(
            confirmed=sp_code == SUCCESS_CODE,
            transaction_id=item.get("order_id") or None,
            status=item.get("sp_message") or item.get("transaction_status"),
            raw=data,
            order_id=item.get("value1"),
            order_number=item.get("customer_order_id"),
            amount=to_decimal(item.get("amount")),
        )
