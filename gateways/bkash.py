import logging
from typing import Any, Dict, Mapping

from errors import ConfigurationError, GatewayError
from gateways.base import (
    CallbackData, InitResult, PaymentGatewayAdapter, ProviderCredentials,
    VerificationResult, format_amount, to_decimal,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"


class BkashAdapter(PaymentGatewayAdapter):
    """bKash tokenized checkout. App key and secret in store_id/store_password, merchant login in config."""

    provider_type = "bkash"
    display_name = "bKash"
    sandbox_url = "https://tokenized.sandbox.bka.sh/v1.2.0-beta"
    live_url = "https://tokenized.pay.bka.sh/v1.2.0-beta"
    reference_field = "paymentID"
    encrypted_config_fields = ("username", "password")

    @classmethod
    def check_credentials(cls, credentials: ProviderCredentials) -> None:
        super().check_credentials(credentials)
        if not credentials.config.get("username") or not credentials.config.get("password"):
            raise ConfigurationError("bKash merchant username/password are not configured.")

    def grant_token(self) -> str:
        """Fetch a fresh id_token; tokens are never reused across requests"""
        data = self._post(
            f"{self.base_url}/tokenized/checkout/token/grant",
            "token grant",
            json={
                "app_key": self.credentials.store_id,
                "app_secret": self.credentials.store_password,
            },
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "username": self.credentials.config["username"],
                "password": self.credentials.config["password"],
            },
        )

        if data.get("statusCode") != SUCCESS_CODE or not data.get("id_token"):
            reason = data.get("statusMessage") or "Failed to get bKash token"
            raise GatewayError(reason, provider_reason=data.get("statusMessage"), payload=data)

        return data["id_token"]

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": token,
            "X-APP-Key": self.credentials.store_id,
        }

    def init(self, order) -> InitResult:
        token = self.grant_token()

        data = self._post(
            f"{self.base_url}/tokenized/checkout/create",
            "create payment",
            json={
                "mode": "0011",
                "payerReference": order.id,
                "callbackURL": self.callback_endpoint("success"),
                "amount": format_amount(order.total),
                "currency": "BDT",
                "intent": "sale",
                "merchantInvoiceNumber": order.order_number,
            },
            headers=self._headers(token),
        )

        if data.get("statusCode") != SUCCESS_CODE or not data.get("bkashURL"):
            reason = data.get("statusMessage") or "Failed to create payment"
            raise GatewayError(reason, provider_reason=data.get("statusMessage"), payload=data)

        return InitResult(
            gateway_url=data["bkashURL"],
            reference=data.get("paymentID"),
            raw=data,
            extra={"paymentID": data.get("paymentID"), "bkashURL": data["bkashURL"]},
        )

    def parse_callback(self, action: str, params: Mapping[str, Any]) -> CallbackData:
        status = (params.get("status") or "").lower()
        reported_success = action in ("success", "ipn") and status == "success"

        reason = None
        if not reported_success:
            reason = "cancel" if status == "cancel" else "payment_failed"

        return CallbackData(
            reference=params.get("paymentID"),
            reported_success=reported_success,
            reason=reason,
        )

    def _payment_status(self, token: str, payment_id: str) -> Dict[str, Any]:
        return self._post(
            f"{self.base_url}/tokenized/checkout/payment/status",
            "query payment",
            json={"paymentID": payment_id},
            headers=self._headers(token),
        )

    def _result(self, data: Dict[str, Any]) -> VerificationResult:
        confirmed = data.get("statusCode") == SUCCESS_CODE and data.get("transactionStatus") == "Completed"
        return VerificationResult(
            confirmed=confirmed and bool(data.get("trxID")),
            transaction_id=data.get("trxID"),
            status=data.get("transactionStatus") or data.get("statusMessage"),
            raw=data,
            order_id=data.get("payerReference"),
            order_number=data.get("merchantInvoiceNumber"),
            amount=to_decimal(data.get("amount")),
        )

    def verify(self, reference: str) -> VerificationResult:
        """Execute the payment; a redelivered callback falls back to a status query."""
        token = self.grant_token()

        executed = self._post(
            f"{self.base_url}/tokenized/checkout/execute",
            "execute payment",
            json={"paymentID": reference},
            headers=self._headers(token),
        )
        result = self._result(executed)
        if result.confirmed:
            return result

        logger.info(f"bKash execute for {reference} answered {executed.get('statusCode')}, querying status")
        return self._result(self._payment_status(token, reference))

    def query(self, reference: str) -> VerificationResult:
        token = self.grant_token()
        return self._result(self._payment_status(token, reference))
