import base64
import json
import logging
import secrets
import textwrap
from datetime import datetime
from typing import Any, Dict, Mapping
from zoneinfo import ZoneInfo

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from errors import ConfigurationError, GatewayError
from gateways.base import (
    CallbackData, InitResult, PaymentGatewayAdapter, ProviderCredentials,
    VerificationResult, format_amount, to_decimal,
)

logger = logging.getLogger(__name__)

DHAKA_TZ = ZoneInfo("Asia/Dhaka")
BDT_CURRENCY_CODE = "050"


def _pem(key_text: str, kind: str) -> bytes:
    """Accept either a full PEM block or the bare base64 body the admin pasted."""
    key_text = key_text.strip()
    if key_text.startswith("-----BEGIN"):
        return key_text.encode("utf-8")

    body = "".join(key_text.split())
    wrapped = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN {kind}-----\n{wrapped}\n-----END {kind}-----\n".encode("utf-8")


class NagadAdapter(PaymentGatewayAdapter):
    """Nagad remote gateway. store_id is the merchant id, RSA keys live in config."""

    provider_type = "nagad"
    display_name = "Nagad"
    sandbox_url = "https://sandbox.mynagad.com:10061/remote-payment-gateway-1.0/api/dfs"
    live_url = "https://api.mynagad.com/api/dfs"
    reference_field = "paymentReferenceId"
    encrypted_config_fields = ("public_key", "private_key")

    @classmethod
    def check_credentials(cls, credentials: ProviderCredentials) -> None:
        if not credentials.store_id or not credentials.config.get("public_key") or not credentials.config.get("private_key"):
            raise ConfigurationError("Nagad API credentials are not configured.")

    # ---- RSA helpers ----

    def _encrypt(self, payload: Dict[str, Any]) -> str:
        public_key = serialization.load_pem_public_key(_pem(self.credentials.config["public_key"], "PUBLIC KEY"))
        encrypted = public_key.encrypt(json.dumps(payload).encode("utf-8"), padding.PKCS1v15())
        return base64.b64encode(encrypted).decode("utf-8")

    def _private_key(self):
        return serialization.load_pem_private_key(
            _pem(self.credentials.config["private_key"], "PRIVATE KEY"),
            password=None,
        )

    def _sign(self, payload: Dict[str, Any]) -> str:
        signature = self._private_key().sign(
            json.dumps(payload).encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("utf-8")

    def _decrypt(self, sensitive_data: str) -> Dict[str, Any]:
        decrypted = self._private_key().decrypt(base64.b64decode(sensitive_data), padding.PKCS1v15())
        return json.loads(decrypted.decode("utf-8"))

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-KM-IP-V4": self.credentials.config.get("client_ip", "127.0.0.1"),
            "X-KM-Client-Type": "PC_WEB",
            "X-KM-Api-Version": "v-0.2.0",
        }

    # ---- contract ----

    def initialize(self, order_number: str) -> Dict[str, Any]:
        """Step 1: exchange a signed challenge for a payment reference"""
        merchant_id = self.credentials.store_id
        challenge = secrets.token_hex(20)
        date_time = datetime.now(DHAKA_TZ).strftime("%Y%m%d%H%M%S")

        sensitive = {
            "merchantId": merchant_id,
            "datetime": date_time,
            "orderId": order_number,
            "challenge": challenge,
        }

        data = self._post(
            f"{self.base_url}/check-out/initialize/{merchant_id}/{order_number}",
            "initialize",
            json={
                "dateTime": date_time,
                "sensitiveData": self._encrypt(sensitive),
                "signature": self._sign(sensitive),
            },
            headers=self._headers(),
        )

        if data.get("reason") or (not data.get("sensitiveData") and not data.get("paymentReferenceId")):
            reason = data.get("message") or data.get("reason") or "Nagad initialization failed"
            raise GatewayError(reason, provider_reason=data.get("reason"), payload=data)

        if data.get("sensitiveData"):
            try:
                return self._decrypt(data["sensitiveData"])
            except ValueError as e:
                raise GatewayError("Nagad initialization response could not be decrypted", payload=data) from e

        return {"paymentReferenceId": data["paymentReferenceId"], "challenge": challenge}

    def init(self, order) -> InitResult:
        initialized = self.initialize(order.order_number)
        payment_reference_id = initialized["paymentReferenceId"]

        sensitive = {
            "merchantId": self.credentials.store_id,
            "orderId": order.order_number,
            "currencyCode": BDT_CURRENCY_CODE,
            "amount": format_amount(order.total),
            "challenge": initialized["challenge"],
        }

        data = self._post(
            f"{self.base_url}/check-out/complete/{payment_reference_id}",
            "complete",
            json={
                "sensitiveData": self._encrypt(sensitive),
                "signature": self._sign(sensitive),
                "merchantCallbackURL": self.callback_endpoint("success"),
                "additionalMerchantInfo": {"order_id": order.id},
            },
            headers=self._headers(),
        )

        if data.get("status") != "Success" or not data.get("callBackUrl"):
            reason = data.get("message") or data.get("reason") or "Nagad payment creation failed"
            raise GatewayError(reason, provider_reason=data.get("reason"), payload=data)

        return InitResult(
            gateway_url=data["callBackUrl"],
            reference=payment_reference_id,
            raw={"initialize": {"paymentReferenceId": payment_reference_id}, "complete": data},
            extra={"paymentReferenceId": payment_reference_id, "callBackUrl": data["callBackUrl"]},
        )

    def parse_callback(self, action: str, params: Mapping[str, Any]) -> CallbackData:
        status = (params.get("status") or "").lower()
        reported_success = action in ("success", "ipn") and status in ("", "success")

        reason = None
        if not reported_success:
            reason = "cancel" if status in ("aborted", "cancelled", "cancel") else "payment_failed"

        return CallbackData(
            reference=params.get("payment_ref_id"),
            reported_success=reported_success,
            order_number=params.get("order_id"),
            reason=reason,
        )

    def verify(self, reference: str) -> VerificationResult:
        data = self._get(f"{self.base_url}/verify/payment/{reference}", "verify", headers=self._headers())

        merchant_info = data.get("additionalMerchantInfo") or {}
        if isinstance(merchant_info, str):
            try:
                merchant_info = json.loads(merchant_info)
            except ValueError:
                merchant_info = {}

        return VerificationResult(
            confirmed=data.get("status") == "Success" and bool(data.get("issuerPaymentRefNo")),
            transaction_id=data.get("issuerPaymentRefNo"),
            status=data.get("status"),
            raw=data,
            order_id=merchant_info.get("order_id") if isinstance(merchant_info, dict) else None,
            order_number=data.get("orderId"),
            amount=to_decimal(data.get("amount")),
        )
