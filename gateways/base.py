import abc
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

import requests

from credential_vault import CredentialVault
from errors import ConfigurationError, GatewayError

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")


def sanitize(value: Any, max_len: int) -> str:
    """Strip markup and clip a customer supplied field before sending it to a gateway."""
    if not value or not isinstance(value, str):
        return ""
    return _TAG_RE.sub("", value).strip()[:max_len]


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def format_amount(value: Any) -> str:
    return f"{Decimal(str(value)):.2f}"


@dataclass
class ProviderCredentials:
    provider_id: str
    provider_type: str
    is_sandbox: bool
    store_id: str
    store_password: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InitResult:
    gateway_url: str
    reference: Optional[str]
    raw: Any = None
    # Provider specific fields echoed back to the client (paymentID, sessionKey, ...)
    extra: Dict[str, Any] = field(default_factory=dict)
    # payment_transactions key when it is not the client facing reference
    ledger_reference: Optional[str] = None

    @property
    def ledger_key(self) -> Optional[str]:
        return self.ledger_reference or self.reference


@dataclass
class CallbackData:
    reference: Optional[str]
    reported_success: bool
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    ledger_reference: Optional[str] = None

    @property
    def ledger_key(self) -> Optional[str]:
        return self.ledger_reference or self.reference


@dataclass
class VerificationResult:
    confirmed: bool
    transaction_id: Optional[str]
    status: Optional[str]
    raw: Any = None
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    amount: Optional[Decimal] = None


class PaymentGatewayAdapter(abc.ABC):
    provider_type: str = ""
    display_name: str = ""
    sandbox_url: str = ""
    live_url: str = ""

    # Body field carrying the gateway reference for the client "verify" action
    reference_field: str = "reference"
    encrypted_config_fields: Tuple[str, ...] = ()
    # Public sandbox credentials used when a sandbox row has none stored
    sandbox_defaults: Optional[Tuple[str, str]] = None

    def __init__(
        self,
        credentials: ProviderCredentials,
        http: requests.Session,
        callback_url: str,
        app_url: str,
        timeout: float = 30.0,
    ):
        self.credentials = credentials
        self.http = http
        self.callback_url = callback_url
        self.app_url = app_url.rstrip("/")
        self.timeout = timeout
        self.base_url = self.sandbox_url if credentials.is_sandbox else self.live_url

    @classmethod
    def from_provider(cls, provider, vault: CredentialVault, http, callback_url: str, app_url: str, timeout: float = 30.0):
        return cls(cls.resolve_credentials(provider, vault), http, callback_url, app_url, timeout)

    @classmethod
    def resolve_credentials(cls, provider, vault: CredentialVault) -> ProviderCredentials:
        store_id = vault.decrypt(provider.store_id or "")
        store_password = vault.decrypt(provider.store_password or "")
        is_sandbox = bool(provider.is_sandbox)

        if is_sandbox and cls.sandbox_defaults:
            default_id, default_password = cls.sandbox_defaults
            store_id = store_id or default_id
            store_password = store_password or default_password

        credentials = ProviderCredentials(
            provider_id=provider.id,
            provider_type=cls.provider_type,
            is_sandbox=is_sandbox,
            store_id=store_id,
            store_password=store_password,
            config=vault.decrypt_fields(provider.config or {}, cls.encrypted_config_fields),
        )
        cls.check_credentials(credentials)
        return credentials

    @classmethod
    def check_credentials(cls, credentials: ProviderCredentials) -> None:
        if not credentials.store_id or not credentials.store_password:
            raise ConfigurationError(f"{cls.display_name} API credentials are not configured.")

    # ---- contract ----

    @abc.abstractmethod
    def init(self, order) -> InitResult:
        """Start a payment for ``order`` and return the hosted checkout URL."""

    @abc.abstractmethod
    def parse_callback(self, action: str, params: Mapping[str, Any]) -> CallbackData:
        """Read the provider's return / IPN parameters."""

    @abc.abstractmethod
    def verify(self, reference: str) -> VerificationResult:
        """Ask the provider for the authoritative status of a transaction."""

    def query(self, reference: str) -> VerificationResult:
        return self.verify(reference)

    # ---- helpers ----

    def callback_endpoint(self, action: str) -> str:
        return f"{self.callback_url}?action={action}"

    def customer_fields(self, order) -> Dict[str, str]:
        address = order.address
        return {
            "name": sanitize(getattr(address, "full_name", None) or "Customer", 100),
            "email": sanitize(getattr(address, "email", None) or "customer@store.com", 100),
            "phone": sanitize(getattr(address, "phone", None) or "N/A", 20),
            "address": sanitize(getattr(address, "address_line", None) or "N/A", 200),
            "city": sanitize(getattr(address, "district", None) or "Dhaka", 50),
        }

    def _read_json(self, response: requests.Response, step: str) -> Any:
        try:
            data = response.json()
        except ValueError:
            logger.error(f"{self.display_name} {step} returned non-JSON (HTTP {response.status_code})")
            raise GatewayError(
                f"{self.display_name} {step} failed",
                provider_reason=response.text[:200],
            )

        if response.status_code >= 500:
            raise GatewayError(f"{self.display_name} {step} failed", payload=data)
        return data

    def _post(self, url: str, step: str, json: Any = None, data: Any = None, headers: Optional[dict] = None) -> Any:
        logger.info(f"{self.display_name} {step}: POST {url}")
        response = self.http.post(url, json=json, data=data, headers=headers, timeout=self.timeout)
        return self._read_json(response, step)

    def _get(self, url: str, step: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> Any:
        logger.info(f"{self.display_name} {step}: GET {url}")
        response = self.http.get(url, params=params, headers=headers, timeout=self.timeout)
        return self._read_json(response, step)
