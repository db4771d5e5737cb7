from errors import NotFoundError
from gateways.aamarpay import AamarpayAdapter
from gateways.base import PaymentGatewayAdapter
from gateways.bkash import BkashAdapter
from gateways.nagad import NagadAdapter
from gateways.sslcommerz import SslcommerzAdapter
from gateways.surjopay import SurjopayAdapter

GATEWAY_ADAPTERS = {
    adapter.provider_type: adapter
    for adapter in (BkashAdapter, NagadAdapter, SslcommerzAdapter, AamarpayAdapter, SurjopayAdapter)
}


def get_adapter_class(provider_type: str):
    try:
        return GATEWAY_ADAPTERS[provider_type]
    except KeyError:
        raise NotFoundError("Unknown payment gateway")


__all__ = ["GATEWAY_ADAPTERS", "PaymentGatewayAdapter", "get_adapter_class"]
