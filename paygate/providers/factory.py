"""Adapter factory: one adapter class per supported provider type."""

from typing import Any, Optional

from paygate.errors import ConfigurationError
from paygate.models.enums import ProviderType
from paygate.providers.authorize_net import AuthorizeNetAdapter
from paygate.providers.base import PaymentGatewayAdapter
from paygate.providers.mpesa import MpesaAdapter
from paygate.providers.paypal import PayPalAdapter
from paygate.providers.razorpay import RazorpayAdapter
from paygate.providers.simulator import SimulatorBackend
from paygate.providers.square import SquareAdapter
from paygate.providers.stripe import StripeAdapter

ADAPTERS: dict[ProviderType, type[PaymentGatewayAdapter]] = {
    ProviderType.STRIPE: StripeAdapter,
    ProviderType.PAYPAL: PayPalAdapter,
    ProviderType.AUTHORIZE_NET: AuthorizeNetAdapter,
    ProviderType.MPESA: MpesaAdapter,
    ProviderType.SQUARE: SquareAdapter,
    ProviderType.RAZORPAY: RazorpayAdapter,
}


def get_adapter(
    provider_type: str,
    configuration: dict[str, Any],
    backend: Optional[SimulatorBackend] = None,
) -> PaymentGatewayAdapter:
    """
    Build a fresh adapter for one operation.

    Construction validates the configuration without any network access, so
    this doubles as the configuration check at provider registration.

    Raises:
        ConfigurationError: Unknown provider type or invalid configuration.
    """
    try:
        adapter_cls = ADAPTERS[ProviderType(provider_type)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unsupported payment gateway type: {provider_type}") from None
    return adapter_cls(configuration or {}, backend=backend)
