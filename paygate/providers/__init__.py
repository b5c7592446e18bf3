from paygate.providers.base import PaymentGatewayAdapter, TokenValidator
from paygate.providers.factory import ADAPTERS, get_adapter

__all__ = ["ADAPTERS", "PaymentGatewayAdapter", "TokenValidator", "get_adapter"]
