"""Schema package exports."""
from .payment import PaymentAccepted, PaymentCreate, PaymentRead
from .provider_health import ProviderHealthRead

__all__ = [
    "PaymentAccepted",
    "PaymentCreate",
    "PaymentRead",
    "ProviderHealthRead",
]
