"""Payment processor selection."""

from functools import lru_cache

from peerrent.config import settings
from peerrent.gateways.base import GatewayType, PaymentGateway
from peerrent.gateways.manual import ManualGateway
from peerrent.gateways.stripe_gateway import StripeGateway


def build_gateway(gateway_type: str | GatewayType) -> PaymentGateway:
    """Instantiate the adapter for ``gateway_type``."""
    gateway_type = GatewayType(gateway_type)
    if gateway_type == GatewayType.STRIPE:
        return StripeGateway()
    return ManualGateway()


@lru_cache
def get_configured_gateway() -> PaymentGateway:
    """Shared processor handle for the configured gateway."""
    return build_gateway(settings.payment_gateway)
