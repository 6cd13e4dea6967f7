"""Provider -> gateway lookup."""

from billing.models.enums import Provider
from billing.services.gateways.adyen_gateway import RedirectLocalGateway
from billing.services.gateways.base import PaymentGateway
from billing.services.gateways.manual_gateway import ManualGateway
from billing.services.gateways.paypal_gateway import OrderCaptureGateway
from billing.services.gateways.stripe_gateway import CardWalletGateway

_GATEWAYS: dict[Provider, PaymentGateway] = {
    Provider.STRIPE: CardWalletGateway(),
    Provider.PAYPAL: OrderCaptureGateway(),
    Provider.ADYEN: RedirectLocalGateway(),
    Provider.MANUAL: ManualGateway(),
}


def get_gateway(provider: Provider | str) -> PaymentGateway:
    try:
        return _GATEWAYS[Provider(provider)]
    except ValueError as e:
        raise KeyError(f"Unknown payment provider: {provider}") from e
