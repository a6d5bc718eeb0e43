from typing import Dict, List, Optional, Iterable

import httpx

from commerce.gateways.base import PaymentGateway
from commerce.gateways.fake import FakeGateway
from commerce.gateways.phonepe import PhonePeGateway
from commerce.gateways.razorpay import RazorpayGateway
from commerce.gateways.stubs import HostedStubGateway, CashOnDeliveryGateway
from shared.utils import settings

SUPPORTED_GATEWAYS = ("phonepe", "razorpay", "stripe", "paypal", "cod")


class GatewayRegistry:
    def __init__(self, gateways: Iterable[PaymentGateway] = ()):
        self._gateways: Dict[str, PaymentGateway] = {}
        for gateway in gateways:
            self.register(gateway)

    def register(self, gateway: PaymentGateway):
        self._gateways[gateway.name] = gateway

    def get(self, name: Optional[str]) -> Optional[PaymentGateway]:
        if not name:
            return None
        return self._gateways.get(name.lower())

    def names(self) -> List[str]:
        return sorted(self._gateways)


def build_gateways(enabled: Iterable[str] = settings.ENABLED_GATEWAYS,
                   transport: Optional[httpx.AsyncBaseTransport] = None) -> GatewayRegistry:
    """Build adapters for the configured gateway names.

    ``fake`` is accepted for local development on top of the supported set.
    """
    factories = {
        "phonepe": lambda: PhonePeGateway(transport=transport),
        "razorpay": lambda: RazorpayGateway(transport=transport),
        "stripe": lambda: HostedStubGateway("stripe"),
        "paypal": lambda: HostedStubGateway("paypal"),
        "cod": CashOnDeliveryGateway,
        "fake": FakeGateway,
    }
    registry = GatewayRegistry()
    for name in enabled:
        factory = factories.get(name.lower())
        if factory is None:
            raise ValueError(f"Unsupported payment gateway {name!r}. Supported: {', '.join(SUPPORTED_GATEWAYS)}")
        registry.register(factory())
    return registry
