"""
Payment provider gateway.

Each region pays through one provider. The mapping is a fixed table and a
provider handle is built fresh for every call, so nothing here holds state
between requests. Only sandbox (mock) providers exist; a real integration
would implement the same ``init_payment`` contract.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Protocol

from .models import PaymentProviderName

REGION_PROVIDERS = {
    "UA": PaymentProviderName.monobank,
    "BR": PaymentProviderName.pix,
}
DEFAULT_PROVIDER = PaymentProviderName.stripe

CHECKOUT_URL_TEMPLATES = {
    PaymentProviderName.monobank: "https://mock.monobank/checkout/{ref}",
    PaymentProviderName.pix: "https://mock.pix/checkout/{ref}",
    PaymentProviderName.stripe: "https://mock.stripe/checkout/{ref}",
}


@dataclass(frozen=True)
class PaymentInit:
    provider_ref: str
    checkout_url: Optional[str] = None


class PaymentProvider(Protocol):
    def init_payment(self, amount: Decimal, currency: str) -> PaymentInit: ...


ProviderFactory = Callable[[PaymentProviderName], PaymentProvider]


def provider_for_region(region: Optional[str]) -> PaymentProviderName:
    return REGION_PROVIDERS.get((region or "").strip().upper(), DEFAULT_PROVIDER)


def checkout_url_for(provider: PaymentProviderName, provider_ref: str) -> str:
    return CHECKOUT_URL_TEMPLATES[provider].format(ref=provider_ref)


class MockProvider:
    name: PaymentProviderName
    ref_prefix: str

    def init_payment(self, amount: Decimal, currency: str) -> PaymentInit:
        ref = f"{self.ref_prefix}_{uuid.uuid4().hex}"
        return PaymentInit(provider_ref=ref, checkout_url=checkout_url_for(self.name, ref))


class MonobankMockProvider(MockProvider):
    name = PaymentProviderName.monobank
    ref_prefix = "mono"


class PixMockProvider(MockProvider):
    name = PaymentProviderName.pix
    ref_prefix = "pix"


class StripeMockProvider(MockProvider):
    name = PaymentProviderName.stripe
    ref_prefix = "stripe"


PROVIDER_CLASSES = {
    PaymentProviderName.monobank: MonobankMockProvider,
    PaymentProviderName.pix: PixMockProvider,
    PaymentProviderName.stripe: StripeMockProvider,
}


def create_payment_provider(provider: PaymentProviderName) -> PaymentProvider:
    return PROVIDER_CLASSES[provider]()
