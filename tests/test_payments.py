from decimal import Decimal

import pytest

from app.models import PaymentProviderName
from app.payments import (
    MonobankMockProvider,
    PixMockProvider,
    StripeMockProvider,
    checkout_url_for,
    create_payment_provider,
    provider_for_region,
)


@pytest.mark.parametrize(
    "region, expected",
    [
        ("UA", PaymentProviderName.monobank),
        ("BR", PaymentProviderName.pix),
        ("US", PaymentProviderName.stripe),
        ("DE", PaymentProviderName.stripe),
        (" ua ", PaymentProviderName.monobank),
        ("", PaymentProviderName.stripe),
        (None, PaymentProviderName.stripe),
    ],
)
def test_provider_for_region(region, expected):
    assert provider_for_region(region) == expected


def test_checkout_url_templates():
    assert checkout_url_for(PaymentProviderName.monobank, "abc") == "https://mock.monobank/checkout/abc"
    assert checkout_url_for(PaymentProviderName.pix, "abc") == "https://mock.pix/checkout/abc"
    assert checkout_url_for(PaymentProviderName.stripe, "abc") == "https://mock.stripe/checkout/abc"


@pytest.mark.parametrize(
    "name, cls, prefix",
    [
        (PaymentProviderName.monobank, MonobankMockProvider, "mono_"),
        (PaymentProviderName.pix, PixMockProvider, "pix_"),
        (PaymentProviderName.stripe, StripeMockProvider, "stripe_"),
    ],
)
def test_mock_providers(name, cls, prefix):
    handle = create_payment_provider(name)
    assert isinstance(handle, cls)

    init = handle.init_payment(amount=Decimal("29.99"), currency="USD")

    assert init.provider_ref.startswith(prefix)
    assert init.checkout_url == checkout_url_for(name, init.provider_ref)


def test_handles_are_not_shared():
    first = create_payment_provider(PaymentProviderName.stripe)
    second = create_payment_provider(PaymentProviderName.stripe)

    assert first is not second
    assert first.init_payment(Decimal("1.00"), "USD").provider_ref != second.init_payment(
        Decimal("1.00"), "USD"
    ).provider_ref
