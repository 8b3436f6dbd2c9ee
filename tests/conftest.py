# tests/conftest.py
# Shared fixtures: in-memory store, registry with test providers, services

from datetime import datetime

import pytest

from paygate.services.payment.credentials import CredentialStore
from paygate.services.payment.gateways.ecpay import ECPayProvider, TAIWAN_TZ
from paygate.services.payment.gateways.factory import ProviderRegistry
from paygate.services.payment.payment_service import PaymentService
from paygate.services.payment.provider_service import PaymentProviderService

from fakes import FakeProvider
from memory_store import InMemoryPaymentStore

TEST_KEY = "0123456789abcdef0123456789abcdef"


@pytest.fixture
def credential_store():
    """Credential store with a fixed 32-byte key"""
    return CredentialStore(TEST_KEY)


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def ecpay_provider():
    """ECPay adapter with a frozen clock"""
    return ECPayProvider(clock=lambda: datetime(2026, 10, 19, 12, 0, 0, tzinfo=TAIWAN_TZ))


@pytest.fixture
def registry(fake_provider, ecpay_provider):
    return ProviderRegistry([fake_provider, ecpay_provider])


@pytest.fixture
def provider_service(store, registry, credential_store):
    return PaymentProviderService(store, registry, credential_store)


@pytest.fixture
def payment_service(store, registry, credential_store):
    return PaymentService(
        store,
        registry,
        credential_store,
        provider_timeout=0.2,
        callback_base_url="https://pay.example.test"
    )
