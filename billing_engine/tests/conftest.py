"""Shared fixtures for the billing engine test suite."""

from decimal import Decimal

import pytest

from billing_engine.core.config import AppConfig, BillingConfig, Settings
from billing_engine.core.logging_config import configure_logging
from billing_engine.services.billing.models import PricingProfile
from billing_engine.services.billing.storage import InMemoryBillingStorage
from billing_engine.tests.factories import ISSUED_AT


@pytest.fixture(scope="session", autouse=True)
def _logging():
    configure_logging("WARNING", json_logs=False, force=True)


@pytest.fixture
def settings():
    return Settings(
        app=AppConfig(app_env="testing", app_json_logs=False),
        billing=BillingConfig(
            invoice_number_prefix="INV",
            invoice_due_days=30,
            currency_minor_unit=Decimal("1"),
            auto_register_representatives=False,
            storage_backend="memory",
        ),
    )


@pytest.fixture
def storage():
    return InMemoryBillingStorage()


@pytest.fixture
def alice(storage):
    """Limited-tier representative: 3000 per GB for 1 month, 2500 for 3 months"""
    return storage.register_representative(
        "alice",
        full_name="Alice Store",
        pricing=PricingProfile(
            limited_tier_rates=(Decimal("3000"), None, Decimal("2500"), None, None, None),
        ),
    )


@pytest.fixture
def bob(storage):
    """Unlimited-tier representative: 40000 per month"""
    return storage.register_representative(
        "bob",
        pricing=PricingProfile(unlimited_monthly_price=Decimal("40000")),
    )


@pytest.fixture
def carol(storage):
    """Representative without any pricing configured"""
    return storage.register_representative("carol")


@pytest.fixture
def fixed_clock():
    return lambda: ISSUED_AT
