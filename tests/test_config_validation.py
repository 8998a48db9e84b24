"""
Configuration validation tests.

The service must refuse to start with settings that break recovery timing
or that are unsafe outside development.
"""

import pytest
from pydantic import ValidationError

from payment_recovery.shared.core.config import Settings

DB = "postgresql+asyncpg://recovery:secret@db/recovery"


def test_defaults_are_valid():
    settings = Settings(DATABASE_URL=DB, TESTING=False, ENVIRONMENT="development")
    assert settings.GRACE_PERIOD_DAYS == 14
    assert settings.DUNNING_TOTAL_STEPS == 4
    assert settings.is_production is False


@pytest.mark.parametrize("timeout", [0, -1.5])
def test_gateway_timeout_must_be_positive(timeout):
    with pytest.raises(ValidationError, match="GATEWAY_TIMEOUT_SECONDS"):
        Settings(DATABASE_URL=DB, GATEWAY_TIMEOUT_SECONDS=timeout)


@pytest.mark.parametrize("steps", [0, 5])
def test_dunning_steps_bounded(steps):
    with pytest.raises(ValidationError, match="DUNNING_TOTAL_STEPS"):
        Settings(DATABASE_URL=DB, DUNNING_TOTAL_STEPS=steps)


@pytest.mark.parametrize("environment", ["production", "staging"])
def test_production_requires_ssl(environment):
    with pytest.raises(ValidationError, match="DB_SSL_MODE"):
        Settings(
            DATABASE_URL=DB,
            ENVIRONMENT=environment,
            TESTING=False,
            DB_SSL_MODE="disable",
            PAYSTACK_SECRET_KEY="sk_live_xxx",
        )


def test_production_requires_gateway_key():
    with pytest.raises(ValidationError, match="PAYSTACK_SECRET_KEY"):
        Settings(DATABASE_URL=DB, ENVIRONMENT="production", TESTING=False, DB_SSL_MODE="require")


def test_production_config_accepted():
    settings = Settings(
        DATABASE_URL=DB,
        ENVIRONMENT="production",
        TESTING=False,
        DB_SSL_MODE="verify-full",
        PAYSTACK_SECRET_KEY="sk_live_xxx",
    )
    assert settings.is_production is True


def test_testing_skips_production_checks():
    settings = Settings(DATABASE_URL=DB, ENVIRONMENT="production", TESTING=True, DB_SSL_MODE="disable")
    assert settings.PAYSTACK_SECRET_KEY is None
