"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from conftest import DEV_ACCOUNTS, make_settings


class TestSettings:
    """Tests for the Settings model."""

    def test_postgres_urls_use_asyncpg(self):
        """Test that plain PostgreSQL URLs are rewritten for asyncpg."""
        settings = make_settings(database_url="postgres://u:p@db:5432/tlc")
        assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/tlc"

        settings = make_settings(database_url="postgresql://u:p@db:5432/tlc")
        assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/tlc"

    def test_encryption_salt_derived_from_secret(self):
        """Test that a missing salt is derived deterministically."""
        first = make_settings()
        second = make_settings()
        assert first.encryption_salt
        assert first.encryption_salt == second.encryption_salt

    def test_explicit_encryption_salt_kept(self):
        """Test that a configured salt is used as is."""
        settings = make_settings(encryption_salt="my-salt")
        assert settings.encryption_salt == "my-salt"

    def test_short_secret_rejected(self):
        """Test the minimum secret key length."""
        with pytest.raises(ValidationError):
            make_settings(secret_key="too-short")

    def test_oidc_requires_issuer_and_client(self):
        """Test that OIDC is only enabled with both issuer and client id."""
        assert not make_settings().oidc_configured
        assert not make_settings(oidc_issuer_url="https://idp.test").oidc_configured
        assert make_settings(
            oidc_issuer_url="https://idp.test", oidc_client_id="client"
        ).oidc_configured

    def test_dev_accounts_parsed(self):
        """Test parsing DEV_ACCOUNTS JSON into accounts."""
        settings = make_settings()
        account = settings.dev_accounts["admin@mindrush.com"]
        assert account.password == DEV_ACCOUNTS["admin@mindrush.com"]["password"]
        assert account.first_name == "Admin"

    def test_dev_accounts_rejected_in_production(self):
        """Test that developer accounts cannot be configured in production."""
        with pytest.raises(ValidationError):
            make_settings(environment="production")

        settings = make_settings(environment="production", dev_accounts={})
        assert settings.is_production

    def test_session_defaults(self):
        """Test the session cookie defaults."""
        settings = make_settings()
        assert settings.session_max_age_seconds == 7 * 24 * 60 * 60
        assert settings.session_backend == "memory"
        assert settings.oidc_discovery_max_age_seconds == 3600
