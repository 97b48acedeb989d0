"""
Unit tests for Pydantic Settings configuration.

Tests the kill switch parsing and Grow configuration helpers.
"""

import pytest

from signatura_billing.config.settings import Settings


class TestKillSwitch:
    """SUBSCRIPTION_ENABLED only enables enforcement on the literal 'true'."""

    def test_defaults_to_disabled(self, monkeypatch):
        monkeypatch.delenv("SUBSCRIPTION_ENABLED", raising=False)
        assert Settings(_env_file=None).subscription_enabled is False

    @pytest.mark.parametrize("value", ["true", "TRUE", " True "])
    def test_true_enables(self, monkeypatch, value):
        monkeypatch.setenv("SUBSCRIPTION_ENABLED", value)
        assert Settings(_env_file=None).subscription_enabled is True

    @pytest.mark.parametrize("value", ["1", "yes", "on", "false", ""])
    def test_anything_else_disables(self, monkeypatch, value):
        monkeypatch.setenv("SUBSCRIPTION_ENABLED", value)
        assert Settings(_env_file=None).subscription_enabled is False

    def test_bool_passthrough(self):
        assert Settings(_env_file=None, subscription_enabled=True).subscription_enabled is True


class TestGrowConfiguration:
    """Page code lookup and missing-key reporting."""

    def test_grow_page_code_lookup(self):
        settings = Settings(_env_file=None, grow_page_code_elite_quarterly="pc-eq")
        assert settings.grow_page_code("elite", "quarterly") == "pc-eq"
        assert settings.grow_page_code("elite", "monthly") is None

    def test_missing_grow_keys_lists_env_names(self):
        settings = Settings(
            _env_file=None,
            grow_api_url="https://grow.test",
            grow_user_id="acct",
            grow_page_code_momentum_monthly="pc-mm",
        )
        missing = settings.missing_grow_keys()

        assert "GROW_WEBHOOK_KEY" in missing
        assert "GROW_PAGE_CODE_ELITE_YEARLY" in missing
        assert "GROW_API_URL" not in missing
        assert "GROW_PAGE_CODE_MOMENTUM_MONTHLY" not in missing
        assert len(missing) == 9


class TestCors:
    """Browser origins."""

    def test_allowed_origins_includes_localhost(self):
        settings = Settings(_env_file=None)
        assert "http://localhost:3000" in settings.allowed_origins
