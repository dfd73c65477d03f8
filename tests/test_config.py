"""
Tests for configuration and shared helpers.
"""
from datetime import timedelta

import pytest

from sqldomain.common import SECRET_MASK, for_logging, logically_equal, to_snake
from sqldomain.config import DomainConfig, parse_period


class TestPeriods:
    @pytest.mark.parametrize("text, expected", [
        ("30s", timedelta(seconds=30)),
        ("15m", timedelta(minutes=15)),
        ("12h", timedelta(hours=12)),
        ("2d", timedelta(days=2)),
        ("1w", timedelta(weeks=1)),
        ("1M", timedelta(days=30)),
        ("1y", timedelta(days=365)),
        (" 3 d ", timedelta(days=3)),
    ])
    def test_parse_period(self, text, expected):
        assert parse_period(text) == expected

    @pytest.mark.parametrize("text", ["", "d", "3x", "-1d", "1.5h"])
    def test_invalid_period(self, text):
        with pytest.raises(ValueError):
            parse_period(text)


class TestDomainConfig:
    def test_defaults(self):
        config = DomainConfig()
        assert config.data_horizon_period == timedelta(days=30)
        assert config.crypt_password is None
        assert config.crypt_salt == "SALTSALT"

    def test_period_from_string(self):
        assert DomainConfig(data_horizon_period="2d").data_horizon_period == timedelta(days=2)

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SQLDOMAIN_DATABASE_URL", "sqlite:///env.db")
        monkeypatch.setenv("SQLDOMAIN_DATA_HORIZON_PERIOD", "12h")
        monkeypatch.setenv("SQLDOMAIN_CRYPT_PASSWORD", "pw")
        config = DomainConfig.from_env(crypt_salt="PEPPER")
        assert config.database_url == "sqlite:///env.db"
        assert config.data_horizon_period == timedelta(hours=12)
        assert config.crypt_password == "pw"
        assert config.crypt_salt == "PEPPER"

    def test_from_env_with_invalid_period(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SQLDOMAIN_DATA_HORIZON_PERIOD", "soon")
        with pytest.raises(ValueError):
            DomainConfig.from_env()


class TestHelpers:
    def test_to_snake(self):
        assert to_snake("OrderLine") == "order_line"
        assert to_snake("HTTPServer") == "http_server"
        assert to_snake("lastModified") == "last_modified"

    def test_logically_equal(self):
        assert logically_equal(None, [])
        assert logically_equal({}, None)
        assert not logically_equal(None, "")
        assert logically_equal(0.1 + 0.2, 0.3)
        assert logically_equal([1.0, {"a": 0.3}], [1.0, {"a": 0.1 + 0.2}])
        assert not logically_equal([1, 2], [2, 1])
        assert logically_equal({1, 2}, {2, 1})

    def test_for_logging_masks_secrets(self):
        assert for_logging("hunter2", secret=True) == SECRET_MASK
        assert for_logging(None, secret=True) == "None"
        assert for_logging("x" * 200).endswith("...")
