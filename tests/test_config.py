"""Tests for engine configuration."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from cosigner.config import CosignerSettings, is_local_rpc_url


class TestCosignerSettings:
    def test_defaults(self):
        settings = CosignerSettings()
        assert settings.tx_service_enabled is True
        assert settings.get_tx_service_url(11155111).startswith("https://")
        assert settings.get_tx_service_url(31337) is None
        assert settings.get_tx_service_url(None) is None

    def test_trailing_slashes_stripped(self):
        settings = CosignerSettings(tx_service_urls={5: "https://service.test/"})
        assert settings.get_tx_service_url(5) == "https://service.test"

    def test_retries_validated(self):
        with pytest.raises(ValidationError):
            CosignerSettings(service_max_retries=0)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("COSIGNER_TX_SERVICE_ENABLED", "false")
        monkeypatch.setenv("COSIGNER_SERVICE_TIMEOUT_SECONDS", "5")
        settings = CosignerSettings()
        assert settings.tx_service_enabled is False
        assert settings.service_timeout_seconds == 5.0

    def test_addresses_masked_in_prod(self):
        assert CosignerSettings(environment="prod").logging_config.mask_addresses is True
        assert CosignerSettings(environment="dev").logging_config.mask_addresses is False


class TestRemoteServiceSupport:
    def test_supported_chain(self):
        assert CosignerSettings().remote_service_supports_chain(11155111) is True

    def test_unsupported_chain(self):
        assert CosignerSettings().remote_service_supports_chain(31337) is False

    def test_local_rpc_forces_local(self):
        settings = CosignerSettings()
        assert settings.remote_service_supports_chain(1, "http://127.0.0.1:8545") is False
        assert settings.remote_service_supports_chain(1, "https://rpc.example.org") is True

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("http://localhost:8545", True),
            ("http://127.0.0.1:8545", True),
            ("http://0.0.0.0:8545", True),
            ("https://eth-sepolia.example.org", False),
        ],
    )
    def test_is_local_rpc_url(self, url, expected):
        assert is_local_rpc_url(url) is expected
