"""
Test settings parsing and startup validation.
"""

import pytest
from solders.pubkey import Pubkey

from compounder.core.config import (
    DatabaseConfig,
    Settings,
    load_settings,
    parse_address_list,
    validate_startup,
)
from compounder.core.exceptions import ConfigurationError


def test_parse_address_list_formats():
    assert parse_address_list('["a", "b"]') == ["a", "b"]
    assert parse_address_list("a, b,,c") == ["a", "b", "c"]
    assert parse_address_list("") == []
    assert parse_address_list(None) == []


def test_parse_address_list_malformed():
    assert parse_address_list("[not json") is None
    assert parse_address_list("[1, 2]") is None


def test_malformed_vault_list_yields_no_vaults():
    config = load_settings(vault_addresses="[oops")
    assert config.vault_address_list == []
    assert config.vault_addresses_malformed


def test_defaults():
    config = load_settings()
    assert config.compound_interval_hours == 4
    assert config.compound_interval_seconds == 4 * 3600
    assert config.failure_cooldown_seconds == config.compound_interval_seconds
    assert config.compound_max_attempts == 3
    assert not config.compounding_enabled


def test_failure_cooldown_override():
    config = load_settings(compound_failure_cooldown_minutes=15)
    assert config.failure_cooldown_seconds == 900


def test_quote_feed_defaults_to_first_feed():
    config = load_settings(price_feed_ids='["0xaaa", "0xbbb"]')
    assert config.price_feed_id_list == ["0xaaa", "0xbbb"]
    assert config.quote_feed == "0xaaa"

    config = load_settings(price_feed_ids='["0xaaa", "0xbbb"]', quote_feed_id="0xbbb")
    assert config.quote_feed == "0xbbb"


def test_blank_private_key_disables_compounding():
    config = load_settings(wallet_private_key="   ")
    assert config.wallet_private_key is None
    assert not config.compounding_enabled


@pytest.mark.parametrize("overrides", [
    {"solana_rpc_url": "ws://localhost:8900"},
    {"pyth_hermes_url": "hermes.pyth.network"},
    {"environment": "qa"},
    {"compound_interval_hours": 0},
    {"compound_attempt_timeout_seconds": 0},
    {"compound_failure_cooldown_minutes": 1},
])
def test_invalid_settings_raise_configuration_error(overrides):
    with pytest.raises(ConfigurationError) as exc_info:
        load_settings(**overrides)
    assert exc_info.value.code == "CONFIGURATION_ERROR"
    assert exc_info.value.details["errors"]


def test_endpoint_trailing_slash_is_stripped():
    config = load_settings(solana_rpc_url="https://rpc.example.com/")
    assert config.solana_rpc_url == "https://rpc.example.com"


def test_validate_startup_accepts_valid_addresses():
    addresses = [str(Pubkey.new_unique()), str(Pubkey.new_unique())]
    config = load_settings(vault_addresses=str(addresses).replace("'", '"'))
    validate_startup(config)
    assert config.vault_address_list == addresses


def test_validate_startup_rejects_invalid_address():
    config = load_settings(vault_addresses=f'["{Pubkey.new_unique()}", "not-an-address"]')
    with pytest.raises(ConfigurationError) as exc_info:
        validate_startup(config)
    assert exc_info.value.details["invalid_addresses"] == ["not-an-address"]


def test_validate_startup_rejects_invalid_program_id():
    config = load_settings(vault_program_id="nope")
    with pytest.raises(ConfigurationError):
        validate_startup(config)


def test_database_url_driver():
    assert DatabaseConfig.get_database_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert DatabaseConfig.get_database_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


def test_engine_config_skips_pool_size_for_sqlite():
    config = Settings(database_url="sqlite+aiosqlite:///x.db")
    assert "pool_size" not in DatabaseConfig.get_engine_config(config)
