"""Tests for bridge and transaction configuration."""

import pytest

from vbus_bridge.config import BridgeConfig, TransactionConfig, load_config


def test_defaults():
    config = BridgeConfig()
    assert config.port == 7053
    assert config.channel_count == 1
    assert TransactionConfig().self_address == 0x0020


def test_reconnect_delay_backoff_is_capped():
    config = BridgeConfig(reconnect_initial_delay=1.0, backoff_multiplier=2.0, reconnect_max_delay=5.0)
    assert [config.reconnect_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_from_dict_rejects_unknown_options():
    with pytest.raises(ValueError, match="bogus"):
        BridgeConfig.from_dict({"bogus": 1})


def test_invalid_values_rejected():
    with pytest.raises(ValueError):
        BridgeConfig(channel_count=0)
    with pytest.raises(ValueError):
        TransactionConfig(timeout=0)


def test_load_config(tmp_path):
    path = tmp_path / "bridge.toml"
    path.write_text(
        '[bridge]\nport = 7054\npassword = "secret"\nchannel_count = 2\n'
        "[transaction]\ntimeout = 1.5\nmax_retries = 4\n"
    )
    bridge, transaction = load_config(path)
    assert bridge.port == 7054
    assert bridge.password == "secret"
    assert bridge.channel_count == 2
    assert transaction.timeout == 1.5
    assert transaction.max_retries == 4


def test_load_config_missing_sections(tmp_path):
    path = tmp_path / "empty.toml"
    path.write_text("")
    bridge, transaction = load_config(path)
    assert bridge == BridgeConfig()
    assert transaction == TransactionConfig()
