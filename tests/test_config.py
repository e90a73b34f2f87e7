import json
from decimal import Decimal

import pytest

from raffle.lottery.models import RaffleConfig, VrfSettings
from raffle.utils.config import DEFAULT_KEY_HASH, build_raffle_config, get_config_value, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith(("RAFFLE_", "VRF_", "SCHEDULER_", "SERVER_", "PAYOUT_")):
            monkeypatch.delenv(key)


def test_load_config_file_and_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "raffle.conf"
    path.write_text(json.dumps({"raffle": {"entrance_fee": "0.5", "interval": 60}, "vrf": {"subscription_id": 9}}))
    monkeypatch.setenv("RAFFLE_INTERVAL", "120")
    monkeypatch.setenv("VRF_KEY_HASH", "0xabc")

    config = load_config(str(path))

    assert config["raffle"]["entrance_fee"] == "0.5"
    assert config["raffle"]["interval"] == "120"
    assert config["vrf"] == {"subscription_id": 9, "key_hash": "0xabc"}


def test_load_config_missing_file_uses_env_only(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_PORT", "7000")
    config = load_config(str(tmp_path / "missing.conf"))
    assert config == {"server": {"port": "7000"}}


def test_config_file_env_var_is_not_a_setting(tmp_path, monkeypatch):
    path = tmp_path / "other.conf"
    path.write_text("{}")
    monkeypatch.setenv("RAFFLE_CONFIG_FILE", str(path))
    assert load_config() == {}


def test_build_raffle_config_defaults():
    config = build_raffle_config({})
    assert config == RaffleConfig(
        entrance_fee=Decimal("0.01"),
        interval=30,
        vrf=VrfSettings(key_hash=DEFAULT_KEY_HASH, subscription_id=0),
    )


def test_build_raffle_config_parses_strings():
    config = build_raffle_config(
        {
            "raffle": {"entrance_fee": "1.0", "interval": "30"},
            "vrf": {"subscription_id": "5", "callback_gas_limit": "100000", "request_confirmations": "1"},
        }
    )
    assert config.entrance_fee == Decimal("1.0")
    assert config.interval == 30
    assert config.vrf.subscription_id == 5
    assert config.vrf.callback_gas_limit == 100000
    assert config.vrf.request_confirmations == 1


def test_build_raffle_config_rejects_negative_fee():
    with pytest.raises(ValueError):
        build_raffle_config({"raffle": {"entrance_fee": "-1"}})


def test_raffle_config_is_immutable():
    config = build_raffle_config({})
    with pytest.raises(AttributeError):
        config.interval = 1


def test_get_config_value():
    config = {"a": {"b": {"c": 1}}}
    assert get_config_value(config, "a.b.c") == 1
    assert get_config_value(config, "a.x", "d") == "d"
    assert get_config_value(config, "a.b.c.d") is None
