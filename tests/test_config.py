import json

import pytest

from config import (
    load_config, save_config, update_config_with_defaults, apply_env_overrides, validate_config,
    get_chain_config, get_configured_chain_ids, get_nfpm_deployment_block
)
from constants import DEFAULT_CONFIG, NFPM_DEPLOYMENT_BLOCKS
from errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv("ETHERSCAN_API_KEY", raising=False)
    monkeypatch.delenv("RPC_URL_ETHEREUM", raising=False)


def valid_config():
    return {
        "etherscan": {"api_key": "key"},
        "chains": {"1": {"rpc_url": "http://localhost:8545", "finality": {"type": "blockTag"}}},
    }


def test_missing_file_creates_defaults(tmp_path):
    path = tmp_path / "config.json"
    assert load_config(str(path)) is None
    with open(path) as f:
        assert json.load(f) == DEFAULT_CONFIG


def test_missing_keys_are_filled_in(tmp_path):
    path = tmp_path / "config.json"
    save_config({"db_path": "custom.db", "refresh": {"cache_seconds": 30}}, str(path))

    config = load_config(str(path))
    assert config["db_path"] == "custom.db"
    assert config["refresh"]["cache_seconds"] == 30
    assert config["refresh"]["max_workers"] == DEFAULT_CONFIG["refresh"]["max_workers"]
    with open(path) as f:
        assert "etherscan" in json.load(f)


def test_defaults_report_no_change_for_complete_config():
    config = json.loads(json.dumps(DEFAULT_CONFIG))
    assert update_config_with_defaults(config) is False


def test_invalid_json_returns_none(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_config(str(path)) is None


def test_environment_overrides():
    config = apply_env_overrides({}, {"ETHERSCAN_API_KEY": "env-key", "RPC_URL_BASE": "http://base"})
    assert config["etherscan"]["api_key"] == "env-key"
    assert config["chains"]["8453"]["rpc_url"] == "http://base"
    assert config["chains"]["8453"]["finality"] == {"type": "blockTag"}


def test_validate_config():
    assert validate_config(valid_config())

    config = valid_config()
    config["etherscan"]["api_key"] = ""
    assert not validate_config(config)

    config = valid_config()
    config["chains"]["1"]["rpc_url"] = ""
    assert not validate_config(config)

    config = valid_config()
    config["chains"]["1"]["finality"] = {"type": "blockHeight", "min_block_height": 0}
    assert not validate_config(config)

    config["chains"]["1"]["finality"]["min_block_height"] = 64
    assert validate_config(config)


def test_configured_chain_ids_skip_unknown_chains():
    config = valid_config()
    config["chains"]["999"] = {"rpc_url": "http://unknown"}
    config["chains"]["10"] = {"rpc_url": "http://optimism"}
    assert get_configured_chain_ids(config) == [1, 10]


def test_get_chain_config():
    assert get_chain_config(valid_config(), 1)["rpc_url"] == "http://localhost:8545"
    with pytest.raises(ConfigurationError):
        get_chain_config(valid_config(), 8453)
    with pytest.raises(ConfigurationError):
        get_chain_config(valid_config(), 999)


def test_deployment_blocks():
    assert get_nfpm_deployment_block(1) == NFPM_DEPLOYMENT_BLOCKS[1]
    with pytest.raises(ConfigurationError):
        get_nfpm_deployment_block(999)
