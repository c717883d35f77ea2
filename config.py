#!/usr/bin/env python3
"""
Configuration Management Module for LP Ledger Sync
Handles loading, saving and validation of the JSON configuration file,
plus environment overrides for API keys and RPC endpoints

Version: 2.0.0
Developer: 8roku8.hl
"""

import copy
import json
import os

from constants import (
    DEFAULT_CONFIG, CONFIG_FILE, CONFIG_FILE_ENV, CHAIN_NAMES,
    NFPM_ADDRESSES, NFPM_DEPLOYMENT_BLOCKS
)
from errors import ConfigurationError
from logger import console


def get_config_path():
    """Config file path, overridable through the environment"""
    return os.environ.get(CONFIG_FILE_ENV, CONFIG_FILE)


def load_config(path=None):
    """Load configuration from JSON file, create default if doesn't exist"""
    path = path or get_config_path()
    if not os.path.exists(path):
        console.print("⚙️  Configuration file not found. Creating default config...")
        save_config(copy.deepcopy(DEFAULT_CONFIG), path)
        console.print(f"✅ Created {path}")
        console.print("📝 Please add RPC URLs and an Etherscan API key, then run again.")
        return None

    try:
        with open(path, 'r') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        console.print(f"[red]❌ Error reading config file: {e}[/red]")
        return None
    except OSError as e:
        console.print(f"[red]❌ Error loading config: {e}[/red]")
        return None

    # Update config with any missing default values
    if update_config_with_defaults(config):
        save_config(config, path)
        console.print("📝 Updated configuration with new settings")

    apply_env_overrides(config)
    return config


def save_config(config, path=None):
    """Save configuration to JSON file"""
    path = path or get_config_path()
    with open(path, 'w') as f:
        json.dump(config, f, indent=4)


def update_config_with_defaults(config):
    """Update configuration with any missing default values"""
    updated = False

    def update_nested_dict(target, source):
        nonlocal updated
        for key, value in source.items():
            if key not in target:
                target[key] = copy.deepcopy(value)
                updated = True
            elif isinstance(value, dict) and isinstance(target[key], dict):
                update_nested_dict(target[key], value)

    update_nested_dict(config, DEFAULT_CONFIG)
    return updated


def apply_env_overrides(config, environ=None):
    """ETHERSCAN_API_KEY and RPC_URL_<CHAIN> win over file values"""
    environ = os.environ if environ is None else environ

    api_key = environ.get("ETHERSCAN_API_KEY")
    if api_key:
        config.setdefault("etherscan", {})["api_key"] = api_key

    chains = config.setdefault("chains", {})
    for chain_id, chain_name in CHAIN_NAMES.items():
        rpc_url = environ.get(f"RPC_URL_{chain_name}")
        if rpc_url:
            chains.setdefault(str(chain_id), {"finality": {"type": "blockTag"}})["rpc_url"] = rpc_url
    return config


def validate_config(config):
    """Validate configuration and return True if valid"""
    config_path = get_config_path()
    if not config.get("etherscan", {}).get("api_key"):
        console.print(f"[red]❌ Etherscan API key not set. Please edit {config_path} or set ETHERSCAN_API_KEY[/red]")
        return False

    configured = get_configured_chain_ids(config)
    if not configured:
        console.print(f"[red]❌ No chain has an RPC URL. Please edit {config_path}[/red]")
        console.print("💡 Set 'rpc_url' under 'chains' or export RPC_URL_<CHAIN> (e.g. RPC_URL_ETHEREUM)")
        return False

    for chain_id in configured:
        finality = config["chains"][str(chain_id)].get("finality", {})
        if finality.get("type") not in ("blockTag", "blockHeight"):
            console.print(f"[red]❌ Chain {chain_id}: finality type must be 'blockTag' or 'blockHeight'[/red]")
            return False
        if finality.get("type") == "blockHeight" and int(finality.get("min_block_height", 0)) <= 0:
            console.print(f"[red]❌ Chain {chain_id}: blockHeight finality needs a positive min_block_height[/red]")
            return False
    return True


def get_configured_chain_ids(config):
    """Chain ids that are supported and have an RPC URL"""
    chain_ids = []
    for key, chain_config in config.get("chains", {}).items():
        try:
            chain_id = int(key)
        except ValueError:
            continue
        if chain_id in NFPM_ADDRESSES and chain_config.get("rpc_url"):
            chain_ids.append(chain_id)
    return sorted(chain_ids)


def get_chain_config(config, chain_id):
    """Per-chain settings; raises ConfigurationError for unknown or unconfigured chains"""
    assert_supported_chain(chain_id)
    chain_config = config.get("chains", {}).get(str(chain_id))
    if not chain_config or not chain_config.get("rpc_url"):
        raise ConfigurationError(f"No RPC URL configured for chain {chain_id} ({CHAIN_NAMES[chain_id]})")
    return chain_config


def assert_supported_chain(chain_id):
    if chain_id not in NFPM_ADDRESSES:
        raise ConfigurationError(f"Unsupported chain id {chain_id}")


def get_nfpm_address(chain_id):
    assert_supported_chain(chain_id)
    return NFPM_ADDRESSES[chain_id]


def get_nfpm_deployment_block(chain_id):
    """Block where the chain's position manager was deployed"""
    block = NFPM_DEPLOYMENT_BLOCKS.get(chain_id)
    if block is None:
        raise ConfigurationError(f"No NFPM deployment block known for chain {chain_id}")
    return block
