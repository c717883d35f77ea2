#!/usr/bin/env python3
"""
Constants Module for LP Ledger Sync
Contains ABIs, chain tables, fixed-point radixes and the default configuration

Version: 2.0.0
Developer: 8roku8.hl
"""

# Version and metadata
VERSION = "2.0.0"
DEVELOPER = "8roku8.hl"
CONFIG_FILE = "lp_ledger_config.json"
CONFIG_FILE_ENV = "LP_LEDGER_CONFIG"

# Fixed-point radixes used by the pool contracts
Q96 = 1 << 96
Q128 = 1 << 128
Q192 = 1 << 192
UINT256_MODULUS = 1 << 256
MAX_UINT256 = UINT256_MODULUS - 1

MIN_TICK = -887272
MAX_TICK = 887272

# Raw event types as emitted by the NonfungiblePositionManager
INCREASE_LIQUIDITY = "INCREASE_LIQUIDITY"
DECREASE_LIQUIDITY = "DECREASE_LIQUIDITY"
COLLECT = "COLLECT"
RAW_EVENT_TYPES = (INCREASE_LIQUIDITY, DECREASE_LIQUIDITY, COLLECT)

# Ledger event types (what gets persisted)
INCREASE_POSITION = "INCREASE_POSITION"
DECREASE_POSITION = "DECREASE_POSITION"
LEDGER_EVENT_TYPES = {
    INCREASE_LIQUIDITY: INCREASE_POSITION,
    DECREASE_LIQUIDITY: DECREASE_POSITION,
    COLLECT: COLLECT,
}

# keccak256 topics of IncreaseLiquidity / DecreaseLiquidity / Collect
EVENT_SIGNATURES = {
    INCREASE_LIQUIDITY: "0x3067048beee31b25b2f1681f88dac838c8bba36af25bfb2b7cf7473a5847e35f",
    DECREASE_LIQUIDITY: "0x26f6a048ee9138f2c0ce266f322cb99228e8d619ae2bff30c67f8dcf9d2377b4",
    COLLECT: "0x40d0efd1a53d60ecbf40971b9daf7dc90178c3aadc7aab1765632738fa8b8f01",
}

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Supported chains
CHAIN_NAMES = {
    1: "ETHEREUM",
    42161: "ARBITRUM",
    8453: "BASE",
    56: "BSC",
    137: "POLYGON",
    10: "OPTIMISM",
}

NFPM_ADDRESSES = {
    1: "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
    42161: "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
    8453: "0x03a520b32C04BF3bEEf7BEb72E919cf822Ed34f1",
    56: "0x7b8A01B39D58278b5DE7e48c8449c9f4F5170613",
    137: "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
    10: "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
}

# Block in which each chain's NFPM was deployed (full resyncs start here)
NFPM_DEPLOYMENT_BLOCKS = {
    1: 12369621,
    42161: 165,
    8453: 1371680,
    56: 26324014,
    137: 22757547,
    10: 4294,
}

# Refresh timings (seconds)
CACHE_SECONDS = 15
NEW_POSITION_SECONDS = 5

# Etherscan v2 (multichain) API
ETHERSCAN_API_URL = "https://api.etherscan.io/v2/api"
ETHERSCAN_MIN_SPACING_MS = 220
ETHERSCAN_MAX_RETRIES = 6
ETHERSCAN_BASE_DELAY_MS = 800
ETHERSCAN_MAX_DELAY_MS = 8000
ETHERSCAN_USER_AGENT = f"lp-ledger-sync/{VERSION}"

# APR
SECONDS_PER_YEAR = 31_557_600
BASIS_POINTS_MULTIPLIER = 10_000

# Default configuration
DEFAULT_CONFIG = {
    "version": VERSION,
    "db_path": "lp_ledger.db",
    "rpc_rate_limit_per_minute": 90,
    "etherscan": {
        "api_key": "",
        "min_spacing_ms": ETHERSCAN_MIN_SPACING_MS,
        "max_retries": ETHERSCAN_MAX_RETRIES,
    },
    "refresh": {
        "cache_seconds": CACHE_SECONDS,
        "new_position_seconds": NEW_POSITION_SECONDS,
        "max_workers": 4,
    },
    "display_settings": {
        "debug_mode": False,
    },
    "chains": {
        str(chain_id): {
            "rpc_url": "",
            "finality": {"type": "blockTag"},
        }
        for chain_id in CHAIN_NAMES
    },
}

# Uniswap V3 Pool ABI (price, fee growth and tick reads)
POOL_ABI = [
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "observationIndex", "type": "uint16"},
            {"name": "observationCardinality", "type": "uint16"},
            {"name": "observationCardinalityNext", "type": "uint16"},
            {"name": "feeProtocol", "type": "uint8"},
            {"name": "unlocked", "type": "bool"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "token1",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "fee",
        "outputs": [{"name": "", "type": "uint24"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "feeGrowthGlobal0X128",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "feeGrowthGlobal1X128",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "tick", "type": "int24"}],
        "name": "ticks",
        "outputs": [
            {"name": "liquidityGross", "type": "uint128"},
            {"name": "liquidityNet", "type": "int128"},
            {"name": "feeGrowthOutside0X128", "type": "uint256"},
            {"name": "feeGrowthOutside1X128", "type": "uint256"},
            {"name": "tickCumulativeOutside", "type": "int56"},
            {"name": "secondsPerLiquidityOutsideX128", "type": "uint160"},
            {"name": "secondsOutside", "type": "uint32"},
            {"name": "initialized", "type": "bool"}
        ],
        "stateMutability": "view",
        "type": "function"
    }
]

# ERC20 Token ABI for decimals and symbols
TOKEN_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    }
]

# NonfungiblePositionManager ABI (positions + ownerOf + factory)
POSITION_MANAGER_ABI = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "positions",
        "outputs": [
            {"name": "nonce", "type": "uint96"},
            {"name": "operator", "type": "address"},
            {"name": "token0", "type": "address"},
            {"name": "token1", "type": "address"},
            {"name": "fee", "type": "uint24"},
            {"name": "tickLower", "type": "int24"},
            {"name": "tickUpper", "type": "int24"},
            {"name": "liquidity", "type": "uint128"},
            {"name": "feeGrowthInside0LastX128", "type": "uint256"},
            {"name": "feeGrowthInside1LastX128", "type": "uint256"},
            {"name": "tokensOwed0", "type": "uint128"},
            {"name": "tokensOwed1", "type": "uint128"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "factory",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    }
]

# Factory ABI to resolve the pool of a position
FACTORY_ABI = [
    {
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
            {"name": "fee", "type": "uint24"}
        ],
        "name": "getPool",
        "outputs": [{"name": "pool", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    }
]
