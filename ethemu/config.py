"""
Configuration module for ethemu.
Single source of truth for harness constants & defaults.

Run-wide experiment parameters (period, tx intervals, roster) are not kept
here: they live in the RunDescriptor persisted by `ethemu gen`.
"""
import typing as t

# Run descriptor
CONFIG_JSON: str = "config.json"
NODE_DIR_FORMAT: str = "emu{:06d}"
GENESIS_JSON: str = "genesis.json"

# Generation defaults
DEFAULT_PERIOD: int = 12          # seconds between sealing attempts
DEFAULT_MIN_TX: int = 1           # tx per period (lower bound)
DEFAULT_MAX_TX: int = 10          # tx per period (upper bound)
DEFAULT_LATENCY: int = 0          # ms per hop, simulation backend only
DEFAULT_BANDWIDTH: int = 0
DENSITY_BLEND: float = 0.25       # weight of the uniform baseline in p(i,j)
PEERING_MAX_ROUNDS: int = 1000    # passes per degree-policy attempt
PEERING_MAX_ATTEMPTS: int = 20    # fresh restarts before giving up

# Accounts
KEYSTORE_DIR: str = "keystore"
KEYSTORE_PASSWORD: str = ""
KEYSTORE_SCRYPT_N: int = 1 << 12  # geth LightScryptN

# Workload
TX_VALUE: int = 100_000           # wei per synthetic transfer
TX_GAS: int = 21_000
DEFAULT_GAS_PRICE: int = 1_000_000_000  # 1 Gwei
SEAL_REPORT_DELAY: float = 1.0    # settle time before reporting a seal
DEFAULT_SEAL_JITTER: float = 0.0

# Benchmark
BENCH_TARGET_TXS: int = 5050
BENCH_TARGET_HEIGHT: int = 110
POLL_INTERVAL: float = 0.05       # minimum spacing of barrier re-checks
CONVERGENCE_TIMEOUT: float = 600.0

# Geth backend
GETH_BINARY: str = "geth"
GETH_HOST: str = "127.0.0.1"
GETH_P2P_BASE_PORT: int = 30303
GETH_HTTP_BASE_PORT: int = 8545
GETH_HTTP_API: str = "eth,net,web3,admin,miner,txpool"
GETH_VERBOSITY: int = 3
GETH_START_TIMEOUT: float = 30.0
GETH_SEAL_TIMEOUT: float = 120.0
HEAD_POLL_INTERVAL: float = 0.5
HTTP_POOL_SIZE: int = 100
HTTP_RETRIES: int = 5
HTTP_BACKOFF_FACTOR: float = 0.5
HTTP_TIMEOUT: int = 30

# Genesis
CHAIN_ID: int = 12345
GENESIS_GAS_LIMIT: int = 4_700_000
GENESIS_DIFFICULTY: int = 524_288
GENESIS_BALANCE: int = 1 << (256 - 7)  # 2^256 / 128, room for many pre-funds


def node_name(identity: int) -> str:
    """Deterministic directory / display name of a node."""
    return NODE_DIR_FORMAT.format(identity)


def genesis_config() -> t.Dict[str, t.Any]:
    """
    Chain config section of the genesis document.

    All forks up to Istanbul active from block 0, ethash sealing.
    """
    return {
        "chainId": CHAIN_ID,
        "homesteadBlock": 0,
        "eip150Block": 0,
        "eip155Block": 0,
        "eip158Block": 0,
        "byzantiumBlock": 0,
        "constantinopleBlock": 0,
        "petersburgBlock": 0,
        "istanbulBlock": 0,
        "ethash": {},
    }
