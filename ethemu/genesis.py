"""
Genesis initialisation for ethemu (`ethemu init`).
Writes one genesis document and materialises it in every node's datadir.
"""
import json
import os
import subprocess
import time
import typing as t

from .config import (
    GENESIS_BALANCE,
    GENESIS_DIFFICULTY,
    GENESIS_GAS_LIMIT,
    GENESIS_JSON,
    GETH_BINARY,
    genesis_config,
)
from .errors import StartupError
from .models import RunDescriptor


def build_genesis(descriptor: RunDescriptor, timestamp: t.Optional[int] = None) -> t.Dict[str, t.Any]:
    """
    Genesis document pre-funding every node account.
    """
    return {
        "config": genesis_config(),
        "timestamp": hex(int(time.time()) if timestamp is None else timestamp),
        "extraData": "0x" + "00" * 32,
        "gasLimit": hex(GENESIS_GAS_LIMIT),
        "difficulty": hex(GENESIS_DIFFICULTY),
        "alloc": {
            address: {"balance": hex(GENESIS_BALANCE)}
            for address in sorted(descriptor.nodes)
        },
    }


def write_genesis(data_dir: str, descriptor: RunDescriptor) -> str:
    path = os.path.join(data_dir, GENESIS_JSON)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(build_genesis(descriptor), f, indent=2)
    return path


def init_genesis(data_dir: str, descriptor: RunDescriptor, binary: str = GETH_BINARY) -> str:
    """
    Run `geth init` for every node of the roster.

    Returns:
        Path of the shared genesis document.

    Raises:
        StartupError: geth is missing or refuses the genesis.
    """
    genesis_path = write_genesis(data_dir, descriptor)
    for node in descriptor.ordered():
        node_dir = os.path.join(data_dir, node.name)
        cmd = [binary, f"--datadir={node_dir}", "init", genesis_path]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise StartupError(f"Cannot run {binary}: {e}") from e
        if result.returncode != 0:
            raise StartupError(f"Genesis init failed for {node.name}:\n{result.stdout}{result.stderr}")
        print(f"[Init] Successfully wrote genesis state for {node.name}")
    return genesis_path
