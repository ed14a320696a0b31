"""
Identity management for ethemu.
Keystore-backed node accounts & local nonce tracking.
"""
import glob
import json
import os
import threading
import typing as t
from collections import defaultdict
from datetime import datetime, timezone

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .config import KEYSTORE_PASSWORD, KEYSTORE_SCRYPT_N
from .errors import StartupError


def _keyfile_name(address: str) -> str:
    """geth naming: UTC--<timestamp>--<lowercase hex address>."""
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.%f000Z")
    return f"UTC--{stamp}--{address[2:].lower()}"


def create_account(keystore_dir: str, password: str = KEYSTORE_PASSWORD) -> str:
    """
    Generate a fresh key and store it as an encrypted keystore file.

    Args:
        keystore_dir: Directory the keyfile is written to (created if missing).
        password: Keystore password, empty by default.

    Returns:
        Checksummed account address.
    """
    os.makedirs(keystore_dir, exist_ok=True)
    account = Account.create()
    keyfile = Account.encrypt(account.key, password, iterations=KEYSTORE_SCRYPT_N)
    path = os.path.join(keystore_dir, _keyfile_name(account.address))
    with open(path, "w", encoding="utf-8") as f:
        json.dump(keyfile, f)
    os.chmod(path, 0o600)
    return account.address


def load_account(keystore_dir: str, address: str, password: str = KEYSTORE_PASSWORD) -> LocalAccount:
    """
    Decrypt the keyfile of `address` stored in keystore_dir.

    Other keyfiles in the directory (e.g. left over from an aborted
    generation) are ignored.

    Raises:
        StartupError: no keyfile for address, or it cannot be decrypted.
    """
    pattern = os.path.join(keystore_dir, f"UTC--*--{address[2:].lower()}")
    keyfiles = sorted(glob.glob(pattern))
    if not keyfiles:
        raise StartupError(f"No keystore file for {address} in {keystore_dir}")
    path = keyfiles[-1]
    try:
        with open(path, "r", encoding="utf-8") as f:
            keyfile = json.load(f)
        key = Account.decrypt(keyfile, password)
    except (OSError, ValueError) as e:
        raise StartupError(f"Cannot unlock keystore {path}: {e}") from e
    account = Account.from_key(key)
    if account.address.lower() != address.lower():
        raise StartupError(f"Keystore {path} holds {account.address}, expected {address}")
    return account


class NonceManager:
    """
    Local nonce counter per address (no RPC round-trips).
    """

    def __init__(self) -> None:
        self._nonces: t.Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def get_and_increment(self, address: str) -> int:
        """Return the current nonce for address, then increment it."""
        with self._lock:
            nonce = self._nonces[address]
            self._nonces[address] = nonce + 1
            return nonce

    def peek(self, address: str) -> int:
        with self._lock:
            return self._nonces[address]

    def reset(self, address: str, nonce: int = 0) -> None:
        """Resynchronise after a rejected submission."""
        with self._lock:
            self._nonces[address] = nonce
