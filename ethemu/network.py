"""
Process-backed network for ethemu.
geth lifecycle per node & Web3 connection management.
"""
import os
import socket
import subprocess
import threading
import time
import typing as t

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.providers import HTTPProvider

from .config import (
    CHAIN_ID,
    DEFAULT_GAS_PRICE,
    GETH_BINARY,
    GETH_HOST,
    GETH_HTTP_API,
    GETH_HTTP_BASE_PORT,
    GETH_P2P_BASE_PORT,
    GETH_SEAL_TIMEOUT,
    GETH_START_TIMEOUT,
    GETH_VERBOSITY,
    HEAD_POLL_INTERVAL,
    HTTP_BACKOFF_FACTOR,
    HTTP_POOL_SIZE,
    HTTP_RETRIES,
    HTTP_TIMEOUT,
    KEYSTORE_DIR,
    KEYSTORE_PASSWORD,
    TX_GAS,
)
from .errors import StartupError, TransientWorkloadError
from .identity import NonceManager, load_account
from .models import NodeDescriptor
from .node import NodeHandle

# Failures of a single RPC round-trip
RPC_ERRORS = (ValueError, Web3Exception, requests.RequestException)


def geth_ports(identity: int) -> t.Tuple[int, int]:
    """(p2p port, http port) of the node with the given identity."""
    return GETH_P2P_BASE_PORT + identity, GETH_HTTP_BASE_PORT + identity


def is_port_available(port: int, host: str = GETH_HOST) -> bool:
    """
    Check if a TCP port is available on localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


class ConnectionManager:
    """
    Manages Web3 connections over one pooled, retrying HTTP session.
    """

    def __init__(self) -> None:
        self._connections: t.Dict[str, Web3] = {}
        self._lock = threading.Lock()
        self._session = self._create_session()

    def _create_session(self) -> requests.Session:
        """
        Creates an HTTP session sized for one connection per node plus headroom.
        """
        session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=HTTP_POOL_SIZE,
            pool_maxsize=HTTP_POOL_SIZE,
            max_retries=Retry(
                total=HTTP_RETRIES,
                backoff_factor=HTTP_BACKOFF_FACTOR,
                status_forcelist=[500, 502, 503, 504],
            ),
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def get_web3(self, url: str) -> Web3:
        """
        Returns a cached Web3 instance for url, sharing the session.
        """
        with self._lock:
            if url not in self._connections:
                provider = HTTPProvider(
                    url,
                    session=self._session,
                    request_kwargs={"timeout": HTTP_TIMEOUT},
                )
                self._connections[url] = Web3(provider)
            return self._connections[url]

    def close(self) -> None:
        with self._lock:
            self._connections.clear()
        self._session.close()


class GethNode(NodeHandle):
    """
    One geth process scoped to <data_dir>/emuNNNNNN.

    Transactions are signed locally with the node's keystore account and
    nonces are counted locally, so submission is a single RPC call.
    """

    def __init__(
        self,
        descriptor: NodeDescriptor,
        data_dir: str,
        connections: ConnectionManager,
        binary: str = GETH_BINARY,
        password: str = KEYSTORE_PASSWORD,
        log_dir: t.Optional[str] = None,
    ) -> None:
        super().__init__(descriptor)
        self.node_dir = os.path.join(data_dir, descriptor.name)
        self.connections = connections
        self.binary = binary
        self.password = password
        self.log_dir = log_dir or os.path.join(data_dir, "logs")
        self.p2p_port, self.http_port = geth_ports(descriptor.identity)
        self.url = f"http://{GETH_HOST}:{self.http_port}"
        self.nonces = NonceManager()
        self._account = None
        self._proc: t.Optional[subprocess.Popen] = None
        self._log_file = None
        self._web3: t.Optional[Web3] = None
        self._enode: t.Optional[str] = None
        self._head: t.Tuple[int, str, str] = (0, "", "")
        self._watch_stop = threading.Event()
        self._watcher: t.Optional[threading.Thread] = None

    def command(self) -> t.List[str]:
        return [
            self.binary,
            f"--datadir={self.node_dir}",
            f"--port={self.p2p_port}",
            f"--networkid={CHAIN_ID}",
            "--nodiscover",
            "--syncmode=full",
            "--ipcdisable",
            "--http",
            f"--http.addr={GETH_HOST}",
            f"--http.port={self.http_port}",
            f"--http.api={GETH_HTTP_API}",
            f"--miner.etherbase={self.address}",
            f"--verbosity={GETH_VERBOSITY}",
        ]

    # ---------- Lifecycle ----------
    def start(self) -> None:
        """
        Launch geth and block until its HTTP-RPC answers.
        """
        for port in (self.p2p_port, self.http_port):
            if not is_port_available(port):
                raise StartupError(f"Port {port} for {self.name} is already in use.")
        self._account = load_account(os.path.join(self.node_dir, KEYSTORE_DIR), self.address, self.password)

        os.makedirs(self.log_dir, exist_ok=True)
        log_path = os.path.join(self.log_dir, f"geth_{self.name}.log")
        self._log_file = open(log_path, "w", encoding="utf-8")
        cmd = self.command()
        print(f"[Orchestrator] Starting {self.name}: {' '.join(cmd)}")
        try:
            self._proc = subprocess.Popen(cmd, stdout=self._log_file, stderr=subprocess.STDOUT, text=True)
        except OSError as e:
            self._log_file.close()
            raise StartupError(f"Cannot launch {self.binary} for {self.name}: {e}") from e

        self._web3 = self.connections.get_web3(self.url)
        deadline = time.monotonic() + GETH_START_TIMEOUT
        while True:
            if self._proc.poll() is not None:
                self._log_file.close()
                with open(log_path, "r", encoding="utf-8") as f:
                    error_log = f.read()
                raise StartupError(f"{self.name} failed to start! Logs:\n{error_log}")
            try:
                if self._web3.is_connected():
                    break
            except RPC_ERRORS:
                pass
            if time.monotonic() > deadline:
                self.stop()
                raise StartupError(f"{self.name} not reachable at {self.url} after {GETH_START_TIMEOUT}s")
            time.sleep(0.5)

        try:
            self._enode = self._rpc("admin_nodeInfo")["enode"]
            self.nonces.reset(self.address, self._web3.eth.get_transaction_count(self.address, "pending"))
        except (RPC_ERRORS + (KeyError, TypeError)) as e:
            self.stop()
            raise StartupError(f"{self.name} answered but is unusable: {e}") from e

        self._watcher = threading.Thread(target=self._watch_heads, name=f"heads-{self.name}", daemon=True)
        self._watcher.start()
        print(f"[Orchestrator] Started {self.name} on p2p {self.p2p_port} / http {self.http_port} (PID: {self._proc.pid})")

    @property
    def endpoint(self) -> str:
        if self._enode is None:
            raise StartupError(f"{self.name} has not been started")
        return self._enode

    def stop(self) -> None:
        """Terminate geth gracefully, kill it if it lingers."""
        self._watch_stop.set()
        if self._proc is not None and self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()
            print(f"[Orchestrator] Stopped {self.name}")
        if self._log_file is not None and not self._log_file.closed:
            self._log_file.close()

    def wait(self, timeout: t.Optional[float] = None) -> bool:
        if self._proc is None:
            return True
        try:
            self._proc.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            return False

    # ---------- RPC helpers ----------
    def _rpc(self, method: str, params: t.Optional[list] = None) -> t.Any:
        """Raw JSON-RPC call for namespaces web3 does not wrap (admin/miner/txpool)."""
        response = self._web3.provider.make_request(method, params or [])
        if response.get("error"):
            raise ValueError(f"{method} failed on {self.name}: {response['error']}")
        return response.get("result")

    def _watch_heads(self) -> None:
        """Poll the head block and notify subscribers when it moves."""
        while not self._watch_stop.wait(HEAD_POLL_INTERVAL):
            try:
                block = self._web3.eth.get_block("latest")
            except RPC_ERRORS:
                continue
            head = (block["number"], Web3.to_hex(block["hash"]), block["miner"])
            if head != self._head:
                self._head = head
                self._notify()

    # ---------- Connectivity / roles ----------
    def add_peer(self, endpoint: str) -> None:
        try:
            accepted = self._rpc("admin_addPeer", [endpoint])
        except RPC_ERRORS as e:
            raise StartupError(f"{self.name} could not add peer {endpoint}: {e}") from e
        if not accepted:
            raise StartupError(f"{self.name} rejected peer {endpoint}")

    def enable_mining(self) -> None:
        try:
            self._rpc("miner_setEtherbase", [self.address])
            self._rpc("miner_setGasPrice", [hex(DEFAULT_GAS_PRICE)])
        except RPC_ERRORS as e:
            raise StartupError(f"Failed to enable mining on {self.name}: {e}") from e

    # ---------- Workload ----------
    def send_transaction(self, to: str, value: int) -> str:
        nonce = self.nonces.get_and_increment(self.address)
        tx = {
            "to": Web3.to_checksum_address(to),
            "value": value,
            "gas": TX_GAS,
            "gasPrice": DEFAULT_GAS_PRICE,
            "nonce": nonce,
            "chainId": CHAIN_ID,
        }
        signed = self._account.sign_transaction(tx)
        try:
            tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)
        except RPC_ERRORS as e:
            # Nonce was not consumed; resync from the node before the next attempt
            try:
                self.nonces.reset(self.address, self._web3.eth.get_transaction_count(self.address, "pending"))
            except RPC_ERRORS:
                self.nonces.reset(self.address, nonce)
            raise TransientWorkloadError(f"{self.name} rejected tx nonce {nonce}: {e}") from e
        return Web3.to_hex(tx_hash)

    def trigger_seal(self) -> None:
        """
        Mine exactly one block: start the miner, wait for the head to move, stop it.
        """
        try:
            start = self._web3.eth.block_number
            self._rpc("miner_start", [1])
            try:
                deadline = time.monotonic() + GETH_SEAL_TIMEOUT
                while self._web3.eth.block_number <= start:
                    if time.monotonic() > deadline:
                        raise TransientWorkloadError(f"{self.name} sealed nothing within {GETH_SEAL_TIMEOUT}s")
                    time.sleep(0.1)
            finally:
                self._rpc("miner_stop")
        except RPC_ERRORS as e:
            raise TransientWorkloadError(f"Seal on {self.name} failed: {e}") from e

    # ---------- Queries ----------
    def current_height(self) -> int:
        return self._web3.eth.block_number

    def head_info(self) -> t.Tuple[int, str, str]:
        return self._head

    def pending_contains(self, tx_hash: str) -> bool:
        try:
            tx = self._web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        return tx.get("blockNumber") is None

    def transaction_included(self, tx_hash: str) -> bool:
        try:
            self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return False
        return True

    def txpool_stats(self) -> t.Tuple[int, int]:
        status = self._rpc("txpool_status") or {}
        return _to_int(status.get("pending", 0)), _to_int(status.get("queued", 0))


def _to_int(value: t.Union[int, str]) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)
