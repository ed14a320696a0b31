"""
In-process network backend for ethemu.

Nodes live in one Python process and talk through a SimNetwork, which
delivers gossip (transactions, blocks, chain sync) after the configured
per-hop latency on a single dispatcher thread. Forks resolve by the
longest-chain rule, first-seen on equal height.
"""
import hashlib
import heapq
import itertools
import threading
import time
import traceback
import typing as t
from dataclasses import dataclass, field

from .errors import ConfigurationError, StartupError, TransientWorkloadError
from .models import NodeDescriptor
from .node import NodeHandle


def _digest(*parts: t.Any) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(str(p).encode())
    return "0x" + h.hexdigest()


@dataclass(frozen=True)
class SimTx:
    tx_hash: str
    sender: str
    to: str
    value: int
    nonce: int


@dataclass(frozen=True)
class SimBlock:
    number: int
    block_hash: str
    parent_hash: str
    sealer: str
    txs: t.Tuple[SimTx, ...] = field(default_factory=tuple)


GENESIS = SimBlock(number=0, block_hash=_digest("ethemu-genesis"), parent_hash="", sealer="")


class SimNetwork:
    """
    Message fabric shared by all SimNodes of a run.

    Usage:
        network = SimNetwork(latency_ms=20)
        node = SimNode(descriptor, network)
        node.start()
        # ... run ...
        network.close()
    """

    def __init__(self, latency_ms: int = 0) -> None:
        self.latency = latency_ms / 1000.0
        self._nodes: t.Dict[str, "SimNode"] = {}
        self._queue: t.List[t.Tuple[float, int, t.Callable[..., None], tuple]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False
        self._thread: t.Optional[threading.Thread] = None

    def register(self, node: "SimNode") -> str:
        endpoint = f"sim://{node.name}"
        with self._cond:
            if self._closed:
                raise StartupError("Simulation network is closed")
            if endpoint in self._nodes:
                raise StartupError(f"Endpoint {endpoint} already registered")
            self._nodes[endpoint] = node
            if self._thread is None:
                self._thread = threading.Thread(target=self._dispatch_loop, name="sim-dispatch", daemon=True)
                self._thread.start()
        return endpoint

    def unregister(self, endpoint: str) -> None:
        with self._cond:
            self._nodes.pop(endpoint, None)

    def lookup(self, endpoint: str) -> "SimNode":
        with self._cond:
            node = self._nodes.get(endpoint)
        if node is None:
            raise StartupError(f"Unknown endpoint {endpoint}")
        return node

    def deliver(self, handler: t.Callable[..., None], *args: t.Any) -> None:
        """Schedule handler(*args) one hop from now."""
        with self._cond:
            if self._closed:
                return
            heapq.heappush(self._queue, (time.monotonic() + self.latency, next(self._seq), handler, args))
            self._cond.notify()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                while not self._closed:
                    if self._queue:
                        delay = self._queue[0][0] - time.monotonic()
                        if delay <= 0:
                            break
                        self._cond.wait(delay)
                    else:
                        self._cond.wait()
                if self._closed:
                    return
                _, _, handler, args = heapq.heappop(self._queue)
            try:
                handler(*args)
            except Exception:
                print("[SimNetwork] Message handler failed:")
                traceback.print_exc()


class SimNode(NodeHandle):
    """
    Emulated full node: tx pool, canonical chain, gossip to linked peers.
    """

    def __init__(self, descriptor: NodeDescriptor, network: SimNetwork) -> None:
        super().__init__(descriptor)
        self.network = network
        self._lock = threading.RLock()
        self._chain: t.List[SimBlock] = [GENESIS]
        self._included: t.Dict[str, int] = {}
        self._pool: t.Dict[str, SimTx] = {}
        self._seen_txs: t.Set[str] = set()
        self._seen_blocks: t.Set[str] = {GENESIS.block_hash}
        self._peers: t.Dict[str, "SimNode"] = {}
        self._nonce = 0
        self._mining = False
        self._endpoint: t.Optional[str] = None
        self._stopped = threading.Event()

    # ---------- Lifecycle ----------
    def start(self) -> None:
        if self._stopped.is_set():
            raise StartupError(f"{self.name} was already stopped")
        self._endpoint = self.network.register(self)

    @property
    def endpoint(self) -> str:
        if self._endpoint is None:
            raise StartupError(f"{self.name} has not been started")
        return self._endpoint

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._endpoint is not None:
            self.network.unregister(self._endpoint)
        with self._lock:
            peers = list(self._peers.values())
            self._peers.clear()
        for peer in peers:
            peer._unlink(self)
        self._notify()

    def wait(self, timeout: t.Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    # ---------- Connectivity ----------
    def add_peer(self, endpoint: str) -> None:
        peer = self.network.lookup(endpoint)
        if peer is self:
            raise StartupError(f"{self.name} cannot peer with itself")
        self._link(peer)
        peer._link(self)
        # Handshake: each side offers its chain to the other
        self.network.deliver(peer._accept_chain, self.chain(), self)
        self.network.deliver(self._accept_chain, peer.chain(), peer)

    def _link(self, peer: "SimNode") -> None:
        with self._lock:
            self._peers[peer.address] = peer

    def _unlink(self, peer: "SimNode") -> None:
        with self._lock:
            self._peers.pop(peer.address, None)

    def peer_addresses(self) -> t.Set[str]:
        with self._lock:
            return set(self._peers)

    def _broadcast(self, handler_name: str, payload: t.Any, origin: t.Optional["SimNode"]) -> None:
        with self._lock:
            peers = [p for p in self._peers.values() if p is not origin]
        for peer in peers:
            self.network.deliver(getattr(peer, handler_name), payload, self)

    # ---------- Transactions ----------
    def send_transaction(self, to: str, value: int) -> str:
        if self._stopped.is_set():
            raise TransientWorkloadError(f"{self.name} is stopped")
        with self._lock:
            nonce = self._nonce
            self._nonce += 1
        tx = SimTx(
            tx_hash=_digest(self.address, nonce, to, value),
            sender=self.address,
            to=to,
            value=value,
            nonce=nonce,
        )
        self._accept_tx(tx, None)
        return tx.tx_hash

    def _accept_tx(self, tx: SimTx, origin: t.Optional["SimNode"]) -> None:
        if self._stopped.is_set():
            return
        with self._lock:
            if tx.tx_hash in self._seen_txs:
                return
            self._seen_txs.add(tx.tx_hash)
            if tx.tx_hash not in self._included:
                self._pool[tx.tx_hash] = tx
        self._broadcast("_accept_tx", tx, origin)
        self._notify()

    # ---------- Blocks ----------
    def enable_mining(self) -> None:
        self._mining = True

    def trigger_seal(self) -> None:
        if not self._mining:
            raise ConfigurationError(f"{self.name} is not a miner")
        if self._stopped.is_set():
            return
        with self._lock:
            head = self._chain[-1]
            txs = tuple(self._pool.values())
            number = head.number + 1
            block = SimBlock(
                number=number,
                block_hash=_digest(head.block_hash, number, self.address, time.time_ns(), *[tx.tx_hash for tx in txs]),
                parent_hash=head.block_hash,
                sealer=self.address,
                txs=txs,
            )
            self._seen_blocks.add(block.block_hash)
            self._append(block)
        self._broadcast("_accept_block", block, None)
        self._notify()

    def _append(self, block: SimBlock) -> None:
        self._chain.append(block)
        for tx in block.txs:
            self._included[tx.tx_hash] = block.number
            self._seen_txs.add(tx.tx_hash)
            self._pool.pop(tx.tx_hash, None)

    def _accept_block(self, block: SimBlock, origin: "SimNode") -> None:
        if self._stopped.is_set():
            return
        with self._lock:
            if block.block_hash in self._seen_blocks:
                return
            head = self._chain[-1]
            if block.number == head.number + 1 and block.parent_hash == head.block_hash:
                self._seen_blocks.add(block.block_hash)
                self._append(block)
                extends = True
            elif block.number > head.number:
                extends = False
            else:
                # Stale or competing block at a height we already have
                self._seen_blocks.add(block.block_hash)
                return
        if extends:
            self._broadcast("_accept_block", block, origin)
            self._notify()
        else:
            # Missing ancestors or on a shorter fork: sync from the sender
            self.network.deliver(self._accept_chain, origin.chain(), origin)

    def _accept_chain(self, chain: t.List[SimBlock], origin: "SimNode") -> None:
        if self._stopped.is_set():
            return
        with self._lock:
            if len(chain) <= len(self._chain):
                return
            fork = 0
            while fork < len(self._chain) and self._chain[fork].block_hash == chain[fork].block_hash:
                fork += 1
            dropped = self._chain[fork:]
            self._chain = self._chain[:fork]
            for block in dropped:
                for tx in block.txs:
                    self._included.pop(tx.tx_hash, None)
            for block in chain[fork:]:
                self._seen_blocks.add(block.block_hash)
                self._append(block)
            for block in dropped:
                for tx in block.txs:
                    if tx.tx_hash not in self._included:
                        self._pool[tx.tx_hash] = tx
            head = self._chain[-1]
        self._broadcast("_accept_block", head, origin)
        self._notify()

    # ---------- Queries ----------
    def chain(self) -> t.List[SimBlock]:
        with self._lock:
            return list(self._chain)

    def head(self) -> SimBlock:
        with self._lock:
            return self._chain[-1]

    def current_height(self) -> int:
        with self._lock:
            return self._chain[-1].number

    def head_info(self) -> t.Tuple[int, str, str]:
        head = self.head()
        return head.number, head.block_hash, head.sealer

    def pending_contains(self, tx_hash: str) -> bool:
        with self._lock:
            return tx_hash in self._pool

    def transaction_included(self, tx_hash: str) -> bool:
        with self._lock:
            return tx_hash in self._included

    def txpool_stats(self) -> t.Tuple[int, int]:
        with self._lock:
            return len(self._pool), 0
