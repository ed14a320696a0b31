"""
Node collaborator interface for ethemu.

The harness only drives nodes through this surface; the networking stack,
consensus, tx pool and storage behind it are the backend's business.
"""
import abc
import threading
import typing as t

from .models import NodeDescriptor

# Called with the node that changed (new head or tx pool update)
NodeListener = t.Callable[["NodeHandle"], None]


class NodeHandle(abc.ABC):
    """
    One live node of the emulated network, keyed by its account address.
    """

    def __init__(self, descriptor: NodeDescriptor) -> None:
        self.descriptor = descriptor
        self._listeners: t.List[NodeListener] = []
        self._listeners_lock = threading.Lock()

    @property
    def address(self) -> str:
        return self.descriptor.address

    @property
    def name(self) -> str:
        return self.descriptor.name

    def subscribe(self, listener: NodeListener) -> None:
        """Register a callback fired on head changes and pool updates."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def _notify(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(self)

    @abc.abstractmethod
    def start(self) -> None:
        """Start the node's services. Raises StartupError on failure."""

    @property
    @abc.abstractmethod
    def endpoint(self) -> str:
        """Network endpoint other nodes dial; known only after start()."""

    @abc.abstractmethod
    def add_peer(self, endpoint: str) -> None:
        """Ask the connectivity manager to connect to endpoint."""

    @abc.abstractmethod
    def enable_mining(self) -> None:
        """Allow this node to seal blocks."""

    @abc.abstractmethod
    def send_transaction(self, to: str, value: int) -> str:
        """Submit a transfer from this node's account. Returns the tx hash."""

    @abc.abstractmethod
    def trigger_seal(self) -> None:
        """Run one block-production step."""

    @abc.abstractmethod
    def current_height(self) -> int:
        """Number of the current head block."""

    @abc.abstractmethod
    def head_info(self) -> t.Tuple[int, str, str]:
        """Last observed head as (number, hash, sealer address); never blocks on the node."""

    @abc.abstractmethod
    def pending_contains(self, tx_hash: str) -> bool:
        """True while tx_hash sits in this node's pending pool."""

    @abc.abstractmethod
    def transaction_included(self, tx_hash: str) -> bool:
        """True once tx_hash is part of this node's canonical chain."""

    @abc.abstractmethod
    def txpool_stats(self) -> t.Tuple[int, int]:
        """(pending, queued) transaction counts."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Shut the node down."""

    @abc.abstractmethod
    def wait(self, timeout: t.Optional[float] = None) -> bool:
        """Block until the node has shut down. Returns False on timeout."""

    def is_confirmed(self, tx_hash: str) -> bool:
        """A transaction has converged on this node: mined, not pending."""
        return not self.pending_contains(tx_hash) and self.transaction_included(tx_hash)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self.address}>"
