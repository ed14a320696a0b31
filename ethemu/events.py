"""
Append-only CSV event logs for ethemu runs.
"""
import csv
import os
import threading
import time
import typing as t

from .errors import ConfigurationError
from .node import NodeHandle

BLOCK_FIELDS = ["timestamp", "node", "address", "height", "hash", "sealed"]
TX_FIELDS = ["timestamp", "node", "hash", "from", "to", "value"]


class EventLog:
    """
    Thread-safe CSV writer; the header is written once per new file.
    """

    def __init__(self, path: str, fieldnames: t.List[str]) -> None:
        self.path = path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        is_new = not os.path.exists(path) or os.path.getsize(path) == 0
        self._f = open(path, "a", newline="", encoding="utf-8")
        self._writer = csv.DictWriter(self._f, fieldnames=fieldnames)
        self._lock = threading.Lock()
        if is_new:
            self._writer.writeheader()

    def record(self, **row: t.Any) -> None:
        row.setdefault("timestamp", f"{time.time():.6f}")
        with self._lock:
            if not self._f.closed:
                self._writer.writerow(row)

    def flush(self) -> None:
        with self._lock:
            if not self._f.closed:
                self._f.flush()

    def close(self) -> None:
        with self._lock:
            if not self._f.closed:
                self._f.flush()
                self._f.close()


class RunLogs:
    """
    Optional block- and transaction-event logs of one run.

    Block rows are recorded on every head change of every node, so the
    spread of a height across the network is visible in the log.
    """

    def __init__(self, block_log: t.Optional[str] = None, tx_log: t.Optional[str] = None) -> None:
        self.blocks: t.Optional[EventLog] = None
        self.txs: t.Optional[EventLog] = None
        try:
            if block_log:
                self.blocks = EventLog(block_log, BLOCK_FIELDS)
            if tx_log:
                self.txs = EventLog(tx_log, TX_FIELDS)
        except OSError as e:
            self.close()
            raise ConfigurationError(f"Cannot open event log: {e}") from e
        self._heads: t.Dict[str, t.Tuple[int, str]] = {}
        self._lock = threading.Lock()

    def watch(self, nodes: t.Dict[str, NodeHandle]) -> None:
        if self.blocks is None:
            return
        for node in nodes.values():
            node.subscribe(self._on_node_event)

    def _on_node_event(self, node: NodeHandle) -> None:
        height, block_hash, sealer = node.head_info()
        with self._lock:
            if self._heads.get(node.address) == (height, block_hash):
                return
            self._heads[node.address] = (height, block_hash)
        self.blocks.record(
            node=node.name,
            address=node.address,
            height=height,
            hash=block_hash,
            sealed=int(sealer.lower() == node.address.lower()),
        )

    def tx(self, node: NodeHandle, tx_hash: str, to: str, value: int) -> None:
        if self.txs is not None:
            self.txs.record(node=node.name, hash=tx_hash, **{"from": node.address}, to=to, value=value)

    def flush(self) -> None:
        for log in (self.blocks, self.txs):
            if log is not None:
                log.flush()

    def close(self) -> None:
        for log in (self.blocks, self.txs):
            if log is not None:
                log.close()
