"""
Convergence barrier for ethemu benchmarks.

Waits until a predicate holds on every node. Node events (new head, pool
update) wake the waiter; a minimum poll interval bounds re-checks when a
backend emits no event for the change being waited on.
"""
import threading
import time
import typing as t

from .config import CONVERGENCE_TIMEOUT, POLL_INTERVAL
from .errors import ConvergenceTimeout
from .node import NodeHandle


class ConvergenceBarrier:
    def __init__(
        self,
        nodes: t.Dict[str, NodeHandle],
        timeout: float = CONVERGENCE_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.nodes = nodes
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._cond = threading.Condition()
        self._version = 0
        for node in nodes.values():
            node.subscribe(self.notify)

    def notify(self, node: t.Optional[NodeHandle] = None) -> None:
        with self._cond:
            self._version += 1
            self._cond.notify_all()

    def wait_all(
        self,
        check: t.Callable[[NodeHandle], bool],
        what: str,
        stop: t.Optional[threading.Event] = None,
    ) -> bool:
        """
        Block until check(node) is true for every node.

        Args:
            check: Per-node convergence test.
            what: Description used in the timeout diagnostics.
            stop: Optional stop signal; when set the wait is abandoned.

        Returns:
            True once converged, False if stop was set first.

        Raises:
            ConvergenceTimeout: not converged within self.timeout seconds.
        """
        deadline = time.monotonic() + self.timeout
        while True:
            with self._cond:
                seen = self._version
            lagging = [node for node in self.nodes.values() if not check(node)]
            if not lagging:
                return True
            if stop is not None and stop.is_set():
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConvergenceTimeout(self._diagnose(what, lagging))
            with self._cond:
                if self._version == seen:
                    self._cond.wait(min(remaining, self.poll_interval))

    def wait_height(self, height: int, stop: t.Optional[threading.Event] = None) -> bool:
        return self.wait_all(lambda node: node.current_height() == height, f"height {height}", stop)

    def wait_confirmed(self, tx_hash: str, stop: t.Optional[threading.Event] = None) -> bool:
        return self.wait_all(lambda node: node.is_confirmed(tx_hash), f"tx {tx_hash}", stop)

    def _diagnose(self, what: str, lagging: t.List[NodeHandle]) -> str:
        lines = [f"No convergence on {what} after {self.timeout}s; {len(lagging)}/{len(self.nodes)} nodes lagging:"]
        for node in lagging:
            try:
                pending, queued = node.txpool_stats()
                state = f"height={node.current_height()} pending={pending} queued={queued}"
            except Exception as e:
                state = f"unreachable ({e})"
            lines.append(f"  {node.name} {node.address}: {state}")
        return "\n".join(lines)
