"""
Workload drivers for ethemu.
Synthetic transfers & block sealing across the live node population.

Two strategies share the same building blocks:
    ContinuousDriver: random traffic + random-miner sealing until stopped.
    BenchmarkDriver: fixed tx count or fixed height, each step gated by a
        convergence barrier across every node, then reports completion.
"""
import random
import threading
import typing as t
from concurrent.futures import Future, ThreadPoolExecutor

from tqdm import tqdm

from .barrier import ConvergenceBarrier
from .config import (
    BENCH_TARGET_HEIGHT,
    BENCH_TARGET_TXS,
    CONVERGENCE_TIMEOUT,
    POLL_INTERVAL,
    SEAL_REPORT_DELAY,
    TX_VALUE,
)
from .errors import ConfigurationError, TransientWorkloadError
from .events import RunLogs
from .models import RunDescriptor
from .node import NodeHandle
from .sampling import sample_pair

CONTINUOUS = "continuous"
BENCH_TXS = "bench-txs"
BENCH_HEIGHT = "bench-height"
STRATEGIES = (CONTINUOUS, BENCH_TXS, BENCH_HEIGHT)


def require_senders(run: RunDescriptor) -> None:
    if len(run.non_miners()) < 2:
        raise ConfigurationError(
            f"Transaction traffic needs at least 2 non-miner nodes, roster has {len(run.non_miners())}"
        )


def require_miners(run: RunDescriptor) -> None:
    if not run.miners():
        raise ConfigurationError("Sealing needs at least one miner, roster has none")


def validate_strategy(run: RunDescriptor, strategy: str, traffic: bool = False) -> None:
    """
    Raise ConfigurationError if the roster cannot carry the strategy.

    Checked before any node is started.
    """
    if strategy not in STRATEGIES:
        raise ConfigurationError(f"Unknown strategy: {strategy} (choose from {', '.join(STRATEGIES)})")
    if strategy in (CONTINUOUS, BENCH_TXS) or traffic:
        require_senders(run)
    require_miners(run)


class WorkloadDriver:
    """
    Base driver: owns the stop signal, the task pool and completion state.

    Tasks run on a shared thread pool and check the stop signal at every
    loop boundary; an in-flight submission or seal always completes.
    """

    strategy = ""

    def __init__(
        self,
        run: RunDescriptor,
        nodes: t.Dict[str, NodeHandle],
        stop: t.Optional[threading.Event] = None,
        logs: t.Optional[RunLogs] = None,
        rng: t.Optional[random.Random] = None,
        period: t.Optional[float] = None,
        seal_jitter: float = 0.0,
        value: int = TX_VALUE,
    ) -> None:
        validate_strategy(run, self.strategy, getattr(self, "traffic", False))
        self.run = run
        self.nodes = nodes
        self.stop_event = stop or threading.Event()
        self.logs = logs or RunLogs()
        self.rng = rng or random.Random()
        self.period = run.period if period is None else period
        self.seal_jitter = seal_jitter
        self.value = value
        self.senders = run.non_miners()
        self.miners = run.miners()

        self.submitted = 0
        self.failed = 0
        self.sealed = 0
        self.completed = False
        self.error: t.Optional[BaseException] = None
        self.done = threading.Event()

        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix=f"workload-{self.strategy}")
        self._futures: t.List[Future] = []
        self._lock = threading.Lock()

    def tasks(self) -> t.List[t.Callable[[random.Random], None]]:
        raise NotImplementedError

    # ---------- Lifecycle ----------
    def start(self) -> None:
        tasks = self.tasks()
        # One independent random stream per task, all derived from self.rng
        rngs = [random.Random(self.rng.getrandbits(64)) for _ in tasks]
        with self._lock:
            self._futures = [self._pool.submit(task, rng) for task, rng in zip(tasks, rngs)]
        for future in self._futures:
            future.add_done_callback(self._task_done)
        print(f"[Workload] {self.strategy} started with {len(tasks)} tasks")

    def _task_done(self, future: Future) -> None:
        exc = future.exception()
        with self._lock:
            if exc is not None and self.error is None:
                self.error = exc
                print(f"[Workload] Task failed: {exc}")
            finished = all(f.done() for f in self._futures)
        if exc is not None:
            self.stop_event.set()
        if finished:
            self.done.set()

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: t.Optional[float] = None) -> bool:
        """Wait for every task to return, then release the pool."""
        if self._futures and not self.done.wait(timeout):
            return False
        self._pool.shutdown(wait=True)
        return True

    # ---------- Shared steps ----------
    def submit_random_transfer(self, rng: random.Random) -> t.Optional[str]:
        """
        Send one transfer between two distinct non-miner accounts.

        Returns:
            The tx hash, or None if the node rejected it (retried next pass).
        """
        source, dest = sample_pair(rng, self.senders)
        node = self.nodes[source]
        try:
            tx_hash = node.send_transaction(dest, self.value)
        except TransientWorkloadError as e:
            self.failed += 1
            print(f"[Traffic] {node.name} submission failed, retrying next pass: {e}")
            return None
        self.submitted += 1
        self.logs.tx(node, tx_hash, dest, self.value)
        return tx_hash

    def pick_miner(self, rng: random.Random) -> NodeHandle:
        return self.nodes[self.miners[rng.randrange(len(self.miners))]]

    def seal(self, node: NodeHandle) -> bool:
        """Trigger one seal on node; report the result after a settle delay."""
        print(f"[Sealer] Sealing time, sealer={node.name} {node.address}")
        try:
            node.trigger_seal()
        except TransientWorkloadError as e:
            print(f"[Sealer] Seal on {node.name} failed: {e}")
            return False
        self.sealed += 1
        if not self.stop_event.is_set():
            self._pool.submit(self._report_seal, node)
        return True

    def _report_seal(self, node: NodeHandle) -> None:
        if self.stop_event.wait(SEAL_REPORT_DELAY):
            return
        try:
            height = node.current_height()
            pending, queued = node.txpool_stats()
        except Exception as e:
            print(f"[Sealer] Could not query {node.name} after seal: {e}")
            return
        print(f"[Sealer] {node.name} blockNumber {height} pending {pending} queued {queued}")

    # ---------- Tasks ----------
    def transaction_loop(self, rng: random.Random) -> None:
        """Random transfers with uniform inter-arrival times until stopped."""
        low = self.run.min_tx_interval / 1000.0
        high = self.run.max_tx_interval / 1000.0
        while not self.stop_event.is_set():
            self.submit_random_transfer(rng)
            if self.stop_event.wait(rng.uniform(low, high)):
                break

    def sealing_loop(self, rng: random.Random) -> None:
        """Every period, a uniformly random miner seals one block."""
        while not self.stop_event.is_set():
            sealer = self.pick_miner(rng)
            delay = self.period
            if self.seal_jitter:
                delay = max(0.0, delay + rng.uniform(-self.seal_jitter, self.seal_jitter))
            if self.stop_event.wait(delay):
                break
            self.seal(sealer)


class ContinuousDriver(WorkloadDriver):
    """
    Uncoordinated traffic and sealing, no exit condition of its own.
    """

    strategy = CONTINUOUS

    def tasks(self) -> t.List[t.Callable[[random.Random], None]]:
        return [self.transaction_loop, self.sealing_loop]


class BenchmarkDriver(WorkloadDriver):
    """
    Bounded measurement run.

    bench-txs: submit one transfer, wait until every node has mined it,
        repeat until `target` transfers are confirmed. Sealing runs
        alongside as in the continuous strategy.
    bench-height: wait until every node sits at the expected height, wait
        one period, seal on a random miner, repeat until `target` is reached
        on every node. Optional background traffic fills the blocks.
    """

    def __init__(
        self,
        run: RunDescriptor,
        nodes: t.Dict[str, NodeHandle],
        mode: str = BENCH_TXS,
        target: t.Optional[int] = None,
        traffic: bool = False,
        convergence_timeout: float = CONVERGENCE_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        progress: bool = True,
        **kwargs: t.Any,
    ) -> None:
        if mode not in (BENCH_TXS, BENCH_HEIGHT):
            raise ConfigurationError(f"Unknown benchmark mode: {mode}")
        if target is None:
            target = BENCH_TARGET_TXS if mode == BENCH_TXS else BENCH_TARGET_HEIGHT
        if target < 0:
            raise ConfigurationError(f"Benchmark target must be >= 0, got {target}")
        self.strategy = mode
        self.traffic = traffic
        super().__init__(run, nodes, **kwargs)
        self.target = target
        self.progress = progress
        self.confirmed = 0
        self.barrier = ConvergenceBarrier(nodes, timeout=convergence_timeout, poll_interval=poll_interval)

    def tasks(self) -> t.List[t.Callable[[random.Random], None]]:
        if self.strategy == BENCH_TXS:
            return [self.tx_count_loop, self.sealing_loop]
        tasks = [self.height_loop]
        if self.traffic:
            tasks.append(self.transaction_loop)
        return tasks

    def _complete(self, what: str) -> None:
        self.completed = True
        self.logs.flush()
        print(f"[Bench] Target reached: {what}")
        self.stop_event.set()

    def tx_count_loop(self, rng: random.Random) -> None:
        with tqdm(total=self.target, unit="tx", desc=BENCH_TXS, disable=not self.progress) as pbar:
            while self.confirmed < self.target:
                if self.stop_event.is_set():
                    return
                tx_hash = self.submit_random_transfer(rng)
                if tx_hash is None:
                    if self.stop_event.wait(POLL_INTERVAL):
                        return
                    continue
                if not self.barrier.wait_confirmed(tx_hash, self.stop_event):
                    return
                self.confirmed += 1
                pbar.update(1)
        self._complete(f"{self.confirmed} transactions confirmed on {len(self.nodes)} nodes")

    def height_loop(self, rng: random.Random) -> None:
        expected = max(node.current_height() for node in self.nodes.values())
        with tqdm(total=self.target, initial=min(expected, self.target), unit="block",
                  desc=BENCH_HEIGHT, disable=not self.progress) as pbar:
            while True:
                if not self.barrier.wait_height(expected, self.stop_event):
                    return
                if expected >= self.target:
                    break
                if self.stop_event.wait(self.period):
                    return
                sealer = self.pick_miner(rng)
                if not self.seal(sealer):
                    continue
                # A PoW miner can land more than one block before it is stopped
                reached = max(expected + 1, sealer.current_height())
                pbar.update(min(reached, self.target) - min(expected, self.target))
                expected = reached
        self._complete(f"height {expected} on {len(self.nodes)} nodes")
