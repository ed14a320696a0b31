"""
Run controller for ethemu.
Loads the stored descriptor, brings the network up, drives the workload, tears down.
"""
import random
import signal
import threading
import time
import typing as t

from .config import GETH_BINARY
from .errors import EmulatorError
from .events import RunLogs
from .models import RunDescriptor
from .node import NodeHandle
from .orchestrator import Orchestrator, make_backend
from .store import load_descriptor
from .workload import (
    BENCH_HEIGHT,
    BENCH_TXS,
    CONTINUOUS,
    BenchmarkDriver,
    ContinuousDriver,
    WorkloadDriver,
    validate_strategy,
)

# How often the controller re-checks node liveness and the run deadline
WATCH_INTERVAL = 0.25


class RunController:
    """
    One end-to-end run against a stored descriptor.

    Usage:
        controller = RunController("./data", backend="sim", strategy="bench-txs", target=10)
        exit_code = controller.run()
    """

    def __init__(
        self,
        data_dir: str,
        backend: str = "geth",
        strategy: str = CONTINUOUS,
        target: t.Optional[int] = None,
        mine_all: bool = False,
        block_log: t.Optional[str] = None,
        tx_log: t.Optional[str] = None,
        seed: t.Optional[int] = None,
        duration: t.Optional[float] = None,
        seal_jitter: float = 0.0,
        traffic: bool = False,
        period: t.Optional[float] = None,
        geth_binary: str = GETH_BINARY,
        driver_options: t.Optional[t.Dict[str, t.Any]] = None,
    ) -> None:
        self.data_dir = data_dir
        self.backend_name = backend
        self.strategy = strategy
        self.target = target
        self.mine_all = mine_all
        self.block_log = block_log
        self.tx_log = tx_log
        self.rng = random.Random(seed)
        self.duration = duration
        self.seal_jitter = seal_jitter
        self.traffic = traffic
        self.period = period
        self.geth_binary = geth_binary
        self.driver_options = driver_options or {}
        self.stop_event = threading.Event()
        self.driver: t.Optional[WorkloadDriver] = None
        self.orchestrator: t.Optional[Orchestrator] = None

    def make_driver(self, run: RunDescriptor, nodes: t.Dict[str, NodeHandle], logs: RunLogs) -> WorkloadDriver:
        common = dict(
            stop=self.stop_event,
            logs=logs,
            rng=self.rng,
            period=self.period,
            seal_jitter=self.seal_jitter,
        )
        common.update(self.driver_options)
        if self.strategy == CONTINUOUS:
            return ContinuousDriver(run, nodes, **common)
        return BenchmarkDriver(run, nodes, mode=self.strategy, target=self.target, traffic=self.traffic, **common)

    def request_stop(self, signum: t.Optional[int] = None, frame: t.Any = None) -> None:
        if signum is not None:
            print(f"\n[Controller] Received signal {signum}, shutting down...")
        self.stop_event.set()

    def _install_signal_handlers(self) -> t.Callable[[], None]:
        """Route SIGINT/SIGTERM to the stop signal; returns a restore callback."""
        if threading.current_thread() is not threading.main_thread():
            return lambda: None
        previous = {sig: signal.signal(sig, self.request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}

        def restore() -> None:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return restore

    def _wait(self, nodes: t.Dict[str, NodeHandle]) -> None:
        """Block until the workload ends, a node exits, the deadline passes or a signal arrives."""
        deadline = time.monotonic() + self.duration if self.duration else None
        while not self.stop_event.wait(WATCH_INTERVAL):
            exited = [node for node in nodes.values() if node.wait(timeout=0)]
            if exited:
                raise EmulatorError(f"Node {exited[0].name} exited unexpectedly")
            if deadline is not None and time.monotonic() >= deadline:
                print(f"[Controller] Run duration of {self.duration}s elapsed")
                return

    def run(self) -> int:
        """
        Execute the run.

        Returns:
            Process exit code: 0 on a clean stop or a completed benchmark.

        Raises:
            EmulatorError: configuration, startup or convergence failure.
        """
        print(f"=== ethemu run: {self.strategy} on {self.backend_name} ===")
        run = load_descriptor(self.data_dir)
        validate_strategy(run, self.strategy, self.traffic)
        print(
            f"[Controller] {len(run.nodes)} nodes, {len(run.miners())} miners, "
            f"{len(run.edges())} peer links, period {run.period}s"
        )

        # Log files open before any backend or node starts, so a bad path leaves nothing running
        logs = RunLogs(self.block_log, self.tx_log)
        backend_options = {"binary": self.geth_binary} if self.backend_name == "geth" else {}
        try:
            backend = make_backend(self.backend_name, run, self.data_dir, **backend_options)
        except EmulatorError:
            logs.close()
            raise
        self.orchestrator = orchestrator = Orchestrator(run, backend, mine_all=self.mine_all)
        restore = self._install_signal_handlers()
        try:
            nodes = orchestrator.bootstrap()
            logs.watch(nodes)
            self.driver = self.make_driver(run, nodes, logs)
            self.driver.start()
            self._wait(nodes)
        finally:
            self.stop_event.set()
            if self.driver is not None:
                self.driver.join()
            logs.flush()
            logs.close()
            orchestrator.shutdown()
            restore()

        if self.driver.error is not None:
            raise self.driver.error
        if self.strategy in (BENCH_TXS, BENCH_HEIGHT) and self.driver.completed:
            print(f"[Controller] Benchmark complete: {self.driver.submitted} txs submitted, {self.driver.sealed} blocks sealed")
        print("[Controller] Run finished.")
        return 0
