import threading
import time

import pytest

from conftest import address, make_run
from ethemu.errors import ConfigurationError, ConvergenceTimeout, TransientWorkloadError
from ethemu.node import NodeHandle
from ethemu.orchestrator import Orchestrator, SimBackend
from ethemu.workload import (
    BENCH_HEIGHT,
    BENCH_TXS,
    CONTINUOUS,
    BenchmarkDriver,
    ContinuousDriver,
    validate_strategy,
)


class RecordingNode(NodeHandle):
    """Accepts everything, remembers submissions and seals."""

    def __init__(self, descriptor, journal, fail_every=0, included=True):
        super().__init__(descriptor)
        self.journal = journal
        self.fail_every = fail_every
        self.included = included
        self.seals = 0
        self._calls = 0
        self._lock = threading.Lock()

    def start(self):
        pass

    @property
    def endpoint(self):
        return f"fake://{self.name}"

    def add_peer(self, endpoint):
        pass

    def enable_mining(self):
        pass

    def send_transaction(self, to, value):
        with self._lock:
            self._calls += 1
            if self.fail_every and self._calls % self.fail_every == 0:
                raise TransientWorkloadError("nonce too low")
            self.journal.append((self.address, to, value))
            return "0x%064x" % len(self.journal)

    def trigger_seal(self):
        self.seals += 1

    def current_height(self):
        return 0

    def head_info(self):
        return 0, "", ""

    def pending_contains(self, tx_hash):
        return not self.included

    def transaction_included(self, tx_hash):
        return self.included

    def txpool_stats(self):
        return 0, 0

    def stop(self):
        pass

    def wait(self, timeout=None):
        return True


def recording_nodes(run, **kwargs):
    journal = []
    nodes = {d.address: RecordingNode(d, journal, **kwargs) for d in run.ordered()}
    return nodes, journal


@pytest.fixture
def sim():
    started = []

    def bring_up(run):
        orchestrator = Orchestrator(run, SimBackend(run))
        started.append(orchestrator)
        return orchestrator.bootstrap()

    yield bring_up
    for orchestrator in started:
        orchestrator.shutdown()


def test_validate_strategy():
    validate_strategy(make_run(4, miners=(0,)), CONTINUOUS)
    with pytest.raises(ConfigurationError):
        validate_strategy(make_run(3, miners=(0, 1)), CONTINUOUS)
    with pytest.raises(ConfigurationError):
        validate_strategy(make_run(3, miners=(0, 1)), BENCH_TXS)
    validate_strategy(make_run(3, miners=(0, 1)), BENCH_HEIGHT)
    with pytest.raises(ConfigurationError):
        validate_strategy(make_run(3, miners=(0, 1)), BENCH_HEIGHT, traffic=True)
    with pytest.raises(ConfigurationError):
        validate_strategy(make_run(3, miners=()), BENCH_HEIGHT)
    with pytest.raises(ConfigurationError):
        validate_strategy(make_run(3), "flood")


def test_driver_refuses_infeasible_roster():
    run = make_run(3, miners=())
    nodes, _ = recording_nodes(run)
    with pytest.raises(ConfigurationError):
        ContinuousDriver(run, nodes)
    with pytest.raises(ConfigurationError):
        BenchmarkDriver(make_run(3), nodes, mode="bench-forever")
    with pytest.raises(ConfigurationError):
        BenchmarkDriver(make_run(3), nodes, target=-1)


def test_continuous_traffic_stays_among_non_miners():
    run = make_run(6, miners=(0, 3), min_tx_interval=1, max_tx_interval=2)
    nodes, journal = recording_nodes(run)
    driver = ContinuousDriver(run, nodes, period=0.02)
    driver.start()
    time.sleep(0.3)
    driver.stop()
    assert driver.join(timeout=5)

    senders = set(run.non_miners())
    assert len(journal) > 10
    for source, dest, value in journal:
        assert source in senders
        assert dest in senders
        assert source != dest
        assert value == driver.value
    assert driver.submitted == len(journal)
    assert sum(nodes[m].seals for m in run.miners()) > 0
    assert sum(nodes[a].seals for a in senders) == 0
    assert driver.error is None
    assert not driver.completed


def test_continuous_survives_transient_failures():
    run = make_run(4, miners=(0,), min_tx_interval=1, max_tx_interval=2)
    nodes, journal = recording_nodes(run, fail_every=2)
    driver = ContinuousDriver(run, nodes, period=0.05)
    driver.start()
    time.sleep(0.2)
    driver.stop()
    assert driver.join(timeout=5)
    assert driver.failed > 0
    assert driver.submitted == len(journal) > 0
    assert driver.error is None


def test_task_failure_stops_driver():
    run = make_run(4, miners=(0,), min_tx_interval=1, max_tx_interval=2)
    nodes, _ = recording_nodes(run)

    def broken_seal():
        raise RuntimeError("disk full")

    nodes[address(0)].trigger_seal = broken_seal
    driver = ContinuousDriver(run, nodes, period=0.01)
    driver.start()
    assert driver.done.wait(5)
    assert isinstance(driver.error, RuntimeError)
    assert driver.stop_event.is_set()
    driver.join()


def test_bench_txs_on_simulated_network(sim):
    run = make_run(4, miners=(0,), latency=5)
    nodes = sim(run)
    driver = BenchmarkDriver(run, nodes, mode=BENCH_TXS, target=3, period=0.05, progress=False)
    driver.start()
    assert driver.done.wait(15)
    assert driver.join(timeout=5)
    assert driver.error is None
    assert driver.completed
    assert driver.confirmed == 3
    assert driver.stop_event.is_set()


def test_bench_height_on_simulated_network(sim):
    run = make_run(4, miners=(0, 2), latency=5)
    nodes = sim(run)
    driver = BenchmarkDriver(run, nodes, mode=BENCH_HEIGHT, target=4, period=0.02, progress=False)
    driver.start()
    assert driver.done.wait(15)
    driver.join()
    assert driver.error is None
    assert driver.completed
    assert driver.sealed == 4
    assert all(node.current_height() == 4 for node in nodes.values())


def test_bench_height_already_reached(sim):
    run = make_run(2, miners=(0,))
    nodes = sim(run)
    nodes[address(0)].trigger_seal()
    nodes[address(0)].trigger_seal()
    driver = BenchmarkDriver(run, nodes, mode=BENCH_HEIGHT, target=1, period=0.01, progress=False)
    driver.start()
    assert driver.done.wait(5)
    driver.join()
    assert driver.completed
    assert driver.sealed == 0


def test_bench_txs_zero_target():
    run = make_run(3, miners=(0,))
    nodes, journal = recording_nodes(run)
    driver = BenchmarkDriver(run, nodes, mode=BENCH_TXS, target=0, period=0.01, progress=False)
    driver.start()
    assert driver.done.wait(5)
    driver.join()
    assert driver.completed
    assert journal == []


def test_bench_txs_times_out_when_nothing_is_mined():
    run = make_run(3, miners=(0,))
    nodes, _ = recording_nodes(run, included=False)
    driver = BenchmarkDriver(
        run, nodes, mode=BENCH_TXS, target=1, period=0.05,
        convergence_timeout=0.2, poll_interval=0.01, progress=False,
    )
    driver.start()
    assert driver.done.wait(5)
    driver.join()
    assert isinstance(driver.error, ConvergenceTimeout)
    assert not driver.completed


def test_stop_interrupts_benchmark():
    run = make_run(3, miners=(0,))
    nodes, _ = recording_nodes(run, included=False)
    driver = BenchmarkDriver(run, nodes, mode=BENCH_TXS, target=5, period=10, progress=False)
    driver.start()
    time.sleep(0.1)
    driver.stop()
    assert driver.join(timeout=5)
    assert driver.error is None
    assert not driver.completed


class OvershootingNode(RecordingNode):
    """Every seal lands two blocks on a chain shared by all nodes."""

    def __init__(self, descriptor, journal, chain):
        super().__init__(descriptor, journal)
        self.chain = chain

    def trigger_seal(self):
        self.seals += 1
        self.chain["height"] += 2

    def current_height(self):
        return self.chain["height"]


def test_bench_height_follows_extra_blocks():
    run = make_run(3, miners=(0,))
    chain, journal = {"height": 0}, []
    nodes = {d.address: OvershootingNode(d, journal, chain) for d in run.ordered()}
    driver = BenchmarkDriver(
        run, nodes, mode=BENCH_HEIGHT, target=3, period=0.01, progress=False,
        convergence_timeout=1, poll_interval=0.01,
    )
    driver.start()
    assert driver.done.wait(5)
    driver.join()
    assert driver.error is None
    assert driver.completed
    assert driver.sealed == 2
    assert chain["height"] == 4
