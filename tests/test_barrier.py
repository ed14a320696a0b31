import threading

import pytest

from conftest import address, make_run, wait_until
from ethemu.barrier import ConvergenceBarrier
from ethemu.errors import ConvergenceTimeout
from ethemu.orchestrator import Orchestrator, SimBackend


@pytest.fixture
def network():
    run = make_run(4, miners=(0,), latency=20)
    orchestrator = Orchestrator(run, SimBackend(run))
    nodes = orchestrator.bootstrap()
    yield nodes
    orchestrator.shutdown()


def test_wait_height(network):
    barrier = ConvergenceBarrier(network, timeout=5)
    assert barrier.wait_height(0)
    network[address(0)].trigger_seal()
    assert barrier.wait_height(1)
    assert all(node.current_height() == 1 for node in network.values())


def test_wait_confirmed(network):
    barrier = ConvergenceBarrier(network, timeout=5)
    tx = network[address(3)].send_transaction(address(2), 1)
    assert wait_until(lambda: network[address(0)].pending_contains(tx))
    network[address(0)].trigger_seal()
    assert barrier.wait_confirmed(tx)
    assert all(node.is_confirmed(tx) for node in network.values())


def test_stop_abandons_wait(network):
    barrier = ConvergenceBarrier(network, timeout=5)
    stop = threading.Event()
    threading.Timer(0.1, stop.set).start()
    assert barrier.wait_height(3, stop) is False


def test_timeout_reports_lagging_nodes(network):
    barrier = ConvergenceBarrier(network, timeout=0.2, poll_interval=0.01)
    with pytest.raises(ConvergenceTimeout) as info:
        barrier.wait_height(2)
    message = str(info.value)
    assert "height 2" in message
    assert "4/4 nodes lagging" in message
    assert "emu000003" in message
