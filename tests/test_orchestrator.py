import pytest

from conftest import address, make_run
from ethemu.errors import ConfigurationError, StartupError
from ethemu.orchestrator import GethBackend, Orchestrator, SimBackend, make_backend
from ethemu.simulation import SimNode


class FlakyNode(SimNode):
    def start(self):
        if self.descriptor.identity == 2:
            raise self.failure
        super().start()


class FlakyBackend(SimBackend):
    def __init__(self, run, failure):
        super().__init__(run)
        self.failure = failure
        self.created = []

    def node(self, descriptor):
        node = FlakyNode(descriptor, self.network)
        node.failure = self.failure
        self.created.append(node)
        return node


def test_bootstrap_wires_exact_edges():
    run = make_run(5, miners=(1,), edges=[(0, 1), (1, 2), (1, 3), (3, 4), (0, 4)])
    orchestrator = Orchestrator(run, SimBackend(run))
    nodes = orchestrator.bootstrap()
    try:
        assert list(nodes) == [n.address for n in run.ordered()]
        for addr, node in nodes.items():
            assert node.peer_addresses() == set(run.nodes[addr].peers)
    finally:
        orchestrator.shutdown()
    assert all(node.wait(timeout=0) for node in nodes.values())


def test_bootstrap_enables_mining_on_miners_only():
    run = make_run(3, miners=(2,))
    orchestrator = Orchestrator(run, SimBackend(run))
    nodes = orchestrator.bootstrap()
    try:
        nodes[address(2)].trigger_seal()
        with pytest.raises(ConfigurationError):
            nodes[address(0)].trigger_seal()
    finally:
        orchestrator.shutdown()


def test_mine_all_override():
    run = make_run(3, miners=())
    orchestrator = Orchestrator(run, SimBackend(run), mine_all=True)
    nodes = orchestrator.bootstrap()
    try:
        for node in nodes.values():
            node.trigger_seal()
    finally:
        orchestrator.shutdown()


@pytest.mark.parametrize("failure", [StartupError("boom"), RuntimeError("boom")])
def test_start_failure_stops_started_nodes(failure):
    run = make_run(4)
    backend = FlakyBackend(run, failure)
    with pytest.raises(StartupError, match="boom"):
        Orchestrator(run, backend).bootstrap()
    started = [n for n in backend.created if n.descriptor.identity < 2]
    assert len(started) == 2
    assert all(node.wait(timeout=0) for node in started)


def test_unknown_peer_aborts_bootstrap():
    run = make_run(3)
    run.nodes[address(0)].peers.append("0xnot-in-roster")
    orchestrator = Orchestrator(run, SimBackend(run))
    with pytest.raises(StartupError, match="unknown peer"):
        orchestrator.bootstrap()
    assert all(node.wait(timeout=0) for node in orchestrator.nodes.values())


def test_make_backend():
    run = make_run(2)
    assert isinstance(make_backend("sim", run, "/tmp/unused"), SimBackend)
    geth = make_backend("geth", run, "/tmp/unused", binary="/opt/geth")
    assert isinstance(geth, GethBackend)
    assert geth.binary == "/opt/geth"
    geth.close()
    with pytest.raises(ConfigurationError):
        make_backend("docker", run, "/tmp/unused")
