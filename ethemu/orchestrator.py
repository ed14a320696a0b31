"""
Node orchestration for ethemu.
Instantiates every node of the roster, applies roles, wires the peer graph.
"""
import typing as t

from .config import GETH_BINARY
from .errors import ConfigurationError, StartupError
from .models import NodeDescriptor, RunDescriptor
from .network import ConnectionManager, GethNode
from .node import NodeHandle
from .simulation import SimNetwork, SimNode


class Backend:
    """Creates node instances of one kind and owns their shared resources."""

    name = ""

    def node(self, descriptor: NodeDescriptor) -> NodeHandle:
        raise NotImplementedError

    def close(self) -> None:
        pass


class SimBackend(Backend):
    name = "sim"

    def __init__(self, run: RunDescriptor) -> None:
        self.network = SimNetwork(latency_ms=run.latency)

    def node(self, descriptor: NodeDescriptor) -> NodeHandle:
        return SimNode(descriptor, self.network)

    def close(self) -> None:
        self.network.close()


class GethBackend(Backend):
    name = "geth"

    def __init__(self, run: RunDescriptor, data_dir: str, binary: str = GETH_BINARY) -> None:
        self.data_dir = data_dir
        self.binary = binary
        self.connections = ConnectionManager()
        if run.latency or run.bandwidth:
            print(f"[Orchestrator] geth backend ignores latency={run.latency} bandwidth={run.bandwidth}")

    def node(self, descriptor: NodeDescriptor) -> NodeHandle:
        return GethNode(descriptor, self.data_dir, self.connections, binary=self.binary)

    def close(self) -> None:
        self.connections.close()


def make_backend(name: str, run: RunDescriptor, data_dir: str, **kwargs: t.Any) -> Backend:
    if name == SimBackend.name:
        return SimBackend(run)
    if name == GethBackend.name:
        return GethBackend(run, data_dir, **kwargs)
    raise ConfigurationError(f"Unknown backend: {name}")


class Orchestrator:
    """
    Brings up the whole topology or nothing.

    Usage:
        orchestrator = Orchestrator(run, backend)
        nodes = orchestrator.bootstrap()   # address -> NodeHandle
        ...
        orchestrator.shutdown()
    """

    def __init__(self, run: RunDescriptor, backend: Backend, mine_all: bool = False) -> None:
        self.run = run
        self.backend = backend
        self.mine_all = mine_all
        self.nodes: t.Dict[str, NodeHandle] = {}

    def bootstrap(self) -> t.Dict[str, NodeHandle]:
        """
        Start every node, then connect every listed peer.

        Peers are wired in a second pass because an endpoint is only known
        once its node has started.

        Raises:
            StartupError: any node failed to start or a peer failed to wire.
                Nodes already started are shut down first.
        """
        try:
            for descriptor in self.run.ordered():
                node = self.backend.node(descriptor)
                node.start()
                self.nodes[descriptor.address] = node
                if descriptor.is_miner or self.mine_all:
                    node.enable_mining()
            print(f"[Orchestrator] {len(self.nodes)} nodes started")

            edges = 0
            for descriptor in self.run.ordered():
                node = self.nodes[descriptor.address]
                for peer in descriptor.peers:
                    if peer not in self.nodes:
                        raise StartupError(f"{descriptor.name} lists unknown peer {peer}")
                    node.add_peer(self.nodes[peer].endpoint)
                    edges += 1
            print(f"[Orchestrator] {edges} peer connections requested")
        except StartupError:
            self.shutdown()
            raise
        except Exception as e:
            self.shutdown()
            raise StartupError(f"Orchestration aborted: {e}") from e
        return self.nodes

    def shutdown(self) -> None:
        """Stop every started node and release backend resources."""
        for node in self.nodes.values():
            node.stop()
        for node in self.nodes.values():
            node.wait(timeout=15)
        self.backend.close()
