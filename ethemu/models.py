"""
Data model for ethemu.
Node roster & run-wide parameters shared by every cooperating process.
"""
import typing as t
from dataclasses import dataclass, field

from .config import node_name
from .errors import AddressNotFound

DENSITY_POLICY = "density"
DEGREE_POLICY = "degree"


@dataclass
class NodeDescriptor:
    identity: int
    address: str = ""
    is_miner: bool = False
    peers: t.List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return node_name(self.identity)


@dataclass
class PeeringParams:
    """How the peer graph of a run was built."""
    policy: str = DEGREE_POLICY
    peer_num: int = 0
    min_peers: int = 0
    max_peers: int = 0


@dataclass
class RunDescriptor:
    """
    Everything an orchestrating process needs to rebuild the experiment.

    Attributes:
        period: seconds between sealing attempts.
        min_tx_interval: lower bound of tx inter-arrival time, in ms.
        max_tx_interval: upper bound of tx inter-arrival time, in ms.
        peering: policy and parameters the peer graph was generated with.
        latency: per-hop delay in ms (simulation backend only).
        bandwidth: opaque bandwidth figure carried for external tooling.
        nodes: node address -> NodeDescriptor.
    """
    period: int
    min_tx_interval: int
    max_tx_interval: int
    peering: PeeringParams = field(default_factory=PeeringParams)
    latency: int = 0
    bandwidth: int = 0
    nodes: t.Dict[str, NodeDescriptor] = field(default_factory=dict)

    def ordered(self) -> t.List[NodeDescriptor]:
        """Roster sorted by identity."""
        return sorted(self.nodes.values(), key=lambda n: n.identity)

    def miners(self) -> t.List[str]:
        return [n.address for n in self.ordered() if n.is_miner]

    def non_miners(self) -> t.List[str]:
        return [n.address for n in self.ordered() if not n.is_miner]

    def address_by_name(self, name: str) -> str:
        """
        Resolve an `emuNNNNNN` node name to its account address.

        Library API for scripts that address nodes by directory name.
        """
        for node in self.nodes.values():
            if node.name == name:
                return node.address
        raise AddressNotFound(name)

    def edges(self) -> t.Set[t.FrozenSet[str]]:
        """Undirected peer edges as address pairs."""
        return {
            frozenset((node.address, peer))
            for node in self.nodes.values()
            for peer in node.peers
        }
