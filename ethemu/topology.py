"""
Role & topology generation for ethemu.
Builds the node roster, miner roles and the symmetric peer graph.

Generation order is fixed: identities -> addresses -> roles -> peering,
so a seeded run always draws the same roles and graph.
"""
import os
import random
import typing as t

from .config import (
    DENSITY_BLEND,
    PEERING_MAX_ATTEMPTS,
    PEERING_MAX_ROUNDS,
    KEYSTORE_DIR,
    node_name,
)
from .errors import ConfigurationError
from .identity import create_account
from .models import (
    DEGREE_POLICY,
    DENSITY_POLICY,
    NodeDescriptor,
    PeeringParams,
    RunDescriptor,
)
from .sampling import sample_without_replacement

# Adjacency by node index
Adjacency = t.List[t.Set[int]]


class PeeringPolicy:
    """Base class of the named peer-graph generation strategies."""

    name = ""

    def check_feasible(self, n: int) -> None:
        """Raise ConfigurationError if no graph on n nodes can satisfy the policy."""

    def build(self, n: int, rng: random.Random) -> Adjacency:
        raise NotImplementedError

    def params(self) -> PeeringParams:
        raise NotImplementedError


class DensityPolicy(PeeringPolicy):
    """
    Locality-biased random graph.

    Every unordered pair (i, j) is connected with probability
        p(i, j) = blend * density + (1 - blend) * theta(i, j)
    where density = peer_num / (n - 1) and theta is 1 when the circular
    distance of i and j, normalised by n // 2, does not exceed density.
    """

    name = DENSITY_POLICY

    def __init__(self, peer_num: int, blend: float = DENSITY_BLEND) -> None:
        if peer_num < 0:
            raise ConfigurationError(f"Target peer count must be >= 0, got {peer_num}")
        self.peer_num = peer_num
        self.blend = blend

    def probability(self, n: int, i: int, j: int) -> float:
        density = self.peer_num / (n - 1)
        max_dist = n // 2
        dist = abs(i - j)
        theta = 1 if density - min(dist, n - dist) / max_dist >= 0 else 0
        return self.blend * density + (1 - self.blend) * theta

    def build(self, n: int, rng: random.Random) -> Adjacency:
        adj: Adjacency = [set() for _ in range(n)]
        for i in range(n):
            for j in range(i + 1, n):
                if rng.random() < self.probability(n, i, j):
                    adj[i].add(j)
                    adj[j].add(i)
        return adj

    def params(self) -> PeeringParams:
        return PeeringParams(policy=self.name, peer_num=self.peer_num)


class DegreeBoundedPolicy(PeeringPolicy):
    """
    Random graph with every degree inside [min_peers, max_peers].

    Nodes below the minimum repeatedly pick a random partner that is not
    themselves, not yet a peer and not at the maximum. A greedy attempt can
    paint itself into a corner, so attempts are capped and restarted.
    """

    name = DEGREE_POLICY

    def __init__(
        self,
        min_peers: int,
        max_peers: int,
        max_rounds: int = PEERING_MAX_ROUNDS,
        max_attempts: int = PEERING_MAX_ATTEMPTS,
    ) -> None:
        if min_peers < 0 or max_peers < min_peers:
            raise ConfigurationError(f"Invalid peer bounds [{min_peers}, {max_peers}]")
        self.min_peers = min_peers
        self.max_peers = max_peers
        self.max_rounds = max_rounds
        self.max_attempts = max_attempts

    def check_feasible(self, n: int) -> None:
        if self.min_peers > n - 1:
            raise ConfigurationError(
                f"min peers {self.min_peers} cannot be met with {n} nodes (at most {n - 1} peers each)"
            )
        if self.min_peers == self.max_peers and (self.min_peers * n) % 2:
            # Degree sum of an undirected graph is even
            raise ConfigurationError(f"No {self.min_peers}-regular graph exists on {n} nodes")

    def _attempt(self, n: int, rng: random.Random) -> t.Optional[Adjacency]:
        adj: Adjacency = [set() for _ in range(n)]
        for _ in range(self.max_rounds):
            progressed = False
            for i in range(n):
                while len(adj[i]) < self.min_peers:
                    candidates = [
                        j for j in range(n)
                        if j != i and j not in adj[i] and len(adj[j]) < self.max_peers
                    ]
                    if not candidates:
                        break
                    j = candidates[rng.randrange(len(candidates))]
                    adj[i].add(j)
                    adj[j].add(i)
                    progressed = True
            if all(self.min_peers <= len(peers) <= self.max_peers for peers in adj):
                return adj
            if not progressed:
                # Stuck: every node short of peers has no admissible partner left
                return None
        return None

    def build(self, n: int, rng: random.Random) -> Adjacency:
        self.check_feasible(n)
        for attempt in range(1, self.max_attempts + 1):
            adj = self._attempt(n, rng)
            if adj is not None:
                return adj
            print(f"[Generator] Degree attempt {attempt}/{self.max_attempts} stuck, restarting")
        raise ConfigurationError(
            f"Could not build a graph with degrees in [{self.min_peers}, {self.max_peers}] "
            f"for {n} nodes after {self.max_attempts} attempts"
        )

    def params(self) -> PeeringParams:
        return PeeringParams(policy=self.name, min_peers=self.min_peers, max_peers=self.max_peers)


def assign_miners(n: int, miners: int, rng: random.Random) -> t.List[bool]:
    """Flag exactly `miners` of the n indices, chosen uniformly at random."""
    if miners < 0 or miners > n:
        raise ConfigurationError(f"Miner count must be within [0, {n}], got {miners}")
    flags = [False] * n
    for idx in sample_without_replacement(rng, range(n), miners):
        flags[idx] = True
    return flags


def tx_intervals(period: int, min_tx: int, max_tx: int) -> t.Tuple[int, int]:
    """
    Convert tx-per-period bounds into inter-arrival bounds in ms.

    Returns:
        (min_interval_ms, max_interval_ms)
    """
    if period <= 0:
        raise ConfigurationError(f"Block period must be positive, got {period}")
    if min_tx <= 0 or max_tx < min_tx:
        raise ConfigurationError(f"Invalid tx-per-period bounds [{min_tx}, {max_tx}]")
    return period * 1000 // max_tx, period * 1000 // min_tx


def check_parameters(
    nodes: int, miners: int, policy: PeeringPolicy, period: int, min_tx: int, max_tx: int
) -> t.Tuple[int, int]:
    """
    Validate generation parameters without touching the filesystem.

    Returns:
        (min_interval_ms, max_interval_ms), as tx_intervals.
    """
    if nodes < 2:
        raise ConfigurationError(f"Need at least 2 nodes, got {nodes}")
    if miners < 0 or miners > nodes:
        raise ConfigurationError(f"Miner count must be within [0, {nodes}], got {miners}")
    policy.check_feasible(nodes)
    return tx_intervals(period, min_tx, max_tx)


def generate_descriptor(
    data_dir: str,
    nodes: int,
    miners: int,
    policy: PeeringPolicy,
    period: int,
    min_tx: int,
    max_tx: int,
    latency: int = 0,
    bandwidth: int = 0,
    rng: t.Optional[random.Random] = None,
    account_factory: t.Callable[[str], str] = create_account,
) -> RunDescriptor:
    """
    Build a complete RunDescriptor for a new experiment.

    Args:
        data_dir: Experiment data directory; node keystores go to
            <data_dir>/emuNNNNNN/keystore.
        nodes: Node count (>= 2).
        miners: Number of nodes flagged as miners.
        policy: Peering strategy.
        period: Block period in seconds.
        min_tx, max_tx: Transactions per period bounds.
        rng: Random source; seeded for reproducible roles and graphs.
        account_factory: Creates an account in a keystore dir, returns its address.
    """
    # Reject bad parameters before any keystore is written
    min_interval, max_interval = check_parameters(nodes, miners, policy, period, min_tx, max_tx)
    rng = rng or random.Random()

    roster = [NodeDescriptor(identity=i) for i in range(nodes)]
    for node in roster:
        keystore = os.path.join(data_dir, node_name(node.identity), KEYSTORE_DIR)
        node.address = account_factory(keystore)

    for node, flag in zip(roster, assign_miners(nodes, miners, rng)):
        node.is_miner = flag

    adj = policy.build(nodes, rng)
    for i, node in enumerate(roster):
        node.peers = [roster[j].address for j in sorted(adj[i])]

    degrees = [len(peers) for peers in adj]
    print(
        f"[Generator] {nodes} nodes, {miners} miners, policy={policy.name}, "
        f"degree min/avg/max = {min(degrees)}/{sum(degrees) / nodes:.2f}/{max(degrees)}"
    )
    return RunDescriptor(
        period=period,
        min_tx_interval=min_interval,
        max_tx_interval=max_interval,
        peering=policy.params(),
        latency=latency,
        bandwidth=bandwidth,
        nodes={node.address: node for node in roster},
    )
