import itertools
import time
import typing as t

import pytest

from ethemu.models import NodeDescriptor, PeeringParams, RunDescriptor


class FakeAccounts:
    """Stand-in for create_account: sequential addresses, no key derivation."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.keystores: t.List[str] = []

    def __call__(self, keystore_dir: str) -> str:
        self.keystores.append(keystore_dir)
        return "0x%040x" % next(self._ids)


def address(i: int) -> str:
    return "0x%040x" % (i + 1)


def make_run(
    n: int,
    miners: t.Iterable[int] = (0,),
    edges: t.Optional[t.Iterable[t.Tuple[int, int]]] = None,
    period: int = 1,
    min_tx_interval: int = 10,
    max_tx_interval: int = 20,
    latency: int = 0,
) -> RunDescriptor:
    """Hand-built descriptor; edges default to a line 0-1-2-...-(n-1)."""
    if edges is None:
        edges = [(i, i + 1) for i in range(n - 1)]
    miners = set(miners)
    roster = [NodeDescriptor(identity=i, address=address(i), is_miner=i in miners) for i in range(n)]
    for i, j in edges:
        roster[i].peers.append(roster[j].address)
        roster[j].peers.append(roster[i].address)
    for node in roster:
        node.peers.sort()
    return RunDescriptor(
        period=period,
        min_tx_interval=min_tx_interval,
        max_tx_interval=max_tx_interval,
        peering=PeeringParams(policy="degree", min_peers=1, max_peers=2),
        latency=latency,
        nodes={node.address: node for node in roster},
    )


@pytest.fixture
def accounts() -> FakeAccounts:
    return FakeAccounts()


def wait_until(predicate: t.Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
