"""
Run descriptor persistence for ethemu.
Canonical JSON encoding at <data_dir>/config.json.
"""
import json
import os
import typing as t

from .config import CONFIG_JSON
from .errors import DescriptorDecodeError, DescriptorNotFound
from .models import NodeDescriptor, PeeringParams, RunDescriptor


def descriptor_path(data_dir: str) -> str:
    return os.path.join(data_dir, CONFIG_JSON)


def encode_descriptor(descriptor: RunDescriptor) -> t.Dict[str, t.Any]:
    """Map a RunDescriptor onto the on-disk document layout."""
    return {
        "Period": descriptor.period,
        "MinTxInterval": descriptor.min_tx_interval,
        "MaxTxInterval": descriptor.max_tx_interval,
        "Latency": descriptor.latency,
        "Bandwidth": descriptor.bandwidth,
        "Peering": {
            "Policy": descriptor.peering.policy,
            "PeerNum": descriptor.peering.peer_num,
            "MinPeers": descriptor.peering.min_peers,
            "MaxPeers": descriptor.peering.max_peers,
        },
        "Nodes": {
            address: {
                "Identity": node.identity,
                "Address": node.address,
                "IsMiner": node.is_miner,
                "Peers": list(node.peers),
            }
            for address, node in descriptor.nodes.items()
        },
    }


def decode_descriptor(doc: t.Dict[str, t.Any]) -> RunDescriptor:
    """Inverse of encode_descriptor. Raises DescriptorDecodeError on bad input."""
    try:
        peering = doc.get("Peering") or {}
        nodes: t.Dict[str, NodeDescriptor] = {}
        for address, raw in doc["Nodes"].items():
            node = NodeDescriptor(
                identity=int(raw["Identity"]),
                address=str(raw["Address"]),
                is_miner=bool(raw["IsMiner"]),
                peers=[str(p) for p in (raw.get("Peers") or [])],
            )
            if node.address != address:
                raise DescriptorDecodeError(f"Roster key {address} does not match node address {node.address}")
            nodes[address] = node
        return RunDescriptor(
            period=int(doc["Period"]),
            min_tx_interval=int(doc["MinTxInterval"]),
            max_tx_interval=int(doc["MaxTxInterval"]),
            peering=PeeringParams(
                policy=str(peering.get("Policy", PeeringParams.policy)),
                peer_num=int(peering.get("PeerNum", 0)),
                min_peers=int(peering.get("MinPeers", 0)),
                max_peers=int(peering.get("MaxPeers", 0)),
            ),
            latency=int(doc.get("Latency", 0)),
            bandwidth=int(doc.get("Bandwidth", 0)),
            nodes=nodes,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise DescriptorDecodeError(f"Malformed run descriptor: {e!r}") from e


def store_descriptor(data_dir: str, descriptor: RunDescriptor) -> str:
    """
    Write the descriptor to <data_dir>/config.json.

    The document is written to a sibling temp file and renamed into place,
    so a reader never observes a half-written file.

    Returns:
        Path of the written file.
    """
    os.makedirs(data_dir, exist_ok=True)
    path = descriptor_path(data_dir)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(encode_descriptor(descriptor), f, indent=2)
    os.replace(tmp_path, path)
    return path


def load_descriptor(data_dir: str) -> RunDescriptor:
    """
    Read the descriptor stored in data_dir.

    Raises:
        DescriptorNotFound: nothing was stored there yet.
        DescriptorDecodeError: the file is not a valid descriptor.
    """
    path = descriptor_path(data_dir)
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except FileNotFoundError as e:
        raise DescriptorNotFound(f"No run descriptor at {path}; run `ethemu gen` first") from e
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DescriptorDecodeError(f"Corrupt run descriptor at {path}: {e}") from e
    if not isinstance(doc, dict):
        raise DescriptorDecodeError(f"Corrupt run descriptor at {path}: expected an object")
    return decode_descriptor(doc)
