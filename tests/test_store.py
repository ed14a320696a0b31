import json
import os

import pytest

from conftest import address, make_run
from ethemu.errors import AddressNotFound, DescriptorDecodeError, DescriptorNotFound
from ethemu.store import descriptor_path, encode_descriptor, load_descriptor, store_descriptor


def test_store_and_load_round_trip(tmp_path):
    run = make_run(4, miners=(1,), latency=30)
    path = store_descriptor(str(tmp_path), run)
    assert path == os.path.join(str(tmp_path), "config.json")
    assert load_descriptor(str(tmp_path)) == run


def test_store_uses_go_compatible_keys(tmp_path):
    run = make_run(2)
    store_descriptor(str(tmp_path), run)
    with open(descriptor_path(str(tmp_path))) as f:
        doc = json.load(f)
    assert set(doc) >= {"Period", "MinTxInterval", "MaxTxInterval", "Nodes"}
    node = doc["Nodes"][address(0)]
    assert node == {"Identity": 0, "Address": address(0), "IsMiner": True, "Peers": [address(1)]}
    assert not os.path.exists(descriptor_path(str(tmp_path)) + ".tmp")


def test_store_overwrites(tmp_path):
    store_descriptor(str(tmp_path), make_run(2))
    store_descriptor(str(tmp_path), make_run(3))
    assert len(load_descriptor(str(tmp_path)).nodes) == 3


def test_load_missing(tmp_path):
    with pytest.raises(DescriptorNotFound):
        load_descriptor(str(tmp_path / "nowhere"))


@pytest.mark.parametrize("content", ["{not json", "[]", '{"Period": 12}', '{"Period": "x", "Nodes": {}}'])
def test_load_corrupt(tmp_path, content):
    with open(descriptor_path(str(tmp_path)), "w") as f:
        f.write(content)
    with pytest.raises(DescriptorDecodeError):
        load_descriptor(str(tmp_path))


def test_load_rejects_mismatched_roster_key(tmp_path):
    doc = encode_descriptor(make_run(2))
    doc["Nodes"]["0xdead"] = doc["Nodes"].pop(address(0))
    with open(descriptor_path(str(tmp_path)), "w") as f:
        json.dump(doc, f)
    with pytest.raises(DescriptorDecodeError):
        load_descriptor(str(tmp_path))


def test_load_tolerates_missing_optional_fields(tmp_path):
    doc = encode_descriptor(make_run(3))
    for key in ("Latency", "Bandwidth", "Peering"):
        del doc[key]
    with open(descriptor_path(str(tmp_path)), "w") as f:
        json.dump(doc, f)
    run = load_descriptor(str(tmp_path))
    assert run.latency == 0
    assert len(run.edges()) == 2


def test_address_by_name():
    run = make_run(3)
    assert run.address_by_name("emu000002") == address(2)
    with pytest.raises(AddressNotFound):
        run.address_by_name("emu000009")


def test_roles_and_ordering():
    run = make_run(5, miners=(0, 3))
    assert run.miners() == [address(0), address(3)]
    assert run.non_miners() == [address(1), address(2), address(4)]
    assert [n.identity for n in run.ordered()] == [0, 1, 2, 3, 4]
