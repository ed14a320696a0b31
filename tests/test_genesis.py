import json
import os

import pytest

from conftest import address, make_run
from ethemu.errors import StartupError
from ethemu.genesis import build_genesis, init_genesis


def test_build_genesis_prefunds_every_node():
    doc = build_genesis(make_run(3), timestamp=1700000000)
    assert doc["config"]["chainId"] == 12345
    assert doc["config"]["istanbulBlock"] == 0
    assert "ethash" in doc["config"]
    assert doc["timestamp"] == hex(1700000000)
    assert doc["gasLimit"] == hex(4_700_000)
    assert doc["difficulty"] == hex(524_288)
    assert doc["extraData"] == "0x" + "00" * 32
    assert set(doc["alloc"]) == {address(i) for i in range(3)}
    assert all(entry["balance"] == hex(1 << 249) for entry in doc["alloc"].values())


def test_init_without_geth(tmp_path):
    with pytest.raises(StartupError):
        init_genesis(str(tmp_path), make_run(2), binary=str(tmp_path / "no-such-geth"))
    with open(os.path.join(str(tmp_path), "genesis.json")) as f:
        assert len(json.load(f)["alloc"]) == 2
