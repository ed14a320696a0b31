import csv

import pytest

from conftest import address, make_run, wait_until
from ethemu.errors import ConfigurationError
from ethemu.events import BLOCK_FIELDS, EventLog, RunLogs
from ethemu.orchestrator import Orchestrator, SimBackend


def read_rows(path):
    with open(path, newline="") as f:
        return list(csv.DictReader(f))


def test_event_log_appends_with_single_header(tmp_path):
    path = str(tmp_path / "logs" / "blocks.csv")
    log = EventLog(path, BLOCK_FIELDS)
    log.record(node="emu000000", address="0x1", height=1, hash="0xa", sealed=1)
    log.close()
    log = EventLog(path, BLOCK_FIELDS)
    log.record(node="emu000001", address="0x2", height=1, hash="0xa", sealed=0)
    log.close()
    log.record(node="ignored", address="0x3", height=2, hash="0xb", sealed=0)

    with open(path) as f:
        assert f.read().count("timestamp,node") == 1
    rows = read_rows(path)
    assert [r["node"] for r in rows] == ["emu000000", "emu000001"]


def test_run_logs_record_heads_and_txs(tmp_path):
    block_log = str(tmp_path / "blocks.csv")
    tx_log = str(tmp_path / "txs.csv")
    run = make_run(3, miners=(0,))
    orchestrator = Orchestrator(run, SimBackend(run))
    nodes = orchestrator.bootstrap()
    logs = RunLogs(block_log, tx_log)
    try:
        logs.watch(nodes)
        sender = nodes[address(2)]
        tx = sender.send_transaction(address(1), 42)
        logs.tx(sender, tx, address(1), 42)
        assert wait_until(lambda: nodes[address(0)].pending_contains(tx))
        nodes[address(0)].trigger_seal()
        assert wait_until(lambda: all(n.current_height() == 1 for n in nodes.values()))
    finally:
        orchestrator.shutdown()
        logs.close()

    blocks = [r for r in read_rows(block_log) if r["height"] == "1"]
    assert sorted(r["node"] for r in blocks) == ["emu000000", "emu000001", "emu000002"]
    assert {r["node"]: r["sealed"] for r in blocks} == {"emu000000": "1", "emu000001": "0", "emu000002": "0"}
    assert len({r["hash"] for r in blocks}) == 1

    txs = read_rows(tx_log)
    assert txs == [{
        "timestamp": txs[0]["timestamp"],
        "node": "emu000002",
        "hash": tx,
        "from": address(2),
        "to": address(1),
        "value": "42",
    }]


def test_run_logs_without_files_are_noops():
    logs = RunLogs()
    run = make_run(2)
    orchestrator = Orchestrator(run, SimBackend(run))
    nodes = orchestrator.bootstrap()
    try:
        logs.watch(nodes)
        logs.tx(nodes[address(0)], "0xabc", address(1), 1)
        logs.flush()
    finally:
        orchestrator.shutdown()
        logs.close()


def test_run_logs_reject_unwritable_path(tmp_path):
    with pytest.raises(ConfigurationError):
        RunLogs(str(tmp_path / "blocks.csv"), str(tmp_path))
    # The block log opened first is closed again, header included
    with open(tmp_path / "blocks.csv", newline="") as f:
        assert f.readline().strip() == ",".join(BLOCK_FIELDS)
