"""
Command-line entry point for ethemu.

    ethemu gen --nodes 10 --miners 2 --min-peers 2 --max-peers 4
    ethemu init
    ethemu run --backend sim --strategy bench-txs --target 100
"""
import argparse
import os
import random
import shutil
import sys
import typing as t

from .config import (
    CONFIG_JSON,
    DEFAULT_BANDWIDTH,
    DEFAULT_LATENCY,
    DEFAULT_MAX_TX,
    DEFAULT_MIN_TX,
    DEFAULT_PERIOD,
    DEFAULT_SEAL_JITTER,
    GETH_BINARY,
)
from .controller import RunController
from .errors import ConfigurationError, EmulatorError
from .genesis import init_genesis
from .store import load_descriptor, store_descriptor
from .topology import DegreeBoundedPolicy, DensityPolicy, PeeringPolicy, check_parameters, generate_descriptor
from .workload import CONTINUOUS, STRATEGIES

COMMANDS = ("gen", "init", "run")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ethemu", description="Ethereum network emulation harness")
    parser.add_argument("--datadir", default="./data", help="Experiment data directory (default: ./data)")
    sub = parser.add_subparsers(dest="command")

    gen = sub.add_parser("gen", help="Generate roles, peer graph and node keystores")
    gen.add_argument("--nodes", type=int, required=True, help="Number of nodes")
    gen.add_argument("--miners", type=int, required=True, help="Number of miner nodes")
    gen.add_argument("--peers", type=int, help="Expected degree (density policy)")
    gen.add_argument("--min-peers", type=int, help="Lower degree bound (degree policy)")
    gen.add_argument("--max-peers", type=int, help="Upper degree bound (degree policy)")
    gen.add_argument("--period", type=int, default=DEFAULT_PERIOD, help="Block period in seconds")
    gen.add_argument("--min-tx", type=int, default=DEFAULT_MIN_TX, help="Min transactions per period")
    gen.add_argument("--max-tx", type=int, default=DEFAULT_MAX_TX, help="Max transactions per period")
    gen.add_argument("--latency", type=int, default=DEFAULT_LATENCY, help="Per-hop latency in ms")
    gen.add_argument("--bandwidth", type=int, default=DEFAULT_BANDWIDTH, help="Link bandwidth")
    gen.add_argument("--seed", type=int, help="Random seed for roles and peering")
    gen.add_argument("--force", action="store_true", help="Wipe an existing data directory")

    init = sub.add_parser("init", help="Write genesis.json and run geth init per node")
    init.add_argument("--geth", default=GETH_BINARY, help="geth binary")

    run = sub.add_parser("run", help="Start the network and drive a workload (default)")
    add_run_arguments(run)
    return parser


def add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--backend", choices=["geth", "sim"], default="geth")
    parser.add_argument("--strategy", choices=list(STRATEGIES), default=CONTINUOUS)
    parser.add_argument("--target", type=int, help="Benchmark target (tx count or block height)")
    parser.add_argument("--mine", action="store_true", help="Enable mining on every node")
    parser.add_argument("--traffic", action="store_true", help="Background traffic during bench-height")
    parser.add_argument("--block-log", help="CSV file of block events")
    parser.add_argument("--tx-log", help="CSV file of transaction events")
    parser.add_argument("--seal-jitter", type=float, default=DEFAULT_SEAL_JITTER,
                        help="Uniform +/- jitter in seconds added to the sealing period")
    parser.add_argument("--seed", type=int, help="Random seed for the workload")
    parser.add_argument("--duration", type=float, help="Stop after this many seconds")
    parser.add_argument("--geth", default=GETH_BINARY, help="geth binary")


def make_policy(args: argparse.Namespace) -> PeeringPolicy:
    degree = args.min_peers is not None or args.max_peers is not None
    if args.peers is not None and degree:
        raise ConfigurationError("Use either --peers or --min-peers/--max-peers, not both")
    if args.peers is not None:
        return DensityPolicy(args.peers)
    if args.min_peers is None or args.max_peers is None:
        raise ConfigurationError("Peering needs --peers, or both --min-peers and --max-peers")
    return DegreeBoundedPolicy(args.min_peers, args.max_peers)


def cmd_gen(args: argparse.Namespace) -> int:
    policy = make_policy(args)
    # Validate everything before --force may wipe a previous experiment
    check_parameters(args.nodes, args.miners, policy, args.period, args.min_tx, args.max_tx)
    if os.path.exists(os.path.join(args.datadir, CONFIG_JSON)):
        if not args.force:
            raise ConfigurationError(f"{args.datadir} already holds a run descriptor (use --force to replace it)")
        print(f"[Generator] Wiping {args.datadir}")
        shutil.rmtree(args.datadir)
    descriptor = generate_descriptor(
        args.datadir,
        args.nodes,
        args.miners,
        policy,
        args.period,
        args.min_tx,
        args.max_tx,
        latency=args.latency,
        bandwidth=args.bandwidth,
        rng=random.Random(args.seed),
    )
    path = store_descriptor(args.datadir, descriptor)
    print(f"[Generator] Run descriptor saved to {path}")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    descriptor = load_descriptor(args.datadir)
    path = init_genesis(args.datadir, descriptor, binary=args.geth)
    print(f"[Init] Genesis written to {path}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    controller = RunController(
        args.datadir,
        backend=args.backend,
        strategy=args.strategy,
        target=args.target,
        mine_all=args.mine,
        block_log=args.block_log,
        tx_log=args.tx_log,
        seed=args.seed,
        duration=args.duration,
        seal_jitter=args.seal_jitter,
        traffic=args.traffic,
        geth_binary=args.geth,
    )
    return controller.run()


HANDLERS: t.Dict[str, t.Callable[[argparse.Namespace], int]] = {
    "gen": cmd_gen,
    "init": cmd_init,
    "run": cmd_run,
}


def parse_args(argv: t.Optional[t.List[str]] = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    # `run` is the default command; its flags may be given without it
    i = _skip_global_options(argv)
    if i >= len(argv) or argv[i] not in COMMANDS + ("-h", "--help"):
        argv = argv[:i] + ["run"] + argv[i:]
    return parser.parse_args(argv)


def _skip_global_options(argv: t.List[str]) -> int:
    """Index of the first token after the global --datadir option, if present."""
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--datadir" and i + 1 < len(argv):
            i += 2
        elif arg.startswith("--datadir="):
            i += 1
        else:
            break
    return i


def main(argv: t.Optional[t.List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return HANDLERS[args.command](args)
    except EmulatorError as e:
        print(f"[Error] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
