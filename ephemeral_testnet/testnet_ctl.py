#!/usr/bin/env python3
"""Start, stop and inspect an ephemeral validator testnet.

For settings it uses the same env variables as when running the tests.
"""

import argparse
import logging
import signal
import sys

from ephemeral_testnet import exceptions
from ephemeral_testnet import testnet
from ephemeral_testnet.cluster_management import lifecycle
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import aptos_cli
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import docker_engine
from ephemeral_testnet.utils import helpers
from ephemeral_testnet.utils import ledger

LOGGER = logging.getLogger(__name__)

SMOKE_FUND_AMOUNT = 100
SMOKE_BLOCKS = 3
SMOKE_BLOCKS_TIMEOUT = 60


def get_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=(__doc__ or "").split("\n", maxsplit=1)[0])
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _add_size_arg(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "-n",
            "--members",
            type=int,
            default=configuration.TESTNET_SIZE,
            help=f"Number of cluster members (default: {configuration.TESTNET_SIZE}).",
        )

    start_parser = subparsers.add_parser("start", help="Start the cluster and leave it running.")
    _add_size_arg(start_parser)
    start_parser.add_argument(
        "-b",
        "--bootstrap-amount",
        type=helpers.check_positive_int,
        help="Fund member accounts with this amount, so the faucet can be used.",
    )
    start_parser.add_argument(
        "-t",
        "--ready-timeout",
        type=float,
        help=(
            "Seconds to wait for the members to be ready "
            f"(default: {configuration.READY_TIMEOUT})."
        ),
    )
    start_parser.add_argument(
        "-f",
        "--foreground",
        action="store_true",
        help="Keep running until interrupted, then tear the cluster down.",
    )

    subparsers.add_parser("stop", help="Remove all resources of the cluster.")

    status_parser = subparsers.add_parser("status", help="Show ledger status of the members.")
    _add_size_arg(status_parser)
    status_parser.add_argument(
        "--tolerance",
        type=int,
        help=f"Sync tolerance in blocks (default: {configuration.SYNC_TOLERANCE}).",
    )

    ports_parser = subparsers.add_parser("ports", help="Show addresses and ports of the members.")
    _add_size_arg(ports_parser)

    smoke_parser = subparsers.add_parser(
        "smoke", help="Start the cluster, exercise the faucet and progress tracking, tear down."
    )
    _add_size_arg(smoke_parser)
    smoke_parser.add_argument(
        "-b",
        "--bootstrap-amount",
        type=helpers.check_positive_int,
        default=configuration.BOOTSTRAP_AMOUNT,
        help=f"Per-member bootstrap amount (default: {configuration.BOOTSTRAP_AMOUNT}).",
    )

    return parser.parse_args(argv)


def _print_ports(spec: supervisor.ClusterSpec) -> None:
    print(f"{'member':>6}  {'ip':<15} {'api':>5} {'peer':>5} {'metrics':>7}")
    for i in range(spec.member_count):
        ports = spec.member_ports(i)
        print(f"{i:>6}  {spec.member_ip(i):<15} {ports.api:>5} {ports.peer:>5} {ports.metrics:>7}")


def cmd_start(args: argparse.Namespace) -> int:
    handle = testnet.new(
        args.members,
        bootstrap_amount=args.bootstrap_amount,
        ready_timeout=args.ready_timeout,
    )
    _print_ports(handle.spec)

    if not args.foreground:
        # Leave the cluster running after the command exits
        lifecycle.unregister_cleanup(handle)
        LOGGER.info("Cluster is running, use `testnet-ctl stop` to remove it")
        return 0

    LOGGER.info("Cluster is running, press Ctrl+C to tear it down")
    try:
        while not handle.torn_down:
            signal.pause()
    except KeyboardInterrupt:
        pass
    # No-op when already done by the signal handler
    testnet.teardown(handle)
    return 0


def cmd_stop(args: argparse.Namespace) -> int:  # noqa: ARG001
    docker_engine.check_engine()
    removed = supervisor.cleanup_stale(configuration.TESTNET_NAME)
    LOGGER.info(
        f"Cluster '{configuration.TESTNET_NAME}' removed ({removed} containers and volumes)"
    )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    spec = supervisor.ClusterSpec.from_config(args.members)
    handle = supervisor.attach(spec)

    for member in handle.members:
        try:
            snapshot = ledger.get_ledger_snapshot(handle, member.index)
        except exceptions.NodeApiError as exc:
            print(f"member {member.index}: not responding ({exc})")
            continue
        print(
            f"member {member.index}: chain id {snapshot.chain_id}, epoch {snapshot.epoch}, "
            f"height {snapshot.block_height}, version {snapshot.ledger_version}"
        )

    status = ledger.get_sync_status(handle, tolerance=args.tolerance)
    print(
        f"in sync: {status.in_sync} (spread {status.spread} blocks, "
        f"tolerance {status.tolerance})"
    )
    return 0 if status.in_sync else 1


def cmd_ports(args: argparse.Namespace) -> int:
    _print_ports(supervisor.ClusterSpec.from_config(args.members))
    return 0


def cmd_smoke(args: argparse.Namespace) -> int:
    handle = testnet.new(args.members, bootstrap_amount=args.bootstrap_amount)
    try:
        address = aptos_cli.get_random_address()
        for expected in (SMOKE_FUND_AMOUNT, 2 * SMOKE_FUND_AMOUNT):
            testnet.fund(handle, address, SMOKE_FUND_AMOUNT)
            balance = testnet.get_balance(handle, address)
            if balance != expected:
                LOGGER.error(f"Unexpected balance of '{address}': {balance}, expected {expected}")
                return 1

        testnet.wait_for_blocks(handle, 0, SMOKE_BLOCKS, SMOKE_BLOCKS_TIMEOUT)
        status = testnet.get_sync_status(handle)
        if not status.in_sync:
            LOGGER.error(f"Members are not in sync: {status}")
            return 1
    finally:
        testnet.teardown(handle)

    LOGGER.info("Smoke test passed")
    return 0


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "ports": cmd_ports,
    "smoke": cmd_smoke,
}


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(format="%(levelname)s:%(message)s", level=logging.INFO)
    args = get_args(argv)

    try:
        return COMMANDS[args.command](args)
    except exceptions.TestnetError as exc:
        print(f"{exc.kind}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
