"""Tracking of consensus progress.

Block height is the progress metric. Ledger version also grows with every block, but one block
can contain any number of transactions.
"""

import concurrent.futures
import dataclasses
import logging

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import helpers
from ephemeral_testnet.utils import node_api

LOGGER = logging.getLogger(__name__)

# Lower bound for the per-request timeout close to the deadline
MIN_HTTP_TIMEOUT = 0.1


@dataclasses.dataclass(frozen=True, order=True)
class SyncStatus:
    heights: tuple[int, ...]
    spread: int
    tolerance: int
    in_sync: bool


def get_ledger_snapshot(
    handle: supervisor.ClusterHandle, member_index: int, *, timeout: float | None = None
) -> node_api.LedgerSnapshot:
    """Return fresh ledger snapshot of a single member."""
    member = handle.get_member(member_index)
    return node_api.get_ledger_info(member.api_url, member_index=member.index, timeout=timeout)


def get_ledger_snapshots(handle: supervisor.ClusterHandle) -> list[node_api.LedgerSnapshot]:
    """Return fresh ledger snapshots of all members, ordered by member index."""
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(handle.members)) as executor:
        futures = [executor.submit(get_ledger_snapshot, handle, m.index) for m in handle.members]
        return [f.result() for f in futures]


def get_member_heights(handle: supervisor.ClusterHandle) -> list[int]:
    """Return block heights of all members, ordered by member index."""
    return [s.block_height for s in get_ledger_snapshots(handle)]


def wait_for_blocks(
    handle: supervisor.ClusterHandle,
    member_index: int,
    n: int,
    timeout: float,
    *,
    interval: float | None = None,
) -> node_api.LedgerSnapshot:
    """Wait until block height of the member advances by at least `n` blocks.

    The start height is taken from the first successful response. A member that is temporarily
    unresponsive is polled again until the deadline.

    Return the snapshot that satisfied the condition.
    """
    if n < 0:
        msg = f"Number of blocks must not be negative, got {n}."
        raise ValueError(msg)
    interval = configuration.POLL_INTERVAL if interval is None else interval
    deadline = helpers.get_deadline(timeout)

    start: node_api.LedgerSnapshot | None = None
    snapshot: node_api.LedgerSnapshot | None = None
    last_error = ""
    while True:
        try:
            snapshot = get_ledger_snapshot(
                handle,
                member_index,
                timeout=min(
                    configuration.HTTP_TIMEOUT,
                    max(helpers.get_remaining(deadline), MIN_HTTP_TIMEOUT),
                ),
            )
        except exceptions.NodeApiError as exc:
            last_error = str(exc)
        else:
            last_error = ""
            if start is None:
                start = snapshot
                LOGGER.debug(
                    f"Waiting for {n} blocks on member {member_index}: "
                    f"{start.block_height} -> {start.block_height + n}"
                )
            if snapshot.block_height >= start.block_height + n:
                return snapshot

        if helpers.get_remaining(deadline) <= 0:
            if start is None or snapshot is None:
                msg = f"Member {member_index} didn't report its block height in {timeout} seconds."
            else:
                msg = (
                    f"Member {member_index} advanced by "
                    f"{snapshot.block_height - start.block_height} of {n} blocks in {timeout} "
                    f"seconds (height {snapshot.block_height})."
                )
            if last_error:
                msg = f"{msg} Last error: {last_error}"
            raise exceptions.BlocksTimeoutError(msg)

        helpers.sleep_until_next_poll(deadline, interval=interval)


def get_sync_status(
    handle: supervisor.ClusterHandle, *, tolerance: int | None = None
) -> SyncStatus:
    """Compare block heights of all members.

    Members are in sync when the spread between the highest and the lowest height is within
    the `tolerance`.
    """
    tolerance = configuration.SYNC_TOLERANCE if tolerance is None else tolerance
    if tolerance < 0:
        msg = f"Sync tolerance must not be negative, got {tolerance}."
        raise ValueError(msg)

    heights = tuple(get_member_heights(handle))
    spread = max(heights) - min(heights)
    return SyncStatus(
        heights=heights, spread=spread, tolerance=tolerance, in_sync=spread <= tolerance
    )


def is_in_sync(handle: supervisor.ClusterHandle, *, tolerance: int | None = None) -> bool:
    return get_sync_status(handle, tolerance=tolerance).in_sync


def wait_for_sync(
    handle: supervisor.ClusterHandle,
    timeout: float,
    *,
    tolerance: int | None = None,
    interval: float | None = None,
) -> SyncStatus:
    """Wait until all members are in sync. Return the status that satisfied the condition."""
    interval = configuration.POLL_INTERVAL if interval is None else interval
    deadline = helpers.get_deadline(timeout)

    while True:
        status = get_sync_status(handle, tolerance=tolerance)
        if status.in_sync:
            return status
        if helpers.get_remaining(deadline) <= 0:
            msg = (
                f"Members not in sync after {timeout} seconds: heights {list(status.heights)}, "
                f"spread {status.spread} > tolerance {status.tolerance}."
            )
            raise exceptions.TestnetTimeoutError(msg)
        helpers.sleep_until_next_poll(deadline, interval=interval)
