"""Programmatic interface for working with an ephemeral validator testnet.

Typical usage::

    handle = testnet.new(4, bootstrap_amount=100_000_000)
    try:
        tx_hash = testnet.fund(handle, address, 100)
        testnet.wait_for_blocks(handle, 0, 5, timeout=30)
    finally:
        testnet.teardown(handle)

There is at most one live cluster per process. Creating a new one tears down the previous one.
"""

import logging
import threading

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import common
from ephemeral_testnet.cluster_management import lifecycle
from ephemeral_testnet.cluster_management import readiness
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import faucet
from ephemeral_testnet.utils import framework_log
from ephemeral_testnet.utils import ledger
from ephemeral_testnet.utils import locking

LOGGER = logging.getLogger(__name__)

ClusterHandle = supervisor.ClusterHandle
ClusterSpec = supervisor.ClusterSpec
MemberHandle = supervisor.MemberHandle

bootstrap = faucet.bootstrap
fund = faucet.fund
get_balance = faucet.get_balance
get_ledger_snapshot = ledger.get_ledger_snapshot
get_member_heights = ledger.get_member_heights
wait_for_blocks = ledger.wait_for_blocks
get_sync_status = ledger.get_sync_status
is_in_sync = ledger.is_in_sync
wait_for_sync = ledger.wait_for_sync

_ACTIVE_LOCK = threading.RLock()
_active_handle: supervisor.ClusterHandle | None = None


def get_active_handle() -> supervisor.ClusterHandle | None:
    """Return the live cluster of this process, if any."""
    return _active_handle


def _set_active(handle: supervisor.ClusterHandle | None) -> None:
    global _active_handle  # noqa: PLW0603
    _active_handle = handle


def _clear_active(handle: supervisor.ClusterHandle) -> None:
    with _ACTIVE_LOCK:
        if _active_handle is handle:
            _set_active(None)


def _reset_previous() -> None:
    prev_handle = _active_handle
    if prev_handle is None or prev_handle.torn_down:
        return
    LOGGER.warning(f"Cluster '{prev_handle.spec.name}' is still running, tearing it down first")
    try:
        teardown(prev_handle)
    except exceptions.TeardownError as exc:
        # Leftovers are removed by the stale cleanup done by the start
        LOGGER.warning(f"Teardown of the previous cluster was not complete: {exc}")


def _abort(handle: supervisor.ClusterHandle) -> None:
    """Force-remove a cluster whose setup failed."""
    lifecycle.unregister_cleanup(handle)
    if not handle.torn_down:
        failed = supervisor.rollback(handle)
        handle.torn_down = True
        if failed:
            framework_log.framework_logger().error(
                f"Rollback of cluster '{handle.spec.name}' left resources behind: "
                f"{', '.join(failed)}"
            )
    _clear_active(handle)


def _get_logs_report(handle: supervisor.ClusterHandle, member_indices: list[int]) -> str:
    reports = []
    for idx in member_indices:
        member = handle.get_member(idx)
        logs = supervisor.get_member_logs(member).rstrip() or "<empty>"
        reports.append(f"--- last log lines of member {idx} ({member.container_name}) ---\n{logs}")
    return "\n".join(reports)


def new(
    member_count: int,
    *,
    bootstrap_amount: int | None = None,
    ready_timeout: float | None = None,
) -> supervisor.ClusterHandle:
    """Start a cluster of `member_count` validators and wait until all of them are ready.

    When `bootstrap_amount` is set, member accounts are funded with it, so the faucet can be
    used right away. Any failure removes everything that was created.
    """
    # Fails on invalid number of members before the container engine is touched
    spec = supervisor.ClusterSpec.from_config(member_count)

    with _ACTIVE_LOCK:
        _reset_previous()
        with locking.FileLockIfXdist(common.get_cluster_lock_file()):
            handle = supervisor.start(spec)
        lifecycle.register_cleanup(handle, teardown_func=teardown)
        _set_active(handle)

    try:
        readiness.await_ready(handle, ready_timeout)
    except exceptions.ReadinessTimeoutError as exc:
        logs_report = _get_logs_report(handle, exc.unready_members)
        _abort(handle)
        msg = f"{exc}\n{logs_report}"
        raise exceptions.ReadinessTimeoutError(msg, unready_members=exc.unready_members) from exc
    except Exception:
        _abort(handle)
        raise

    if bootstrap_amount is not None:
        try:
            faucet.bootstrap(handle, bootstrap_amount)
        except Exception:
            _abort(handle)
            raise

    return handle


def teardown(handle: supervisor.ClusterHandle | None = None) -> None:
    """Stop and remove the cluster. Without `handle`, the live cluster of this process is used.

    Calling it on a cluster that is already torn down does nothing.
    """
    handle = handle or _active_handle
    if handle is None:
        LOGGER.debug("No cluster to tear down")
        return
    try:
        lifecycle.teardown(handle)
    finally:
        _clear_active(handle)
