"""Wait until all members of the cluster serve the ledger API."""

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
class MemberProbe:
    member_index: int
    ready: bool
    snapshot: node_api.LedgerSnapshot | None = None
    last_error: str = ""

    def describe(self) -> str:
        if self.ready and self.snapshot:
            return f"ready (chain id {self.snapshot.chain_id})"
        return self.last_error or "no response"


def probe_member(
    member: supervisor.MemberHandle, *, expected_chain_id: int | None, timeout: float
) -> MemberProbe:
    """Check once whether the member serves the ledger API with the expected chain id."""
    try:
        snapshot = node_api.get_ledger_info(
            member.api_url, member_index=member.index, timeout=timeout
        )
    except exceptions.NodeApiError as exc:
        return MemberProbe(member_index=member.index, ready=False, last_error=str(exc))

    if expected_chain_id is not None and snapshot.chain_id != expected_chain_id:
        return MemberProbe(
            member_index=member.index,
            ready=False,
            snapshot=snapshot,
            last_error=(
                f"responding with chain id {snapshot.chain_id}, expected {expected_chain_id}"
            ),
        )

    return MemberProbe(member_index=member.index, ready=True, snapshot=snapshot)


def check_chain_ids(snapshots: list[node_api.LedgerSnapshot]) -> int:
    """Check that all members report the same chain id and return it."""
    chain_ids = {s.chain_id for s in snapshots}
    if len(chain_ids) != 1:
        per_member = ", ".join(f"member {s.member_index}: {s.chain_id}" for s in snapshots)
        msg = f"Members disagree on chain id ({per_member})."
        raise exceptions.ChainIdMismatchError(msg)
    return chain_ids.pop()


def await_ready(
    handle: supervisor.ClusterHandle,
    timeout: float | None = None,
    *,
    expected_chain_id: int | None = None,
    any_chain_id: bool = False,
    interval: float | None = None,
) -> list[node_api.LedgerSnapshot]:
    """Poll all members concurrently until every one of them is ready.

    A member responding with a chain id other than `expected_chain_id` (the chain id of the
    cluster spec by default) is not ready yet. With `any_chain_id`, any successful response
    makes the member ready. In both cases the chain ids are cross-checked once all members are
    ready.

    Return the snapshots of the ready members, ordered by member index.
    """
    timeout = configuration.READY_TIMEOUT if timeout is None else timeout
    if any_chain_id:
        expected_chain_id = None
    elif expected_chain_id is None:
        expected_chain_id = handle.spec.chain_id
    interval = configuration.POLL_INTERVAL if interval is None else interval
    deadline = helpers.get_deadline(timeout)

    probes: dict[int, MemberProbe] = {}
    pending = list(handle.members)
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(handle.members)) as executor:
        while True:
            http_timeout = max(
                min(configuration.HTTP_TIMEOUT, helpers.get_remaining(deadline)), MIN_HTTP_TIMEOUT
            )
            futures = [
                executor.submit(
                    probe_member, m, expected_chain_id=expected_chain_id, timeout=http_timeout
                )
                for m in pending
            ]
            for future in concurrent.futures.as_completed(futures):
                probe = future.result()
                probes[probe.member_index] = probe

            pending = [m for m in pending if not probes[m.index].ready]
            if not pending:
                break

            if helpers.get_remaining(deadline) <= 0:
                states = "\n".join(
                    f"  member {m.index}: {probes[m.index].describe()}" for m in pending
                )
                msg = (
                    f"{len(pending)} of {len(handle.members)} members not ready after {timeout} "
                    f"seconds:\n{states}"
                )
                raise exceptions.ReadinessTimeoutError(
                    msg, unready_members=[m.index for m in pending]
                )

            helpers.sleep_until_next_poll(deadline, interval=interval)

    snapshots = [probes[i].snapshot for i in sorted(probes)]
    ready_snapshots = [s for s in snapshots if s is not None]
    chain_id = check_chain_ids(ready_snapshots)
    handle.ready = True
    LOGGER.info(f"All {len(handle.members)} members are ready (chain id {chain_id})")
    return ready_snapshots
