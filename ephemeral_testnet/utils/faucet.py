"""Funding of test accounts.

The genesis root account is used only once, to mint the initial balance into the accounts of
the cluster members. Test accounts are then funded by ordinary transfers from a randomly
selected member account.
"""

import functools
import logging
import pathlib as pl
import random
import threading

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import aptos_cli
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import helpers
from ephemeral_testnet.utils import node_api

LOGGER = logging.getLogger(__name__)

_BOOTSTRAP_LOCK = threading.Lock()


@functools.cache
def _load_account(keys_file: pl.Path) -> aptos_cli.AccountRecord:
    return aptos_cli.load_account_record(keys_file)


def get_member_account(member: supervisor.MemberHandle) -> aptos_cli.AccountRecord:
    """Return account of the cluster member, as stored in the genesis artifacts."""
    return _load_account(member.keys_file)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        msg = f"Amount must be a positive integer, got '{amount!r}'."
        raise ValueError(msg)


def _wait_for_balances(
    handle: supervisor.ClusterHandle,
    expected: dict[str, int],
    *,
    timeout: float,
) -> None:
    """Wait until each member observes the expected balance of its own account."""
    deadline = helpers.get_deadline(timeout)
    api_urls = {get_member_account(m).address: m.api_url for m in handle.members}
    pending = dict(expected)
    while True:
        for address, min_balance in list(pending.items()):
            try:
                balance = node_api.get_balance(api_urls[address], address)
            except exceptions.NodeApiError as exc:
                LOGGER.debug(f"Failed to get balance of '{address}': {exc}")
                continue
            if balance >= min_balance:
                del pending[address]

        if not pending:
            return
        if helpers.get_remaining(deadline) <= 0:
            msg = f"Minted funds not observed in time on accounts: {', '.join(pending)}"
            raise exceptions.FundingError(msg)
        helpers.sleep_until_next_poll(deadline, interval=configuration.POLL_INTERVAL)


def bootstrap(
    handle: supervisor.ClusterHandle, amount_per_member: int, *, timeout: float | None = None
) -> list[aptos_cli.TransferResult]:
    """Mint `amount_per_member` into the account of every cluster member.

    Can be done only once per cluster. The funded flag is set only after the minted amount
    is observed on all member accounts.
    """
    _check_amount(amount_per_member)
    timeout = configuration.READY_TIMEOUT if timeout is None else timeout

    if not handle.ready:
        msg = "The cluster is not ready, bootstrap funding needs all members to be ready."
        raise exceptions.FundingError(msg)

    with _BOOTSTRAP_LOCK:
        if handle.bootstrap_attempted or handle.funded:
            msg = f"Bootstrap of cluster '{handle.spec.name}' was already attempted."
            raise exceptions.AlreadyBootstrappedError(msg)
        handle.bootstrap_attempted = True

    root = _load_account(handle.spec.root_keys_file)
    accounts = [get_member_account(m) for m in handle.members]
    submit_url = handle.members[0].api_url

    expected: dict[str, int] = {}
    results = []
    for member, account in zip(handle.members, accounts):
        try:
            initial_balance = node_api.get_balance(member.api_url, account.address)
            result = aptos_cli.mint(
                root=root, recipient=account.address, amount=amount_per_member, api_url=submit_url
            )
        except (exceptions.NodeApiError, exceptions.CLIError) as exc:
            msg = f"Failed to mint funds for member {member.index}: {exc}"
            raise exceptions.FundingError(msg) from exc

        if not result.success:
            msg = f"Mint for member {member.index} failed on chain: {result.vm_status}"
            raise exceptions.FundingError(msg, result=result)

        LOGGER.info(
            f"Minted {amount_per_member} to member {member.index} ({account.address}), "
            f"tx {result.tx_hash}"
        )
        expected[account.address] = initial_balance + amount_per_member
        results.append(result)

    _wait_for_balances(handle=handle, expected=expected, timeout=timeout)
    handle.mark_funded()
    LOGGER.info(f"Cluster '{handle.spec.name}' bootstrapped with {amount_per_member} per member")
    return results


def fund(handle: supervisor.ClusterHandle, address: str, amount: int) -> str:
    """Transfer `amount` to `address` from a randomly selected member account.

    The target account is created by the transfer if it doesn't exist. Return the transaction
    hash.
    """
    _check_amount(amount)
    if not handle.funded:
        msg = "The cluster was not bootstrapped, member accounts have no funds to transfer."
        raise exceptions.FundingError(msg)
    recipient = aptos_cli.normalize_address(address)

    member = random.choice(handle.members)
    sender = get_member_account(member)
    with handle.member_locks[member.index].acquire():
        try:
            result = aptos_cli.transfer(
                sender=sender, recipient=recipient, amount=amount, api_url=member.api_url
            )
        except exceptions.CLIError as exc:
            msg = f"Failed to transfer {amount} from member {member.index} to '{recipient}': {exc}"
            raise exceptions.FundingError(msg) from exc

    if not result.success:
        msg = (
            f"Transfer of {amount} from member {member.index} to '{recipient}' failed on chain: "
            f"{result.vm_status}"
        )
        raise exceptions.FundingError(msg, result=result)

    handle.funding_members[recipient] = member.index
    LOGGER.info(
        f"Funded '{recipient}' with {amount} from member {member.index}, tx {result.tx_hash}"
    )
    return result.tx_hash


def get_balance(
    handle: supervisor.ClusterHandle, address: str, *, member_index: int | None = None
) -> int:
    """Return balance of the account as seen by the given member.

    `fund` waits for the transfer only on the member that sent it, other members can lag
    behind for a moment. By default the balance is read from the member that last funded the
    account, or from the first member when the faucet didn't fund it.
    """
    address = aptos_cli.normalize_address(address)
    if member_index is None:
        member_index = handle.funding_members.get(address, 0)
    member = handle.get_member(member_index)
    return node_api.get_balance(member.api_url, address)
