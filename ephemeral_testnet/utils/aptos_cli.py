"""Wrapper around the `aptos` command line tool.

All transaction signing is delegated to the CLI. The framework only passes the key material read
from the genesis artifacts.
"""

import dataclasses
import json
import logging
import pathlib as pl
import secrets

import yaml

from ephemeral_testnet import exceptions
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import helpers
from ephemeral_testnet.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

# Core resources account. Its authentication key is rotated to the genesis root key and
# it holds the mint capability on local test networks.
CORE_RESOURCES_ADDRESS = "0xa550c18"

MINT_FUNCTION = "0x1::aptos_coin::mint"

# The CLI waits for the transaction to be committed
TX_TIMEOUT = 120


@dataclasses.dataclass(frozen=True, order=True)
class AccountRecord:
    address: str
    private_key: str = dataclasses.field(repr=False)


@dataclasses.dataclass(frozen=True)
class TransferResult:
    """Outcome of a transaction submitted through the CLI."""

    tx_hash: str
    success: bool
    vm_status: str
    gas_used: int
    sender: str
    raw: dict = dataclasses.field(default_factory=dict, repr=False, compare=False)


def normalize_address(address: str) -> str:
    """Return lowercase 0x-prefixed hex address.

    >>> normalize_address("A550C18")
    '0xa550c18'
    """
    addr = address.strip().lower()
    addr = addr.removeprefix("0x")
    if not addr or any(c not in "0123456789abcdef" for c in addr):
        msg = f"Invalid account address '{address}'."
        raise ValueError(msg)
    return f"0x{addr}"


def load_account_record(keys_file: ttypes.FileType) -> AccountRecord:
    """Load account address and private key from a genesis `private-keys.yaml` file."""
    keys_file = pl.Path(keys_file)
    try:
        with open(keys_file, encoding="utf-8") as in_fp:
            # All scalars are loaded as strings; hex addresses must not be coerced to numbers
            content = yaml.load(in_fp, Loader=yaml.BaseLoader)  # noqa: S506
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Failed to read account keys from '{keys_file}': {exc}"
        raise exceptions.FundingError(msg) from exc

    if not isinstance(content, dict):
        msg = f"Unexpected content of account keys file '{keys_file}'."
        raise exceptions.FundingError(msg)

    address = content.get("account_address")
    private_key = content.get("account_private_key")
    if not (address and private_key):
        msg = f"The `account_address` or `account_private_key` is missing in '{keys_file}'."
        raise exceptions.FundingError(msg)

    try:
        address = normalize_address(address)
    except ValueError as exc:
        msg = f"Invalid account address in '{keys_file}': {exc}"
        raise exceptions.FundingError(msg) from exc

    return AccountRecord(address=address, private_key=private_key)


def _parse_result(cli_out: bytes, *, cmd_name: str) -> TransferResult:
    try:
        out_json = json.loads(cli_out.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = f"Unexpected output from `{cmd_name}`: {cli_out!r}"
        raise exceptions.FundingError(msg) from exc

    if not isinstance(out_json, dict):
        msg = f"Unexpected output from `{cmd_name}`: {out_json}"
        raise exceptions.FundingError(msg)

    if "Error" in out_json:
        msg = f"`{cmd_name}` failed: {out_json['Error']}"
        raise exceptions.FundingError(msg)

    result = out_json.get("Result") or {}
    return TransferResult(
        tx_hash=result.get("transaction_hash") or "",
        success=bool(result.get("success")),
        vm_status=result.get("vm_status") or "",
        gas_used=int(result.get("gas_used") or 0),
        sender=result.get("sender") or "",
        raw=result,
    )


def _run_tx(
    args: list[str], *, sender: AccountRecord, api_url: str, cmd_name: str
) -> TransferResult:
    cmd = [
        configuration.APTOS_BIN,
        *args,
        "--sender-account",
        sender.address,
        "--private-key",
        sender.private_key,
        "--url",
        api_url,
        "--assume-yes",
    ]
    # The CLI reports errors as JSON on stdout together with a non-zero exit code
    cli_out = helpers.run_command(cmd, timeout=TX_TIMEOUT, ignore_fail=True)
    return _parse_result(cli_out, cmd_name=cmd_name)


def transfer(
    *, sender: AccountRecord, recipient: str, amount: int, api_url: str
) -> TransferResult:
    """Transfer `amount` from `sender` to `recipient`.

    The recipient account is created by the transfer if it doesn't exist yet.
    """
    return _run_tx(
        [
            "account",
            "transfer",
            "--account",
            normalize_address(recipient),
            "--amount",
            str(amount),
        ],
        sender=sender,
        api_url=api_url,
        cmd_name="aptos account transfer",
    )


def mint(*, root: AccountRecord, recipient: str, amount: int, api_url: str) -> TransferResult:
    """Mint `amount` into `recipient` account, signed as the core resources account."""
    core_resources = dataclasses.replace(root, address=CORE_RESOURCES_ADDRESS)
    return _run_tx(
        [
            "move",
            "run",
            "--function-id",
            MINT_FUNCTION,
            "--args",
            f"address:{normalize_address(recipient)}",
            f"u64:{amount}",
        ],
        sender=core_resources,
        api_url=api_url,
        cmd_name="aptos move run",
    )


def get_random_address() -> str:
    """Return random address with no key behind it, usable as a target of transfers."""
    return f"0x{secrets.token_hex(32)}"
