"""Client of the validator REST API."""

import dataclasses
import logging
import typing as tp

import requests

from ephemeral_testnet import exceptions
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import http_client

LOGGER = logging.getLogger(__name__)

COIN_TYPE = "0x1::aptos_coin::AptosCoin"
BALANCE_FUNCTION = "0x1::coin::balance"


@dataclasses.dataclass(frozen=True, order=True)
class LedgerSnapshot:
    """Ledger status of a single member as returned by `GET /v1`."""

    member_index: int
    chain_id: int
    epoch: int
    ledger_version: int
    block_height: int
    ledger_timestamp: int
    oldest_ledger_version: int = 0
    oldest_block_height: int = 0
    node_role: str = ""
    git_hash: str | None = None

    @classmethod
    def from_response(cls, member_index: int, data: dict[str, tp.Any]) -> "LedgerSnapshot":
        """Create the snapshot out of the JSON document. Numeric fields are sent as strings."""
        try:
            return cls(
                member_index=member_index,
                chain_id=int(data["chain_id"]),
                epoch=int(data["epoch"]),
                ledger_version=int(data["ledger_version"]),
                block_height=int(data["block_height"]),
                ledger_timestamp=int(data["ledger_timestamp"]),
                oldest_ledger_version=int(data.get("oldest_ledger_version") or 0),
                oldest_block_height=int(data.get("oldest_block_height") or 0),
                node_role=data.get("node_role") or "",
                git_hash=data.get("git_hash"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Unexpected ledger info from member {member_index}: {data}"
            raise exceptions.NodeApiError(msg) from exc


def _request(
    method: str, url: str, *, timeout: float | None, json_data: tp.Any = None
) -> requests.Response:
    timeout = configuration.HTTP_TIMEOUT if timeout is None else timeout
    try:
        return http_client.get_session().request(method, url, json=json_data, timeout=timeout)
    except requests.RequestException as exc:
        msg = f"Request `{method} {url}` failed: {exc}"
        raise exceptions.NodeApiError(msg) from exc


def _get_json(resp: requests.Response) -> tp.Any:
    if not resp.ok:
        msg = (
            f"Request `{resp.request.method} {resp.url}` failed with {resp.status_code}: "
            f"{resp.text}"
        )
        raise exceptions.NodeApiError(msg, status_code=resp.status_code)
    try:
        return resp.json()
    except ValueError as exc:
        msg = f"Response of `{resp.request.method} {resp.url}` is not a valid JSON: {resp.text}"
        raise exceptions.NodeApiError(msg) from exc


def get_ledger_info(
    api_url: str, *, member_index: int, timeout: float | None = None
) -> LedgerSnapshot:
    """Fetch ledger info of a single member."""
    resp = _request("GET", f"{api_url}/v1", timeout=timeout)
    return LedgerSnapshot.from_response(member_index=member_index, data=_get_json(resp))


def account_exists(api_url: str, address: str, *, timeout: float | None = None) -> bool:
    resp = _request("GET", f"{api_url}/v1/accounts/{address}", timeout=timeout)
    if resp.status_code == 404:
        return False
    _get_json(resp)
    return True


def get_balance(api_url: str, address: str, *, timeout: float | None = None) -> int:
    """Return spendable balance of the account. Non-existent account has zero balance."""
    if not account_exists(api_url, address, timeout=timeout):
        return 0

    payload = {
        "function": BALANCE_FUNCTION,
        "type_arguments": [COIN_TYPE],
        "arguments": [address],
    }
    resp = _request("POST", f"{api_url}/v1/view", timeout=timeout, json_data=payload)
    out = _get_json(resp)
    try:
        return int(out[0])
    except (IndexError, KeyError, TypeError, ValueError) as exc:
        msg = f"Unexpected balance of '{address}': {out}"
        raise exceptions.NodeApiError(msg) from exc
