"""Fakes of the container engine, the `aptos` CLI and the validator REST API.

The framework code runs unchanged, only the external commands and the HTTP session are
replaced by an in-memory cluster.
"""

import json
import pathlib as pl
import threading
import time
import types as tt
import typing as tp
import urllib.parse

import requests

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import common
from ephemeral_testnet.utils import aptos_cli
from ephemeral_testnet.utils import configuration

# Digits only, a YAML loader with implicit typing would turn it into a number
ROOT_ADDRESS = "9" * 64

MEMBER_PRIVATE_KEY = f"0x{'ab' * 32}"

FAKE_LOG_LINE = "validator: committed block"


def get_member_address(index: int) -> str:
    """Return address of the member account as written in the genesis artifacts."""
    return f"{index + 1:064x}"


def write_keys(keys_file: pl.Path, address: str) -> None:
    keys_file.write_text(
        f"account_address: {address}\n"
        f'account_private_key: "{MEMBER_PRIVATE_KEY}"\n'
        f'consensus_private_key: "0x{"cd" * 32}"\n',
        encoding="utf-8",
    )


def _get_flag_values(args: list[str], flag: str) -> list[str]:
    return [args[i + 1] for i, a in enumerate(args[:-1]) if a == flag]


def _get_flag_value(args: list[str], flag: str) -> str:
    values = _get_flag_values(args, flag)
    return values[0] if values else ""


def _cli_error(err: str) -> exceptions.CLIError:
    return exceptions.CLIError(
        f"An error occurred while running the command: {err}", returncode=1, stderr=err
    )


class FakeResponse:
    def __init__(self, method: str, url: str, status_code: int, payload: tp.Any) -> None:
        self.request = tt.SimpleNamespace(method=method)
        self.url = url
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    @property
    def text(self) -> str:
        return json.dumps(self._payload)

    def json(self) -> tp.Any:
        return self._payload


class FakeTestnet:
    """In-memory cluster behind the `docker` and `aptos` commands and the REST API."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.calls: list[list[str]] = []
        self.http_calls: list[tuple[str, str]] = []

        # Container engine
        self.engine_available = True
        self.image_available = True
        self.containers: dict[str, dict] = {}
        self.volumes: dict[str, dict] = {}
        self.networks: dict[str, dict] = {}
        self.failing_runs: set[str] = set()
        self.failing_stops: set[str] = set()
        self.undeletable: set[str] = set()

        # REST API
        self.chain_ids: dict[int, int] = {}
        self.heights: dict[int, int] = {}
        self.height_step = 1
        # Number of requests the member fails before it starts responding, -1 for never
        self.unresponsive: dict[int, int] = {}
        self.balances: dict[str, int] = {}

        # aptos CLI
        self.transactions: list[dict] = []
        self.failing_transfers = False
        self.cli_error = ""
        self.transfer_delay = 0.0
        self.active_senders: set[str] = set()
        self.concurrent_spends: list[str] = []

    def get_docker_calls(self, *subcommand: str) -> list[list[str]]:
        size = len(subcommand)
        return [
            c[1:]
            for c in self.calls
            if c[0] == configuration.DOCKER_BIN and tuple(c[1 : size + 1]) == subcommand
        ]

    def add_resource(self, kind: str, name: str, *, cluster_name: str = "") -> None:
        """Add a resource as if it was left behind by a previous run."""
        labels = {configuration.CLUSTER_LABEL: cluster_name or configuration.TESTNET_NAME}
        record: dict[str, tp.Any] = {"labels": labels}
        if kind == "container":
            record.update({"running": True, "env": {}})
            self.containers[name] = record
        elif kind == "volume":
            self.volumes[name] = record
        else:
            self.networks[name] = record

    def run_command(
        self,
        command: tp.Any,
        *,
        workdir: tp.Any = "",  # noqa: ARG002
        ignore_fail: bool = False,  # noqa: ARG002
        timeout: float | None = None,  # noqa: ARG002
        env: dict[str, str] | None = None,  # noqa: ARG002
        merge_stderr: bool = False,  # noqa: ARG002
    ) -> bytes:
        cmd = command.split() if isinstance(command, str) else list(command)
        with self.lock:
            self.calls.append(cmd)

        if cmd[0] == configuration.DOCKER_BIN:
            with self.lock:
                return self._docker(cmd[1:])
        if cmd[0] == configuration.APTOS_BIN:
            return self._aptos(cmd[1:])
        raise _cli_error(f"{cmd[0]}: command not found")

    # Container engine

    def _list(self, store: dict[str, dict], args: list[str]) -> bytes:
        label_filter = _get_flag_value(args, "--filter").removeprefix("label=")
        key, __, value = label_filter.partition("=")
        names = [n for n, r in store.items() if r["labels"].get(key) == value]
        return "\n".join(names).encode()

    def _remove(self, store: dict[str, dict], kind: str, name: str) -> bytes:
        if name in self.undeletable:
            raise _cli_error(f"Error response from daemon: remove {name}: permission denied")
        if name not in store:
            raise _cli_error(f"Error: No such {kind}: {name}")
        del store[name]
        return name.encode()

    def _create(self, store: dict[str, dict], kind: str, args: list[str]) -> bytes:
        name = args[-1]
        if name in store:
            raise _cli_error(f"Error response from daemon: {kind} with name {name} already exists")
        labels = dict(v.split("=", 1) for v in _get_flag_values(args, "--label"))
        store[name] = {"labels": labels}
        return name.encode()

    def _run(self, args: list[str]) -> bytes:
        name = _get_flag_value(args, "--name")
        if name in self.containers:
            raise _cli_error(f'Conflict. The container name "/{name}" is already in use')
        self.containers[name] = {
            "labels": dict(v.split("=", 1) for v in _get_flag_values(args, "--label")),
            "env": dict(v.split("=", 1) for v in _get_flag_values(args, "--env")),
            "ports": _get_flag_values(args, "--publish"),
            "mounts": _get_flag_values(args, "--volume"),
            "ip": _get_flag_value(args, "--ip"),
            "network": _get_flag_value(args, "--network"),
            "image": args[-1],
            "running": name not in self.failing_runs,
        }
        if name in self.failing_runs:
            raise _cli_error(
                "Error response from daemon: driver failed programming external connectivity: "
                "Bind for 0.0.0.0:8080 failed: port is already allocated"
            )
        return f"{len(self.containers):064x}".encode()

    def _docker(self, args: list[str]) -> bytes:  # noqa: PLR0911
        if not self.engine_available:
            raise _cli_error(
                "Cannot connect to the Docker daemon at unix:///var/run/docker.sock. "
                "Is the docker daemon running?"
            )

        subcommand = args[0]
        if subcommand == "info":
            return b'"27.3.1"'
        if subcommand == "image":
            if not self.image_available:
                raise _cli_error(f"Error: No such image: {args[-1]}")
            return b"[{}]"
        if subcommand == "ps":
            return self._list(self.containers, args)
        if subcommand in ("volume", "network"):
            store = self.volumes if subcommand == "volume" else self.networks
            action = args[1]
            if action == "ls":
                return self._list(store, args)
            if action == "create":
                return self._create(store, subcommand, args)
            if action == "rm":
                return self._remove(store, subcommand, args[-1])
        if subcommand == "run":
            return self._run(args)
        if subcommand == "rm":
            return self._remove(self.containers, "container", args[-1])
        if subcommand == "stop":
            name = args[-1]
            if name in self.failing_stops:
                msg = f"Command `docker stop {name}` timed out."
                raise exceptions.CommandTimeoutError(msg)
            if name not in self.containers:
                raise _cli_error(f"Error response from daemon: No such container: {name}")
            self.containers[name]["running"] = False
            return name.encode()
        if subcommand == "inspect":
            name = args[-1]
            if name not in self.containers:
                raise _cli_error(f"Error: No such object: {name}")
            running = self.containers[name]["running"]
            state = {"Status": "running" if running else "exited", "Running": running}
            return json.dumps(state).encode()
        if subcommand == "logs":
            name = args[-1]
            if name not in self.containers:
                return f"Error response from daemon: No such container: {name}\n".encode()
            return f"{FAKE_LOG_LINE}\n".encode()

        raise _cli_error(f"unknown command: docker {subcommand}")

    # aptos CLI

    def _aptos(self, args: list[str]) -> bytes:
        if self.cli_error:
            return json.dumps({"Error": self.cli_error}).encode()

        sender = _get_flag_value(args, "--sender-account")
        if args[:2] == ["account", "transfer"]:
            recipient = _get_flag_value(args, "--account")
            amount = int(_get_flag_value(args, "--amount"))
            return self._submit(kind="transfer", sender=sender, recipient=recipient, amount=amount)
        if args[:2] == ["move", "run"]:
            args_idx = args.index("--args")
            recipient = args[args_idx + 1].split(":", 1)[1]
            amount = int(args[args_idx + 2].split(":", 1)[1])
            if sender != aptos_cli.CORE_RESOURCES_ADDRESS:
                return json.dumps({"Error": "Unexpected error: missing mint capability"}).encode()
            return self._submit(kind="mint", sender=sender, recipient=recipient, amount=amount)

        return json.dumps({"Error": f"Unexpected arguments: {args}"}).encode()

    def _submit(self, *, kind: str, sender: str, recipient: str, amount: int) -> bytes:
        with self.lock:
            if sender in self.active_senders:
                self.concurrent_spends.append(sender)
            self.active_senders.add(sender)

        try:
            time.sleep(self.transfer_delay)
            with self.lock:
                tx_hash = f"0x{len(self.transactions) + 1:064x}"
                vm_status = "Executed successfully"
                if self.failing_transfers:
                    vm_status = "Out of gas"
                elif kind == "transfer" and self.balances.get(sender, 0) < amount:
                    vm_status = "Move abort in 0x1::coin: EINSUFFICIENT_BALANCE(0x10006)"
                success = vm_status == "Executed successfully"

                if success:
                    if kind == "transfer":
                        self.balances[sender] -= amount
                    self.balances[recipient] = self.balances.get(recipient, 0) + amount
                self.transactions.append(
                    {
                        "kind": kind,
                        "sender": sender,
                        "recipient": recipient,
                        "amount": amount,
                        "tx_hash": tx_hash,
                        "success": success,
                    }
                )
        finally:
            with self.lock:
                self.active_senders.discard(sender)

        result = {
            "transaction_hash": tx_hash,
            "gas_used": 6,
            "gas_unit_price": 100,
            "sender": sender.removeprefix("0x"),
            "success": success,
            "version": len(self.transactions) * 3,
            "vm_status": vm_status,
        }
        return json.dumps({"Result": result}).encode()

    # REST API, used in place of `requests.Session`

    def _get_ledger_info(self, member_index: int) -> dict:
        height = self.heights.get(member_index, 10)
        self.heights[member_index] = height + self.height_step
        return {
            "chain_id": self.chain_ids.get(member_index, configuration.CHAIN_ID),
            "epoch": "2",
            "ledger_version": str(height * 3),
            "oldest_ledger_version": "0",
            "ledger_timestamp": str(1_700_000_000_000_000 + height * 1_000_000),
            "node_role": "validator",
            "oldest_block_height": "0",
            "block_height": str(height),
            "git_hash": "0f1e2d3c",
        }

    def request(
        self,
        method: str,
        url: str,
        json: tp.Any = None,  # noqa: A002
        timeout: float | None = None,  # noqa: ARG002
    ) -> FakeResponse:
        parts = urllib.parse.urlsplit(url)
        member_index = (parts.port or 0) - configuration.BASE_API_PORT
        container_name = common.get_container_name(configuration.TESTNET_NAME, member_index)

        with self.lock:
            self.http_calls.append((method, url))

            container = self.containers.get(container_name)
            if not (container and container["running"]):
                msg = f"Connection refused: {url}"
                raise requests.ConnectionError(msg)

            remaining = self.unresponsive.get(member_index, 0)
            if remaining > 0:
                self.unresponsive[member_index] = remaining - 1
            if remaining:
                msg = f"Read timed out: {url}"
                raise requests.ReadTimeout(msg)

            if method == "GET" and parts.path == "/v1":
                return FakeResponse(method, url, 200, self._get_ledger_info(member_index))
            if method == "GET" and parts.path.startswith("/v1/accounts/"):
                address = parts.path.rsplit("/", 1)[-1]
                if address not in self.balances:
                    payload = {"message": "Account not found", "error_code": "account_not_found"}
                    return FakeResponse(method, url, 404, payload)
                payload = {"sequence_number": "0", "authentication_key": address}
                return FakeResponse(method, url, 200, payload)
            if method == "POST" and parts.path == "/v1/view":
                address = json["arguments"][0]
                return FakeResponse(method, url, 200, [str(self.balances.get(address, 0))])

            return FakeResponse(method, url, 404, {"message": "not found"})
