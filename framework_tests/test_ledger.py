import time

import fakes
import pytest
from _pytest.monkeypatch import MonkeyPatch

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import ledger
from ephemeral_testnet.utils import node_api

LEDGER_INFO = {
    "chain_id": 4,
    "epoch": "12",
    "ledger_version": "31337",
    "oldest_ledger_version": "0",
    "ledger_timestamp": "1700000000123456",
    "node_role": "validator",
    "oldest_block_height": "0",
    "block_height": "1234",
    "git_hash": "0f1e2d3c",
}


def test_snapshot_from_response():
    snapshot = node_api.LedgerSnapshot.from_response(member_index=3, data=LEDGER_INFO)

    assert snapshot.member_index == 3
    assert snapshot.chain_id == 4
    assert snapshot.epoch == 12
    assert snapshot.ledger_version == 31337
    assert snapshot.block_height == 1234
    assert snapshot.ledger_timestamp == 1700000000123456
    assert snapshot.node_role == "validator"
    assert snapshot.git_hash == "0f1e2d3c"


def test_snapshot_optional_fields():
    data = {k: v for k, v in LEDGER_INFO.items() if not k.startswith(("oldest", "git", "node"))}
    snapshot = node_api.LedgerSnapshot.from_response(member_index=0, data=data)

    assert snapshot.oldest_block_height == 0
    assert snapshot.node_role == ""
    assert snapshot.git_hash is None


@pytest.mark.parametrize(
    "data",
    (
        {**LEDGER_INFO, "block_height": "not-a-number"},
        {k: v for k, v in LEDGER_INFO.items() if k != "chain_id"},
        {**LEDGER_INFO, "epoch": None},
    ),
    ids=("invalid_height", "missing_chain_id", "null_epoch"),
)
def test_snapshot_invalid(data: dict):
    with pytest.raises(exceptions.NodeApiError, match="Unexpected ledger info from member 1"):
        node_api.LedgerSnapshot.from_response(member_index=1, data=data)


def test_get_ledger_snapshot(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    fake_testnet.heights[1] = 500
    fake_testnet.height_step = 0

    snapshot = ledger.get_ledger_snapshot(ready_handle, 1)

    assert snapshot.member_index == 1
    assert snapshot.block_height == 500
    assert snapshot.ledger_version == 1500

    with pytest.raises(IndexError):
        ledger.get_ledger_snapshot(ready_handle, 3)


def test_get_ledger_snapshot_stopped(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    fake_testnet.containers[ready_handle.get_member(0).container_name]["running"] = False

    with pytest.raises(exceptions.NodeApiError, match="Connection refused"):
        ledger.get_ledger_snapshot(ready_handle, 0)


def test_get_member_heights(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    fake_testnet.height_step = 0
    fake_testnet.heights.update({0: 7, 1: 9, 2: 8})

    assert ledger.get_member_heights(ready_handle) == [7, 9, 8]


def test_wait_for_blocks(ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet):
    start_height = fake_testnet.heights[0]

    snapshot = ledger.wait_for_blocks(ready_handle, 0, 3, 5)

    assert snapshot.member_index == 0
    assert snapshot.block_height >= start_height + 3


def test_wait_for_zero_blocks(ready_handle: supervisor.ClusterHandle):
    snapshot = ledger.wait_for_blocks(ready_handle, 2, 0, 5)
    assert snapshot.member_index == 2


def test_wait_for_blocks_negative(ready_handle: supervisor.ClusterHandle):
    with pytest.raises(ValueError, match="must not be negative"):
        ledger.wait_for_blocks(ready_handle, 0, -1, 5)


def test_wait_for_blocks_timeout(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    """Check that the wait ends at the deadline when the chain doesn't progress."""
    fake_testnet.height_step = 0
    timeout = 0.3

    start = time.monotonic()
    with pytest.raises(exceptions.BlocksTimeoutError) as excinfo:
        ledger.wait_for_blocks(ready_handle, 1, 2, timeout)
    elapsed = time.monotonic() - start

    assert "advanced by 0 of 2 blocks" in str(excinfo.value)
    assert excinfo.value.kind == "TimeoutError"
    assert timeout <= elapsed < timeout + 2


def test_wait_for_blocks_first_poll_dropped(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    """Check that the start height is taken once the member responds again."""
    fake_testnet.unresponsive = {0: 1}
    start_height = fake_testnet.heights.get(0, 10)

    snapshot = ledger.wait_for_blocks(ready_handle, 0, 2, 3)

    assert fake_testnet.unresponsive[0] == 0
    assert snapshot.member_index == 0
    assert snapshot.block_height == start_height + 2


def test_wait_for_blocks_unresponsive(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    fake_testnet.unresponsive = {2: -1}
    timeout = 0.3

    start = time.monotonic()
    with pytest.raises(exceptions.BlocksTimeoutError) as excinfo:
        ledger.wait_for_blocks(ready_handle, 2, 1, timeout)
    elapsed = time.monotonic() - start

    err_str = str(excinfo.value)
    assert "Member 2 didn't report its block height" in err_str
    assert "Read timed out" in err_str
    assert elapsed < timeout + configuration.HTTP_TIMEOUT


def test_sync_status(ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet):
    fake_testnet.height_step = 0
    fake_testnet.heights.update({0: 100, 1: 105, 2: 120})

    status = ledger.get_sync_status(ready_handle, tolerance=10)
    assert status.heights == (100, 105, 120)
    assert status.spread == 20
    assert not status.in_sync

    assert ledger.get_sync_status(ready_handle, tolerance=20).in_sync
    assert not ledger.is_in_sync(ready_handle, tolerance=19)


def test_sync_status_default_tolerance(
    ready_handle: supervisor.ClusterHandle,
    fake_testnet: fakes.FakeTestnet,
    monkeypatch: MonkeyPatch,
):
    fake_testnet.height_step = 0
    fake_testnet.heights.update({0: 100, 1: 125, 2: 100})
    monkeypatch.setattr(configuration, "SYNC_TOLERANCE", 25)

    status = ledger.get_sync_status(ready_handle)
    assert status.tolerance == 25
    assert status.in_sync


def test_sync_status_negative_tolerance(ready_handle: supervisor.ClusterHandle):
    with pytest.raises(ValueError, match="must not be negative"):
        ledger.get_sync_status(ready_handle, tolerance=-1)


def test_wait_for_sync(ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet):
    fake_testnet.height_step = 0
    fake_testnet.heights.update({0: 100, 1: 100, 2: 101})

    status = ledger.wait_for_sync(ready_handle, 1, tolerance=1)
    assert status.in_sync
    assert status.spread == 1


def test_wait_for_sync_timeout(
    ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet
):
    fake_testnet.height_step = 0
    fake_testnet.heights.update({0: 100, 1: 150, 2: 100})

    with pytest.raises(exceptions.TestnetTimeoutError, match="spread 50 > tolerance 10"):
        ledger.wait_for_sync(ready_handle, 0.2, tolerance=10)


def test_get_balance_no_account(ready_handle: supervisor.ClusterHandle):
    member = ready_handle.get_member(0)
    address = f"0x{'ef' * 32}"

    assert not node_api.account_exists(member.api_url, address)
    assert node_api.get_balance(member.api_url, address) == 0


def test_get_balance(ready_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet):
    member = ready_handle.get_member(1)
    address = f"0x{'ef' * 32}"
    fake_testnet.balances[address] = 4242

    assert node_api.account_exists(member.api_url, address)
    assert node_api.get_balance(member.api_url, address) == 4242
