import pathlib as pl
import typing as tp

import fakes
import pytest
from _pytest.monkeypatch import MonkeyPatch
from _pytest.tmpdir import TempPathFactory

from ephemeral_testnet import testnet
from ephemeral_testnet.cluster_management import common
from ephemeral_testnet.cluster_management import lifecycle
from ephemeral_testnet.cluster_management import netstat_tools
from ephemeral_testnet.cluster_management import readiness
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import faucet
from ephemeral_testnet.utils import helpers
from ephemeral_testnet.utils import http_client
from ephemeral_testnet.utils import temptools


@pytest.fixture(scope="session", autouse=True)
def init_pytest_temp_dirs(tmp_path_factory: TempPathFactory) -> None:
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)


@pytest.fixture(autouse=True)
def reset_active_cluster() -> tp.Generator[None, None, None]:
    """Make sure no exit hooks or live cluster leak into the next test."""
    yield
    handle = testnet.get_active_handle()
    if handle is not None:
        lifecycle.unregister_cleanup(handle)
        testnet._set_active(None)
    faucet._load_account.cache_clear()


@pytest.fixture
def genesis_dir(tmp_path: pl.Path) -> pl.Path:
    """Create genesis artifacts with key files for the maximal number of members."""
    genesis = tmp_path / "genesis"
    artifacts = genesis / common.GENESIS_ARTIFACTS_DIRNAME
    artifacts.mkdir(parents=True)
    (artifacts / "genesis.blob").write_bytes(b"\x00")
    fakes.write_keys(artifacts / common.ROOT_KEYS_FILENAME, address=fakes.ROOT_ADDRESS)

    for i in range(configuration.MAX_MEMBERS):
        member_dir = genesis / common.VALIDATORS_DIRNAME / f"validator-{i}"
        member_dir.mkdir(parents=True)
        fakes.write_keys(
            member_dir / common.MEMBER_KEYS_FILENAME, address=fakes.get_member_address(i)
        )

    return genesis


@pytest.fixture
def fake_testnet(monkeypatch: MonkeyPatch, genesis_dir: pl.Path) -> fakes.FakeTestnet:
    """Replace the container engine, the `aptos` CLI and the REST API with in-memory fakes."""
    fake = fakes.FakeTestnet()
    monkeypatch.setattr(configuration, "GENESIS_DIR", genesis_dir)
    monkeypatch.setattr(configuration, "POLL_INTERVAL", 0.01)
    monkeypatch.setattr(configuration, "READY_TIMEOUT", 5.0)
    monkeypatch.setattr(configuration, "STOP_TIMEOUT", 1)
    monkeypatch.setattr(helpers, "run_command", fake.run_command)
    monkeypatch.setattr(http_client, "get_session", lambda: fake)
    monkeypatch.setattr(netstat_tools, "get_port_listeners", lambda ports: {})  # noqa: ARG005
    return fake


@pytest.fixture
def started_handle(fake_testnet: fakes.FakeTestnet) -> supervisor.ClusterHandle:  # noqa: ARG001
    """Return handle of a started, not yet ready, cluster of 3 members."""
    return supervisor.start(supervisor.ClusterSpec.from_config(3))


@pytest.fixture
def ready_handle(started_handle: supervisor.ClusterHandle) -> supervisor.ClusterHandle:
    readiness.await_ready(started_handle, 5)
    return started_handle


@pytest.fixture
def funded_handle(ready_handle: supervisor.ClusterHandle) -> supervisor.ClusterHandle:
    testnet.bootstrap(ready_handle, 1_000_000)
    return ready_handle
