import logging
import pathlib as pl

import fakes
import pytest
from _pytest.logging import LogCaptureFixture
from _pytest.monkeypatch import MonkeyPatch

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import common
from ephemeral_testnet.cluster_management import netstat_tools
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import configuration

NAME = configuration.TESTNET_NAME

# API port of the third member
TAKEN_PORT = configuration.BASE_API_PORT + 2


def test_start(fake_testnet: fakes.FakeTestnet):
    spec = supervisor.ClusterSpec.from_config(3)
    handle = supervisor.start(spec)

    assert not handle.ready
    assert not handle.torn_down
    assert [m.index for m in handle.members] == [0, 1, 2]
    assert set(fake_testnet.networks) == {f"{NAME}-net"}
    assert set(fake_testnet.volumes) == {f"{NAME}-validator-{i}-data" for i in range(3)}
    assert set(fake_testnet.containers) == {f"{NAME}-validator-{i}" for i in range(3)}

    container = fake_testnet.containers[f"{NAME}-validator-1"]
    assert container["running"]
    assert container["ip"] == spec.member_ip(1)
    assert container["network"] == f"{NAME}-net"
    assert container["image"] == configuration.VALIDATOR_IMAGE
    assert container["ports"] == [
        f"{configuration.BASE_API_PORT + 1}:8080",
        f"{configuration.BASE_PEER_PORT + 1}:6180",
        f"{configuration.BASE_METRICS_PORT + 1}:9101",
    ]
    assert container["env"] == {
        "VALIDATOR_INDEX": "1",
        "NUM_VALIDATORS": "3",
        "CHAIN_ID": str(configuration.CHAIN_ID),
    }
    assert container["labels"] == {configuration.CLUSTER_LABEL: NAME}
    assert container["mounts"] == [
        f"{NAME}-validator-1-data:{common.CONTAINER_DATA_DIR}",
        f"{spec.genesis_artifacts_dir}:{common.CONTAINER_GENESIS_DIR}:ro",
        f"{spec.member_dir(1)}:{common.CONTAINER_IDENTITY_DIR}:ro",
    ]
    # Every resource carries the cluster label
    assert all(
        r["labels"] == spec.labels
        for r in (*fake_testnet.volumes.values(), *fake_testnet.networks.values())
    )


def test_start_engine_unavailable(fake_testnet: fakes.FakeTestnet):
    fake_testnet.engine_available = False

    with pytest.raises(exceptions.EnvironmentUnavailableError) as excinfo:
        supervisor.start(supervisor.ClusterSpec.from_config(2))

    assert excinfo.value.kind == "EnvironmentUnavailable"
    assert "Cannot connect to the Docker daemon" in str(excinfo.value)
    assert not fake_testnet.get_docker_calls("run")
    assert not fake_testnet.get_docker_calls("network", "create")


def test_start_no_genesis(
    fake_testnet: fakes.FakeTestnet, monkeypatch: MonkeyPatch, tmp_path: pl.Path
):
    monkeypatch.setattr(configuration, "GENESIS_DIR", tmp_path / "missing")

    with pytest.raises(exceptions.StartupError, match="Genesis artifacts not found"):
        supervisor.start(supervisor.ClusterSpec.from_config(1))

    assert not fake_testnet.get_docker_calls("run")


def test_start_image_missing(fake_testnet: fakes.FakeTestnet, caplog: LogCaptureFixture):
    fake_testnet.image_available = False

    with caplog.at_level(logging.WARNING):
        handle = supervisor.start(supervisor.ClusterSpec.from_config(1))

    assert handle.member_count == 1
    assert "not found locally" in caplog.text


def test_start_rollback(fake_testnet: fakes.FakeTestnet, monkeypatch: MonkeyPatch):
    """Check that a failed start leaves nothing behind."""
    fake_testnet.failing_runs = {f"{NAME}-validator-2"}
    monkeypatch.setattr(
        netstat_tools,
        "get_port_listeners",
        lambda ports: {p: "PID 42; cmdline: nginx" for p in ports if p == TAKEN_PORT},
    )

    with pytest.raises(exceptions.StartupError) as excinfo:
        supervisor.start(supervisor.ClusterSpec.from_config(4))

    err_str = str(excinfo.value)
    assert "port is already allocated" in err_str
    assert f"port {TAKEN_PORT}: PID 42" in err_str
    assert "Failed to roll back" not in err_str

    # The last member was never started
    assert len(fake_testnet.get_docker_calls("run")) == 3
    assert not fake_testnet.containers
    assert not fake_testnet.volumes
    assert not fake_testnet.networks


def test_start_rollback_incomplete(fake_testnet: fakes.FakeTestnet):
    fake_testnet.failing_runs = {f"{NAME}-validator-1"}
    fake_testnet.undeletable = {f"{NAME}-validator-0-data"}

    with pytest.raises(exceptions.StartupError) as excinfo:
        supervisor.start(supervisor.ClusterSpec.from_config(2))

    assert f"Failed to roll back: volume:{NAME}-validator-0-data" in str(excinfo.value)
    assert set(fake_testnet.volumes) == {f"{NAME}-validator-0-data"}
    assert not fake_testnet.containers


def test_start_removes_stale(fake_testnet: fakes.FakeTestnet):
    fake_testnet.add_resource("container", f"{NAME}-validator-5")
    fake_testnet.add_resource("volume", f"{NAME}-validator-5-data")
    fake_testnet.add_resource("network", f"{NAME}-net")
    fake_testnet.add_resource("container", "other-validator-0", cluster_name="other")

    supervisor.start(supervisor.ClusterSpec.from_config(1))

    assert set(fake_testnet.containers) == {f"{NAME}-validator-0", "other-validator-0"}
    assert set(fake_testnet.volumes) == {f"{NAME}-validator-0-data"}
    assert set(fake_testnet.networks) == {f"{NAME}-net"}


def test_cleanup_stale(fake_testnet: fakes.FakeTestnet):
    fake_testnet.add_resource("container", f"{NAME}-validator-0")
    fake_testnet.add_resource("volume", f"{NAME}-validator-0-data")

    assert supervisor.cleanup_stale(NAME) == 2
    # Repeating the cleanup is not an error
    assert supervisor.cleanup_stale(NAME) == 0
    assert not fake_testnet.containers
    assert not fake_testnet.volumes


def test_cleanup_stale_failure(fake_testnet: fakes.FakeTestnet):
    fake_testnet.add_resource("container", f"{NAME}-validator-0")
    fake_testnet.undeletable = {f"{NAME}-validator-0"}

    with pytest.raises(exceptions.StartupError, match=f"container:{NAME}-validator-0"):
        supervisor.cleanup_stale(NAME)


def test_rollback(started_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet):
    fake_testnet.undeletable = {f"{NAME}-validator-2"}

    failed = supervisor.rollback(started_handle)

    assert failed == [f"container:{NAME}-validator-2"]
    assert set(fake_testnet.containers) == {f"{NAME}-validator-2"}


def test_remove_resources_missing(fake_testnet: fakes.FakeTestnet):
    failed = supervisor.remove_resources(
        containers=["nonexistent"], volumes=["nonexistent-data"], network="nonexistent-net"
    )
    assert not failed
    assert len(fake_testnet.calls) == 3


def test_attach(started_handle: supervisor.ClusterHandle, fake_testnet: fakes.FakeTestnet):
    handle = supervisor.attach(started_handle.spec)
    assert handle.members == started_handle.members
    assert handle.cleanup_token is None

    fake_testnet.containers[f"{NAME}-validator-1"]["running"] = False
    with pytest.raises(exceptions.StartupError, match=f"{NAME}-validator-1"):
        supervisor.attach(started_handle.spec)


def test_attach_not_started(fake_testnet: fakes.FakeTestnet):  # noqa: ARG001
    with pytest.raises(exceptions.StartupError, match="not running"):
        supervisor.attach(supervisor.ClusterSpec.from_config(2))


def test_get_member_logs(started_handle: supervisor.ClusterHandle):
    logs = supervisor.get_member_logs(started_handle.get_member(0))
    assert fakes.FAKE_LOG_LINE in logs
