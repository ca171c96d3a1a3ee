"""Start, roll back and remove the containers of the testnet cluster.

Every resource created for the cluster carries the cluster label, so leftovers of a crashed run
can be found and removed before the next start.
"""

import dataclasses
import ipaddress
import logging
import pathlib as pl
import typing as tp

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import common
from ephemeral_testnet.cluster_management import netstat_tools
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import docker_engine
from ephemeral_testnet.utils import framework_log
from ephemeral_testnet.utils import locking

LOGGER = logging.getLogger(__name__)

# Published ports are reached through the loopback interface
LOCAL_HOST = "127.0.0.1"


@dataclasses.dataclass(frozen=True, order=True)
class MemberPorts:
    api: int
    peer: int
    metrics: int

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.api, self.peer, self.metrics)


@dataclasses.dataclass(frozen=True, order=True)
class ClusterSpec:
    """Immutable description of the cluster to start."""

    member_count: int
    name: str
    image: str
    chain_id: int
    base_ip: str
    subnet: str
    base_api_port: int
    base_peer_port: int
    base_metrics_port: int
    genesis_dir: pl.Path

    def __post_init__(self) -> None:
        if isinstance(self.member_count, bool) or not isinstance(self.member_count, int):
            msg = f"Number of members must be an integer, got '{self.member_count!r}'."
            raise exceptions.InvalidClusterSpecError(msg)
        if not configuration.MIN_MEMBERS <= self.member_count <= configuration.MAX_MEMBERS:
            msg = (
                f"Unsupported number of members: {self.member_count}. Supported range is "
                f"{configuration.MIN_MEMBERS} to {configuration.MAX_MEMBERS}."
            )
            raise exceptions.InvalidClusterSpecError(msg)

        last_ip = ipaddress.ip_address(self.base_ip) + self.member_count - 1
        if last_ip not in ipaddress.ip_network(self.subnet):
            msg = f"Member address '{last_ip}' is outside of subnet '{self.subnet}'."
            raise exceptions.InvalidClusterSpecError(msg)

    @classmethod
    def from_config(cls, member_count: int) -> "ClusterSpec":
        """Create the spec out of the current configuration."""
        return cls(
            member_count=member_count,
            name=configuration.TESTNET_NAME,
            image=configuration.VALIDATOR_IMAGE,
            chain_id=configuration.CHAIN_ID,
            base_ip=configuration.BASE_IP,
            subnet=configuration.SUBNET,
            base_api_port=configuration.BASE_API_PORT,
            base_peer_port=configuration.BASE_PEER_PORT,
            base_metrics_port=configuration.BASE_METRICS_PORT,
            genesis_dir=configuration.GENESIS_DIR,
        )

    @property
    def network_name(self) -> str:
        return common.get_network_name(self.name)

    @property
    def cluster_label(self) -> str:
        return common.get_cluster_label(self.name)

    @property
    def labels(self) -> dict[str, str]:
        return {configuration.CLUSTER_LABEL: self.name}

    @property
    def genesis_artifacts_dir(self) -> pl.Path:
        return self.genesis_dir / common.GENESIS_ARTIFACTS_DIRNAME

    @property
    def root_keys_file(self) -> pl.Path:
        return self.genesis_artifacts_dir / common.ROOT_KEYS_FILENAME

    def member_dir(self, index: int) -> pl.Path:
        return self.genesis_dir / common.VALIDATORS_DIRNAME / f"validator-{index}"

    def member_ip(self, index: int) -> str:
        return str(ipaddress.ip_address(self.base_ip) + index)

    def member_ports(self, index: int) -> MemberPorts:
        return MemberPorts(
            api=self.base_api_port + index,
            peer=self.base_peer_port + index,
            metrics=self.base_metrics_port + index,
        )

    def all_host_ports(self) -> list[int]:
        return [p for i in range(self.member_count) for p in self.member_ports(i).as_tuple()]


@dataclasses.dataclass(frozen=True, order=True)
class MemberHandle:
    index: int
    ip: str
    ports: MemberPorts
    container_name: str
    volume_name: str
    keys_file: pl.Path = dataclasses.field(repr=False)

    @property
    def api_url(self) -> str:
        return f"http://{LOCAL_HOST}:{self.ports.api}"

    @property
    def metrics_url(self) -> str:
        return f"http://{LOCAL_HOST}:{self.ports.metrics}/metrics"


class ClusterHandle:
    """Handle of a running cluster.

    The `funded` flag only ever goes from False to True. Faucet funding is refused until
    the bootstrap has set it.
    """

    def __init__(self, spec: ClusterSpec, members: tp.Iterable[MemberHandle]) -> None:
        self.spec = spec
        self.members = tuple(members)
        # Serialize spending from the same member account
        self.member_locks = tuple(
            locking.ResourceLock(f"{spec.name}-member-{m.index}") for m in self.members
        )
        self.ready = False
        self.torn_down = False
        self.bootstrap_attempted = False
        # Member whose account last funded the address, by address
        self.funding_members: dict[str, int] = {}
        self.cleanup_token: tp.Any = None
        self._funded = False

    @property
    def funded(self) -> bool:
        return self._funded

    def mark_funded(self) -> None:
        self._funded = True

    @property
    def member_count(self) -> int:
        return len(self.members)

    def get_member(self, index: int) -> MemberHandle:
        if not 0 <= index < len(self.members):
            msg = f"Member index {index} is out of range (cluster has {len(self.members)} members)."
            raise IndexError(msg)
        return self.members[index]

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} name={self.spec.name!r} members={len(self.members)} "
            f"ready={self.ready} funded={self.funded} torn_down={self.torn_down}>"
        )


def get_member_handle(spec: ClusterSpec, index: int) -> MemberHandle:
    return MemberHandle(
        index=index,
        ip=spec.member_ip(index),
        ports=spec.member_ports(index),
        container_name=common.get_container_name(spec.name, index),
        volume_name=common.get_volume_name(spec.name, index),
        keys_file=spec.member_dir(index) / common.MEMBER_KEYS_FILENAME,
    )


def remove_resources(
    *,
    containers: tp.Iterable[str] = (),
    volumes: tp.Iterable[str] = (),
    network: str = "",
) -> list[str]:
    """Force-remove the given resources. Return list of resources that couldn't be removed.

    Containers are removed first, as volumes and network can't be removed while in use.
    """
    failed = [f"container:{c}" for c in containers if not docker_engine.remove("container", c)]
    failed.extend(f"volume:{v}" for v in volumes if not docker_engine.remove("volume", v))
    if network and not docker_engine.remove("network", network):
        failed.append(f"network:{network}")
    return failed


def cleanup_stale(name: str) -> int:
    """Remove leftovers of a previous cluster with the same identity.

    Missing resources are not an error, so the cleanup can be repeated any number of times.
    Return number of removed containers and volumes.
    """
    cluster_label = common.get_cluster_label(name)
    try:
        containers = docker_engine.list_by_label("container", cluster_label)
        volumes = docker_engine.list_by_label("volume", cluster_label)
    except exceptions.CLIError as exc:
        msg = f"Failed to list stale resources of cluster '{name}': {exc}"
        raise exceptions.StartupError(msg) from exc

    if containers or volumes:
        LOGGER.info(
            f"Removing stale cluster '{name}': {len(containers)} containers, "
            f"{len(volumes)} volumes"
        )

    failed = remove_resources(
        containers=containers, volumes=volumes, network=common.get_network_name(name)
    )
    if failed:
        msg = f"Failed to remove stale resources of cluster '{name}': {', '.join(failed)}"
        raise exceptions.StartupError(msg)

    return len(containers) + len(volumes)


def check_image(image: str) -> None:
    """Log a hint when the validator image is not available locally."""
    if docker_engine.image_exists(image):
        return
    LOGGER.warning(
        f"Validator image '{image}' not found locally, the container engine will try to pull "
        "it. To use a locally built image, build it first and point `VALIDATOR_IMAGE_REPO` "
        "and `IMAGE_TAG` to it."
    )


def _start_member(spec: ClusterSpec, member: MemberHandle) -> None:
    ports = [
        (member.ports.api, configuration.CONTAINER_API_PORT),
        (member.ports.peer, configuration.CONTAINER_PEER_PORT),
        (member.ports.metrics, configuration.CONTAINER_METRICS_PORT),
    ]
    mounts = [
        f"{member.volume_name}:{common.CONTAINER_DATA_DIR}",
        f"{spec.genesis_artifacts_dir}:{common.CONTAINER_GENESIS_DIR}:ro",
        f"{spec.member_dir(member.index)}:{common.CONTAINER_IDENTITY_DIR}:ro",
    ]
    env = {
        "VALIDATOR_INDEX": str(member.index),
        "NUM_VALIDATORS": str(spec.member_count),
        "CHAIN_ID": str(spec.chain_id),
    }
    docker_engine.run_container(
        member.container_name,
        image=spec.image,
        network=spec.network_name,
        ip=member.ip,
        ports=ports,
        mounts=mounts,
        env=env,
        labels=spec.labels,
    )
    LOGGER.info(
        f"Started member {member.index} ('{member.container_name}', {member.ip}, "
        f"API {member.api_url})"
    )


def start(spec: ClusterSpec) -> ClusterHandle:
    """Start all members of the cluster.

    Everything created by a failed attempt is removed before `StartupError` is raised.
    """
    docker_engine.check_engine()

    if not spec.genesis_artifacts_dir.is_dir():
        msg = (
            f"Genesis artifacts not found in '{spec.genesis_artifacts_dir}'. "
            "Generate them first and point `GENESIS_DIR` to their parent directory."
        )
        raise exceptions.StartupError(msg)

    check_image(spec.image)
    cleanup_stale(spec.name)

    members = [get_member_handle(spec=spec, index=i) for i in range(spec.member_count)]
    network = ""
    volumes: list[str] = []
    containers: list[str] = []
    try:
        docker_engine.create_network(spec.network_name, subnet=spec.subnet, labels=spec.labels)
        network = spec.network_name
        for member in members:
            docker_engine.create_volume(member.volume_name, labels=spec.labels)
            volumes.append(member.volume_name)
            # A failed `docker run` can leave a created container behind
            containers.append(member.container_name)
            _start_member(spec=spec, member=member)
    except exceptions.CLIError as exc:
        failed = remove_resources(containers=containers, volumes=volumes, network=network)
        msg = f"Failed to start cluster '{spec.name}': {exc}"
        conflicts = netstat_tools.format_port_conflicts(spec.all_host_ports())
        if conflicts:
            msg = f"{msg}\n{conflicts}"
        if failed:
            msg = f"{msg}\nFailed to roll back: {', '.join(failed)}"
        framework_log.framework_logger().error(msg)
        raise exceptions.StartupError(msg) from exc

    LOGGER.info(f"Cluster '{spec.name}' with {spec.member_count} members started")
    return ClusterHandle(spec=spec, members=members)


def rollback(handle: ClusterHandle) -> list[str]:
    """Force-remove all resources of the cluster. Return list of resources that survived."""
    return remove_resources(
        containers=[m.container_name for m in handle.members],
        volumes=[m.volume_name for m in handle.members],
        network=handle.spec.network_name,
    )


def get_member_logs(member: MemberHandle, tail: int = common.LOG_TAIL_LINES) -> str:
    """Return the last `tail` lines of the member log."""
    return docker_engine.get_logs(member.container_name, tail=tail)


def attach(spec: ClusterSpec) -> ClusterHandle:
    """Return handle of an already running cluster, e.g. one started by another process.

    The returned handle is not registered for automatic teardown.
    """
    docker_engine.check_engine()
    members = [get_member_handle(spec=spec, index=i) for i in range(spec.member_count)]
    not_running = [
        m.container_name
        for m in members
        if not docker_engine.container_state(m.container_name).get("Running")
    ]
    if not_running:
        msg = f"Members of cluster '{spec.name}' are not running: {', '.join(not_running)}"
        raise exceptions.StartupError(msg)
    return ClusterHandle(spec=spec, members=members)
