"""Wrapper around the `docker` command line tool."""

import json
import logging
import typing as tp

from ephemeral_testnet import exceptions
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import helpers

LOGGER = logging.getLogger(__name__)

# Timeout for quick engine queries
QUERY_TIMEOUT = 30

_NOT_FOUND_MARKERS = ("No such", "not found")


def is_not_found(exc: exceptions.CLIError) -> bool:
    """Check if the engine failed because the resource doesn't exist."""
    err_str = exc.stderr or str(exc)
    return any(m in err_str for m in _NOT_FOUND_MARKERS)


def docker(
    *args: str, timeout: float | None = QUERY_TIMEOUT, ignore_fail: bool = False
) -> str:
    """Run `docker` with the given arguments and return decoded stdout."""
    cmd = [configuration.DOCKER_BIN, *args]
    return helpers.run_command(cmd, timeout=timeout, ignore_fail=ignore_fail).decode().strip()


def check_engine() -> None:
    """Check that the container engine is reachable."""
    try:
        docker("info", "--format", "{{json .ServerVersion}}")
    except exceptions.CLIError as exc:
        msg = (
            f"Container engine is not available (`{configuration.DOCKER_BIN} info` failed). "
            f"Make sure Docker is installed and running: {exc}"
        )
        raise exceptions.EnvironmentUnavailableError(msg) from exc


def image_exists(image: str) -> bool:
    try:
        docker("image", "inspect", image)
    except exceptions.CLIError:
        return False
    return True


def list_by_label(kind: str, label: str) -> list[str]:
    """Return IDs (or names for volumes) of resources of given `kind` that have `label`.

    `kind` is one of "container", "volume", "network".
    """
    if kind == "container":
        out = docker("ps", "-aq", "--filter", f"label={label}")
    elif kind in ("volume", "network"):
        out = docker(kind, "ls", "-q", "--filter", f"label={label}")
    else:
        msg = f"Unknown resource kind '{kind}'."
        raise ValueError(msg)
    return out.split()


def remove(kind: str, name: str, *, force: bool = True) -> bool:
    """Remove a resource, treating a missing resource as success.

    Return False when the resource existed and couldn't be removed.
    """
    if kind == "container":
        args = ["rm", "-v"] + (["-f"] if force else []) + [name]
    elif kind == "volume":
        args = ["volume", "rm"] + (["-f"] if force else []) + [name]
    elif kind == "network":
        args = ["network", "rm", name]
    else:
        msg = f"Unknown resource kind '{kind}'."
        raise ValueError(msg)

    try:
        docker(*args)
    except exceptions.CLIError as exc:
        if is_not_found(exc):
            return True
        LOGGER.warning(f"Failed to remove {kind} '{name}': {exc}")
        return False
    return True


def stop_container(name: str, *, stop_timeout: int) -> bool:
    """Gracefully stop a container, treating a missing container as success."""
    try:
        docker("stop", "-t", str(stop_timeout), name, timeout=stop_timeout + QUERY_TIMEOUT)
    except exceptions.CLIError as exc:
        if is_not_found(exc):
            return True
        LOGGER.warning(f"Failed to stop container '{name}': {exc}")
        return False
    return True


def create_network(name: str, *, subnet: str, labels: dict[str, str]) -> None:
    docker(
        "network",
        "create",
        "--driver",
        "bridge",
        "--subnet",
        subnet,
        *helpers.prepend_flag("--label", (f"{k}={v}" for k, v in labels.items())),
        name,
    )


def create_volume(name: str, *, labels: dict[str, str]) -> None:
    docker(
        "volume",
        "create",
        *helpers.prepend_flag("--label", (f"{k}={v}" for k, v in labels.items())),
        name,
    )


def run_container(
    name: str,
    *,
    image: str,
    network: str,
    ip: str,
    ports: tp.Iterable[tuple[int, int]],
    mounts: tp.Iterable[str],
    env: dict[str, str],
    labels: dict[str, str],
) -> str:
    """Start a detached container and return its ID.

    `ports` are (host port, container port) pairs, `mounts` are `--volume` specs.
    """
    cmd = [
        "run",
        "--detach",
        "--name",
        name,
        "--network",
        network,
        "--ip",
        ip,
        *helpers.prepend_flag("--publish", (f"{h}:{c}" for h, c in ports)),
        *helpers.prepend_flag("--volume", mounts),
        *helpers.prepend_flag("--env", (f"{k}={v}" for k, v in env.items())),
        *helpers.prepend_flag("--label", (f"{k}={v}" for k, v in labels.items())),
        image,
    ]
    # Can take long when the image needs to be pulled
    return docker(*cmd, timeout=configuration.ENGINE_TIMEOUT)


def container_state(name: str) -> dict:
    """Return the `State` record of a container, or empty dict if it doesn't exist."""
    try:
        out = docker("inspect", "--format", "{{json .State}}", name)
    except exceptions.CLIError as exc:
        if is_not_found(exc):
            return {}
        raise
    return json.loads(out or "{}")


def get_logs(name: str, *, tail: int) -> str:
    """Return the last `tail` lines of container log (both stdout and stderr)."""
    cmd = [configuration.DOCKER_BIN, "logs", "--tail", str(tail), name]
    try:
        # `docker logs` replays the container stderr on its own stderr
        out = helpers.run_command(
            cmd, timeout=QUERY_TIMEOUT, ignore_fail=True, merge_stderr=True
        )
    except exceptions.CLIError as exc:
        return f"<failed to get logs: {exc}>"
    return out.decode(errors="replace")


def is_engine_available() -> bool:
    """Check if the container engine is reachable, without raising."""
    try:
        check_engine()
    except exceptions.EnvironmentUnavailableError:
        return False
    return True
