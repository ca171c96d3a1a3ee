"""Functions for inspecting local listening sockets."""

import logging
import typing as tp

import psutil

LOGGER = logging.getLogger(__name__)


def _get_proc_cmdline(pid: int | None) -> str:
    if not pid:
        return ""
    try:
        return " ".join(psutil.Process(pid).cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return ""


def get_port_listeners(ports: tp.Iterable[int]) -> dict[int, str]:
    """Return description of local processes that listen on any of the `ports`.

    Ports with no listener are not part of the result.
    """
    wanted = set(ports)
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError) as excp:
        LOGGER.error(f"Failed to list network connections: {excp}")  # noqa: TRY400
        return {}

    listeners: dict[int, str] = {}
    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        port = conn.laddr.port
        if port not in wanted or port in listeners:
            continue
        cmdline = _get_proc_cmdline(conn.pid)
        listeners[port] = f"PID {conn.pid or '?'}; cmdline: {cmdline or '?'}"

    return listeners


def format_port_conflicts(ports: tp.Iterable[int]) -> str:
    """Return human readable report of ports that are already taken, or empty string."""
    listeners = get_port_listeners(ports)
    if not listeners:
        return ""
    lines = [f"  port {p}: {d}" for p, d in sorted(listeners.items())]
    return "Ports already in use:\n" + "\n".join(lines)
