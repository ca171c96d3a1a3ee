import argparse
import contextlib
import functools
import inspect
import itertools
import logging
import os
import subprocess
import time
import types as tt
import typing as tp

from ephemeral_testnet import exceptions
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

GITHUB_URL = "https://github.com/atomica-labs/ephemeral-testnet"


def run_command(
    command: ttypes.CommandType,
    *,
    workdir: ttypes.FileType = "",
    ignore_fail: bool = False,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    merge_stderr: bool = False,
) -> bytes:
    """Run command and return its stdout.

    Raises `CLIError` when the command fails (unless `ignore_fail` is set), and
    `CommandTimeoutError` when it doesn't finish within `timeout` seconds. The timed out process
    is killed. With `merge_stderr`, stderr is interleaved into the returned output.
    """
    cmd: list[str]
    if isinstance(command, str):
        cmd = command.split()
        cmd_str = command
    else:
        cmd = command
        cmd_str = " ".join(command)

    if configuration.DEBUG_TESTNET:
        LOGGER.info("Running `%s`", cmd_str)
    else:
        LOGGER.debug("Running `%s`", cmd_str)

    proc_env = {**os.environ, **env} if env else None
    try:
        p = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            cwd=workdir or None,
            env=proc_env,
        )
    except OSError as exc:
        msg = f"Failed to execute `{cmd_str}`: {exc}"
        raise exceptions.CLIError(msg) from exc

    with p:
        try:
            stdout, stderr = p.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            p.kill()
            p.communicate()
            msg = f"Command `{cmd_str}` timed out after {timeout} seconds."
            raise exceptions.CommandTimeoutError(msg) from exc
        retcode = p.returncode

    if not ignore_fail and retcode != 0:
        err_dec = stderr.decode() if stderr else ""
        err_dec = err_dec or stdout.decode()
        msg = f"An error occurred while running `{cmd_str}`: {err_dec}"
        raise exceptions.CLIError(msg, returncode=retcode, stderr=err_dec)

    return stdout


@functools.cache
def get_current_commit() -> str:
    with contextlib.suppress(exceptions.CLIError):
        return os.environ.get("GIT_REVISION") or run_command("git rev-parse HEAD").decode().strip()
    return "HEAD"


def prepend_flag(flag: str, contents: tp.Iterable) -> list[str]:
    """Prepend flag to every item of the sequence.

    >>> prepend_flag("--foo", [1, 2, 3])
    ['--foo', '1', '--foo', '2', '--foo', '3']
    """
    return list(itertools.chain.from_iterable([flag, str(x)] for x in contents))


def get_line_str_from_frame(frame: tt.FrameType) -> str:
    lineno = frame.f_lineno
    fpath = frame.f_globals["__file__"]
    line_str = f"{fpath}#L{lineno}"
    return line_str


def get_vcs_link() -> str:
    """Return link to the current line in GitHub."""
    calling_frame = None
    with contextlib.suppress(AttributeError):
        calling_frame = inspect.currentframe().f_back  # type: ignore

    if not calling_frame:
        msg = "Couldn't get the calling frame."
        raise ValueError(msg)

    line_str = get_line_str_from_frame(frame=calling_frame)
    loc_part = line_str[line_str.find("ephemeral_testnet") :]
    url = f"{GITHUB_URL}/blob/{get_current_commit()}/{loc_part}"
    return url


def get_deadline(timeout: float) -> float:
    """Return absolute deadline (monotonic clock) for the given timeout."""
    return time.monotonic() + timeout


def get_remaining(deadline: float) -> float:
    """Return number of seconds remaining until the deadline, never negative."""
    return max(deadline - time.monotonic(), 0.0)


def sleep_until_next_poll(deadline: float, *, interval: float) -> None:
    """Sleep for the poll interval, but not past the deadline."""
    time.sleep(min(interval, get_remaining(deadline)))


def check_positive_int(value: str) -> int:
    """Check that the value passed as argparse parameter is a positive integer."""
    try:
        num = int(value)
    except ValueError as exc:
        msg = f"'{value}' is not an integer"
        raise argparse.ArgumentTypeError(msg) from exc
    if num < 1:
        msg = f"'{value}' must be a positive integer"
        raise argparse.ArgumentTypeError(msg)
    return num
