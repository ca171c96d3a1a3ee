"""Teardown of the cluster and the process exit hooks that guarantee it.

Handlers for SIGINT, SIGTERM, uncaught exceptions and normal interpreter exit are installed
when the cluster is created. Each of them tears the cluster down at most once and then defers
to the handler that was installed before. SIGKILL can't be intercepted; the stale cleanup done
by the next start takes care of such leftovers.
"""

import atexit
import concurrent.futures
import logging
import signal
import sys
import threading
import types as tt
import typing as tp

from ephemeral_testnet import exceptions
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import docker_engine
from ephemeral_testnet.utils import framework_log

LOGGER = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

# Serializes teardowns started from different threads
_TEARDOWN_LOCK = threading.RLock()


class CleanupRegistration:
    """Exit hooks that tear the cluster down when the process is interrupted.

    A second SIGINT received while the teardown is running is not handled again and interrupts
    the teardown with `KeyboardInterrupt`.
    """

    def __init__(
        self,
        handle: supervisor.ClusterHandle,
        teardown_func: tp.Callable[[supervisor.ClusterHandle], None],
    ) -> None:
        self.handle = handle
        self.teardown_func = teardown_func
        self.prev_signal_handlers: dict[int, tp.Any] = {}
        self.prev_excepthook: tp.Callable | None = None
        self.active = False
        # Acquired once and never released, marks that the hooks already ran the teardown
        self._triggered = threading.Lock()

    @property
    def triggered(self) -> bool:
        return self._triggered.locked()

    def install(self) -> None:
        self.prev_excepthook = sys.excepthook
        sys.excepthook = self._on_uncaught_exception
        atexit.register(self.run_teardown_once)

        try:
            for signum in HANDLED_SIGNALS:
                self.prev_signal_handlers[signum] = signal.signal(signum, self._on_signal)
        except ValueError:
            # Signal handlers can be set only in the main thread of the main interpreter
            LOGGER.warning(
                "Not running in the main thread, signal handlers for the cluster teardown are "
                "not installed. The cluster is torn down explicitly or on interpreter exit."
            )
            self._restore_signal_handlers()

        self.active = True

    def uninstall(self) -> None:
        if not self.active:
            return
        self.active = False

        atexit.unregister(self.run_teardown_once)
        if sys.excepthook == self._on_uncaught_exception:
            sys.excepthook = self.prev_excepthook or sys.__excepthook__
        try:
            self._restore_signal_handlers()
        except ValueError:
            LOGGER.warning("Not running in the main thread, signal handlers were not restored.")

    def _restore_signal_handlers(self) -> None:
        for signum, prev_handler in list(self.prev_signal_handlers.items()):
            if signal.getsignal(signum) == self._on_signal:
                signal.signal(signum, prev_handler)
            del self.prev_signal_handlers[signum]

    def run_teardown_once(self) -> None:
        """Tear the cluster down unless the hooks already did it. Never raises `TestnetError`."""
        if not self._triggered.acquire(blocking=False):
            return
        try:
            self.teardown_func(self.handle)
        except exceptions.TestnetError as exc:
            LOGGER.error(  # noqa: TRY400
                f"Teardown of cluster '{self.handle.spec.name}' failed: {exc}"
            )

    def _on_signal(self, signum: int, frame: tt.FrameType | None) -> None:
        prev_handler = self.prev_signal_handlers.get(signum)
        LOGGER.warning(
            f"Received {signal.Signals(signum).name}, tearing down cluster "
            f"'{self.handle.spec.name}'"
        )
        self.run_teardown_once()

        if callable(prev_handler):
            prev_handler(signum, frame)
        elif prev_handler == signal.SIG_IGN:
            return
        elif signum == signal.SIGINT:
            raise KeyboardInterrupt
        else:
            sys.exit(128 + signum)

    def _on_uncaught_exception(
        self,
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: tt.TracebackType | None,
    ) -> None:
        self.run_teardown_once()
        prev_hook = self.prev_excepthook or sys.__excepthook__
        prev_hook(exc_type, exc_value, exc_tb)


def register_cleanup(
    handle: supervisor.ClusterHandle,
    teardown_func: tp.Callable[[supervisor.ClusterHandle], None] | None = None,
) -> CleanupRegistration:
    """Install the exit hooks for the cluster and store the registration in the handle."""
    registration = CleanupRegistration(handle=handle, teardown_func=teardown_func or teardown)
    registration.install()
    handle.cleanup_token = registration
    return registration


def unregister_cleanup(handle: supervisor.ClusterHandle) -> None:
    registration = handle.cleanup_token
    if isinstance(registration, CleanupRegistration):
        registration.uninstall()
    handle.cleanup_token = None


def _stop_members(handle: supervisor.ClusterHandle, stop_timeout: int) -> list[str]:
    """Gracefully stop all members in parallel. Return names of containers that didn't stop."""
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(handle.members)) as executor:
        futures = {
            executor.submit(
                docker_engine.stop_container, m.container_name, stop_timeout=stop_timeout
            ): m.container_name
            for m in handle.members
        }
        return [name for f, name in futures.items() if not f.result()]


def teardown(handle: supervisor.ClusterHandle, *, stop_timeout: int | None = None) -> None:
    """Stop and remove all members, their volumes and the network.

    Members are stopped gracefully first. Those that don't stop in time are force-removed.
    Calling the function on a cluster that is already torn down does nothing.
    """
    stop_timeout = configuration.STOP_TIMEOUT if stop_timeout is None else stop_timeout

    with _TEARDOWN_LOCK:
        if handle.torn_down:
            LOGGER.debug(f"Cluster '{handle.spec.name}' is already torn down")
            return

        LOGGER.info(f"Tearing down cluster '{handle.spec.name}'")
        not_stopped = _stop_members(handle=handle, stop_timeout=stop_timeout)
        if not_stopped:
            LOGGER.warning(
                f"Members didn't stop gracefully, force-removing: {', '.join(not_stopped)}"
            )

        failed = supervisor.rollback(handle)
        handle.torn_down = True
        handle.ready = False
        unregister_cleanup(handle)

    if failed:
        msg = (
            f"Teardown of cluster '{handle.spec.name}' failed, resources need to be removed "
            f"manually: {', '.join(failed)}"
        )
        framework_log.framework_logger().error(msg)
        raise exceptions.TeardownError(msg, failed_resources=failed)

    LOGGER.info(f"Cluster '{handle.spec.name}' torn down")
