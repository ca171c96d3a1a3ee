import contextlib
import logging
import threading
import typing as tp

from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import temptools

# Use dummy locking if not executing with multiple workers.
# When running with multiple workers, operations with shared resources (like member accounts)
# need to be locked to single worker (otherwise e.g. sequence numbers would clash).
if configuration.IS_XDIST:
    from filelock import FileLock

    # Suppress messages from filelock
    logging.getLogger("filelock").setLevel(logging.WARNING)

    FileLockIfXdist: tp.Any = FileLock
else:
    FileLockIfXdist = contextlib.nullcontext


class ResourceLock:
    """Lock of a named shared resource.

    Serializes threads of the current process and, when running with multiple pytest-xdist
    workers, also the workers.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._thread_lock = threading.Lock()

    @property
    def lock_file(self) -> str:
        return f"{temptools.get_basetemp()}/{self.name}.lock"

    @contextlib.contextmanager
    def acquire(self) -> tp.Iterator[None]:
        with self._thread_lock, FileLockIfXdist(self.lock_file):
            yield

    def locked(self) -> bool:
        """Return True if a thread of the current process holds the lock."""
        return self._thread_lock.locked()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
