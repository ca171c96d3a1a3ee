import functools
import tempfile
from pathlib import Path

from _pytest.tmpdir import TempPathFactory

from ephemeral_testnet.utils import configuration


class PytestTempDirs:
    """Pytest temporary directories that are used accross the framework.

    The class is initialized in the pytest plugin where we have access to the `tmp_path_factory`
    fixture. Outside of pytest (e.g. in the `testnet-ctl` command) the dirs stay uninitialized.
    """

    pytest_worker_tmp: Path | None = None

    _err_init_str = "PytestTempDirs are not initialized"

    @classmethod
    def init(cls, tmp_path_factory: TempPathFactory) -> None:
        worker_tmp = Path(tmp_path_factory.getbasetemp())
        cls.pytest_worker_tmp = worker_tmp

    @classmethod
    def is_initialized(cls) -> bool:
        return cls.pytest_worker_tmp is not None


def get_pytest_worker_tmp() -> Path:
    """Return Pytest temporary directory for the current worker.

    When running pytest with multiple workers, each worker has it's own base temporary
    directory inside the "root" temporary directory.
    """
    if PytestTempDirs.pytest_worker_tmp is None:
        raise RuntimeError(PytestTempDirs._err_init_str)
    return PytestTempDirs.pytest_worker_tmp


@functools.cache
def get_basetemp() -> Path:
    """Return base temporary directory for lock files and logs.

    The directory is shared by all pytest workers and by the `testnet-ctl` command, so locks
    created there are respected by both.
    """
    basetemp = Path(tempfile.gettempdir()) / configuration.TESTNET_NAME
    basetemp.mkdir(mode=0o700, parents=True, exist_ok=True)
    return basetemp
