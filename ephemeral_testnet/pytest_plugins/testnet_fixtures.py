"""Pytest fixtures providing an ephemeral validator testnet.

Enable the plugin in `conftest.py`::

    pytest_plugins = ("ephemeral_testnet.pytest_plugins.testnet_fixtures",)

The cluster is shared by all tests of the session. Tests run sequentially against it, so the
integration tests are meant to run without `pytest-xdist` workers.
"""

import logging
import typing as tp

import pytest
from _pytest.config import Config
from _pytest.config.argparsing import Parser
from _pytest.fixtures import FixtureRequest
from _pytest.tmpdir import TempPathFactory

from ephemeral_testnet import testnet as testnet_api
from ephemeral_testnet.cluster_management import lifecycle
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import aptos_cli
from ephemeral_testnet.utils import configuration
from ephemeral_testnet.utils import docker_engine
from ephemeral_testnet.utils import helpers
from ephemeral_testnet.utils import temptools

LOGGER = logging.getLogger(__name__)

TESTNET_SIZE_ARG = "--testnet-size"
NEEDS_DOCKER_MARKER = "needs_docker"

# Amount used by the `funded_address` fixture when the test doesn't ask for a specific one
DEFAULT_FUND_AMOUNT = 100_000_000


def pytest_addoption(parser: Parser) -> None:
    parser.addoption(
        TESTNET_SIZE_ARG,
        action="store",
        type=helpers.check_positive_int,
        default=configuration.TESTNET_SIZE,
        help=f"Number of testnet members (default: {configuration.TESTNET_SIZE})",
    )


def pytest_configure(config: Config) -> None:
    config.addinivalue_line(
        "markers", f"{NEEDS_DOCKER_MARKER}: test needs a running container engine"
    )


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(config: Config, items: list) -> None:  # noqa: ARG001
    needs_docker = [i for i in items if NEEDS_DOCKER_MARKER in i.keywords]
    if not needs_docker or docker_engine.is_engine_available():
        return

    skip_marker = pytest.mark.skip(reason="container engine not available")
    for item in needs_docker:
        item.add_marker(skip_marker)


@pytest.fixture(scope="session")
def init_pytest_temp_dirs(tmp_path_factory: TempPathFactory) -> None:
    """Init `PytestTempDirs`."""
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)


@pytest.fixture(scope="session")
def testnet(
    init_pytest_temp_dirs: None,  # noqa: ARG001
    request: FixtureRequest,
) -> tp.Generator[supervisor.ClusterHandle, None, None]:
    """Start a bootstrapped cluster for the whole test session."""
    size = request.config.getoption(TESTNET_SIZE_ARG)
    handle = testnet_api.new(size, bootstrap_amount=configuration.BOOTSTRAP_AMOUNT)

    yield handle

    if configuration.KEEP_CLUSTER_RUNNING:
        # Stopping the cluster needs to be handled manually, e.g. with `testnet-ctl stop`
        lifecycle.unregister_cleanup(handle)
        LOGGER.info(f"Keeping cluster '{handle.spec.name}' running")
        return

    testnet_api.teardown(handle)


@pytest.fixture
def funded_address(
    testnet: supervisor.ClusterHandle,
) -> tp.Callable[..., str]:
    """Return a function that creates a new account funded by the faucet."""

    def _fund(amount: int = DEFAULT_FUND_AMOUNT) -> str:
        address = aptos_cli.get_random_address()
        testnet_api.fund(testnet, address, amount)
        return address

    return _fund
