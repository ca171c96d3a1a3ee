import logging

import pytest

LOGGER = logging.getLogger(__name__)

pytest_plugins = ("ephemeral_testnet.pytest_plugins.testnet_fixtures",)


@pytest.fixture(scope="session", autouse=True)
def session_autouse(init_pytest_temp_dirs: None) -> None:
    """Autouse session fixtures that are required for session setup and teardown."""
