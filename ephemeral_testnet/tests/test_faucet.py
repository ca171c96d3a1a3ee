"""Tests for funding of test accounts."""

import concurrent.futures
import logging

import allure
import pytest

from ephemeral_testnet import exceptions
from ephemeral_testnet import testnet as testnet_api
from ephemeral_testnet.cluster_management import supervisor
from ephemeral_testnet.utils import aptos_cli
from ephemeral_testnet.utils import helpers

LOGGER = logging.getLogger(__name__)

pytestmark = pytest.mark.needs_docker


class TestFaucet:
    """Tests for the faucet."""

    @allure.link(helpers.get_vcs_link())
    @pytest.mark.smoke
    def test_fund_new_account(self, testnet: supervisor.ClusterHandle):
        """Fund a fresh account twice and check that the amounts add up."""
        address = aptos_cli.get_random_address()
        assert testnet_api.get_balance(testnet, address) == 0

        tx_hash = testnet_api.fund(testnet, address, 100)
        assert tx_hash.startswith("0x")
        assert testnet_api.get_balance(testnet, address) == 100

        testnet_api.fund(testnet, address, 100)
        assert testnet_api.get_balance(testnet, address) == 200

    @allure.link(helpers.get_vcs_link())
    def test_fund_concurrently(self, testnet: supervisor.ClusterHandle):
        """Fund several accounts in parallel."""
        addresses = [aptos_cli.get_random_address() for __ in range(len(testnet.members) * 2)]

        with concurrent.futures.ThreadPoolExecutor(max_workers=len(addresses)) as executor:
            futures = [executor.submit(testnet_api.fund, testnet, a, 1_000) for a in addresses]
            tx_hashes = [f.result() for f in futures]

        assert len(set(tx_hashes)) == len(addresses)
        for address in addresses:
            assert testnet_api.get_balance(testnet, address) == 1_000

    @allure.link(helpers.get_vcs_link())
    def test_funded_address_fixture(self, testnet: supervisor.ClusterHandle, funded_address):
        address = funded_address(500)
        assert testnet_api.get_balance(testnet, address) == 500

    @allure.link(helpers.get_vcs_link())
    def test_second_bootstrap(self, testnet: supervisor.ClusterHandle):
        """Check that the cluster can't be bootstrapped twice."""
        assert testnet.funded
        with pytest.raises(exceptions.AlreadyBootstrappedError):
            testnet_api.bootstrap(testnet, 1_000)

    @allure.link(helpers.get_vcs_link())
    @pytest.mark.parametrize("amount", (0, -1))
    def test_fund_invalid_amount(self, testnet: supervisor.ClusterHandle, amount: int):
        with pytest.raises(ValueError, match="positive"):
            testnet_api.fund(testnet, aptos_cli.get_random_address(), amount)
