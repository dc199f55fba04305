"""Deployment test fixtures.

- Every test gets a fresh :py:class:`web3.EthereumTesterProvider` chain

- Contracts are the Solidity stand-ins from :py:mod:`melon_deploy.mocks`, compiled once per session and written to the test temporary directory

- Transactions are signed by a funded hot wallet through a :py:class:`melon_deploy.submitter.TransactionSubmitter`
"""

import datetime
from pathlib import Path

import pytest
from web3 import EthereumTesterProvider, Web3

from melon_deploy.deploy import DeploymentContext
from melon_deploy.hotwallet import HotWallet
from melon_deploy.mocks import write_mock_artifacts
from melon_deploy.submitter import TransactionSubmitter


@pytest.fixture
def tester_provider():
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return EthereumTesterProvider()


@pytest.fixture
def eth_tester(tester_provider):
    return tester_provider.ethereum_tester


@pytest.fixture
def web3(tester_provider):
    """Set up a local unit testing blockchain."""
    return Web3(tester_provider)


@pytest.fixture()
def deployer(web3) -> HotWallet:
    """Deploy account.

    A hot wallet funded from the first test account.
    """
    return HotWallet.create_for_testing(web3, eth_amount=100)


@pytest.fixture()
def artifacts_dir(tmp_path) -> Path:
    """Compiler output directory with the mock contracts."""
    return write_mock_artifacts(tmp_path / "out")


@pytest.fixture()
def submitter(web3, deployer) -> TransactionSubmitter:
    return TransactionSubmitter(
        web3,
        [deployer],
        poll_delay=datetime.timedelta(seconds=0.05),
        confirmation_timeout=datetime.timedelta(seconds=30),
    )


@pytest.fixture()
def ctx(submitter, artifacts_dir) -> DeploymentContext:
    return DeploymentContext(submitter, artifacts_dir)
