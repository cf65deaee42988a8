"""Clock warping and impersonation against a real Anvil node.

To run tests in this module you need ``anvil`` in the path:

.. code-block:: shell

    foundryup
    pytest tests/provider/test_anvil_time_warp.py

"""
import logging
import shutil

import pytest
from web3 import HTTPProvider, Web3

from eth_governance.provider.anvil import IMPERSONATED_ACCOUNT_BALANCE, AnvilLaunch, impersonate_account, launch_anvil
from eth_governance.safe.replay import advance_time
from eth_governance.safe.simulate import AnvilSafeBackend

pytestmark = pytest.mark.skipif(shutil.which("anvil") is None, reason="Install anvil command to run these tests")


#: Some address we do not have a key for
SAFE_ADDRESS = "0xA7D5DDc1b8557914F158076b228AA91eF613f1D5"


@pytest.fixture()
def anvil() -> AnvilLaunch:
    """Empty Anvil test chain, no fork."""
    launch = launch_anvil()
    try:
        yield launch
    finally:
        launch.close(log_level=logging.ERROR)


@pytest.fixture()
def web3(anvil: AnvilLaunch) -> Web3:
    return Web3(HTTPProvider(anvil.json_rpc_url))


@pytest.mark.parametrize("tenderly", [False, True])
def test_advance_time(web3: Web3, tenderly: bool):
    """Both evm_mine with a timestamp and evm_increaseTime move the clock."""
    backend = AnvilSafeBackend(web3, SAFE_ADDRESS, tenderly=tenderly)
    start = backend.get_latest_block()

    target = start.timestamp + 2 * 24 * 3600
    block = advance_time(backend, target)

    assert block.number == start.number + 1
    assert block.timestamp >= target
    assert web3.eth.get_block("latest")["timestamp"] == block.timestamp


def test_advance_time_backwards(web3: Web3):
    """The clock never goes back."""
    backend = AnvilSafeBackend(web3, SAFE_ADDRESS)
    start = backend.get_latest_block()
    assert advance_time(backend, start.timestamp - 3600) is None
    assert backend.get_latest_block() == start


def test_impersonate(web3: Web3):
    """Impersonated accounts can pay gas."""
    impersonate_account(web3, SAFE_ADDRESS)
    assert web3.eth.get_balance(SAFE_ADDRESS) == IMPERSONATED_ACCOUNT_BALANCE

    tx_hash = web3.eth.send_transaction({"from": SAFE_ADDRESS, "to": web3.eth.accounts[0], "value": 1})
    assert web3.eth.wait_for_transaction_receipt(tx_hash)["status"] == 1
