"""Anvil integration.

- `Anvil <https://book.getfoundry.sh/reference/anvil/>`__ is the local
  testnet node of the Foundry project

- We replay governance transactions on Anvil mainnet forks
  before they are executed for real

- The same custom RPC methods work on Tenderly forks,
  except ``evm_mine`` with a timestamp argument

To install Anvil:

.. code-block:: shell

    curl -L https://foundry.paradigm.xyz | bash
    PATH=~/.foundry/bin:$PATH
    foundryup
"""

import logging
import os
import shutil
import time
from dataclasses import dataclass
from subprocess import DEVNULL, PIPE
from typing import Any, Optional

import psutil
import requests
from eth_typing import HexAddress
from web3 import HTTPProvider, Web3

from eth_governance.utils import find_free_port, shutdown_hard


logger = logging.getLogger(__name__)


#: How much ETH impersonated accounts get for gas, in wei
IMPERSONATED_ACCOUNT_BALANCE = 0x10000000000000000000


class RPCRequestError(Exception):
    """Node refused a custom RPC method."""


def make_anvil_custom_rpc_request(web3: Web3, method: str, args: Optional[list] = None) -> Any:
    """Call a node specific JSON-RPC method like ``evm_mine``.

    `See the Anvil custom RPC methods here <https://book.getfoundry.sh/reference/anvil/>`__.

    :return:
        RPC result

    :raise RPCRequestError:
        The node returned an error
    """
    try:
        response = web3.provider.make_request(method, tuple(args or ()))  # type: ignore
    except requests.exceptions.ConnectionError as e:
        raise RPCRequestError(f"Could not reach node for {method}: {e}") from e

    if "error" in response:
        raise RPCRequestError(f"{method} failed: {response['error'].get('message')}")
    return response.get("result")


@dataclass
class AnvilLaunch:
    """Anvil process running on the background."""

    #: Localhost port Anvil listens to
    port: int

    #: Command line used to start Anvil
    cmd: list[str]

    #: Anvil JSON-RPC
    json_rpc_url: str

    process: psutil.Popen

    def close(self, log_level: Optional[int] = None, block=True, block_timeout=30) -> tuple[bytes, bytes]:
        """Kill Anvil.

        :param log_level:
            Dump Anvil output to logging at this level

        :return:
            Anvil stdout, stderr
        """
        stdout, stderr = shutdown_hard(
            self.process,
            log_level=log_level,
            block=block,
            block_timeout=block_timeout,
            check_port=self.port,
        )
        logger.info("Anvil at %s shut down", self.json_rpc_url)
        return stdout, stderr


def launch_anvil(
    fork_url: Optional[str] = None,
    cmd="anvil",
    port: int | tuple = (19999, 29999, 25),
    hardfork: str | None = "cancun",
    fork_block_number: Optional[int] = None,
    launch_wait_seconds=20.0,
) -> AnvilLaunch:
    """Start Anvil test chain or mainnet fork on the background.

    Example:

    .. code-block:: python

        launch = launch_anvil(os.environ["JSON_RPC_ETHEREUM"])
        try:
            web3 = Web3(HTTPProvider(launch.json_rpc_url))
            ...
        finally:
            launch.close(log_level=logging.ERROR)

    :param fork_url:
        JSON-RPC of the chain to fork. Empty test chain if not given.

    :param port:
        Port number, or (min port, max port, attempts) to pick a random free port

    :param launch_wait_seconds:
        How long we wait for Anvil to answer JSON-RPC
    """
    anvil = shutil.which(cmd)
    assert anvil is not None, f"{cmd} command not in PATH {os.environ.get('PATH')}"

    if isinstance(port, tuple):
        port = find_free_port(*port)

    cmd_list = [anvil, "--port", str(port)]
    if fork_url:
        cmd_list += ["--fork-url", fork_url]
    if fork_block_number:
        cmd_list += ["--fork-block-number", str(fork_block_number)]
    if hardfork:
        cmd_list += ["--hardfork", hardfork]

    # Fork URLs may carry API keys
    logger.info("Launching anvil on port %d, fork %s", port, "yes" if fork_url else "no")

    env = os.environ.copy()
    env["RUST_BACKTRACE"] = "1"
    process = psutil.Popen(cmd_list, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, env=env)

    url = f"http://localhost:{port}"
    web3 = Web3(HTTPProvider(url, request_kwargs={"timeout": 3.0}))
    deadline = time.time() + launch_wait_seconds
    block_number = None
    while time.time() < deadline:
        try:
            block_number = web3.eth.block_number
            break
        except (requests.exceptions.ConnectionError, requests.exceptions.ReadTimeout):
            time.sleep(0.1)

    if block_number is None:
        stdout, stderr = shutdown_hard(process, log_level=logging.ERROR, block=True, check_port=port)
        raise AssertionError(f"Anvil did not answer at {url} in {launch_wait_seconds} seconds, stdout is {len(stdout)} bytes, stderr is {len(stderr)} bytes")

    logger.info("Anvil running at %s, block %d", url, block_number)
    return AnvilLaunch(port, cmd_list, url, process)


def impersonate_account(web3: Web3, address: HexAddress | str, balance: int | None = IMPERSONATED_ACCOUNT_BALANCE):
    """Make Anvil accept transactions from an account we have no key for.

    :param balance:
        Top up the account with ETH for gas fees.
        Contracts like Safe do not usually hold ETH.
    """
    make_anvil_custom_rpc_request(web3, "anvil_impersonateAccount", [address])
    if balance is not None:
        make_anvil_custom_rpc_request(web3, "anvil_setBalance", [address, hex(balance)])


def stop_impersonating_account(web3: Web3, address: HexAddress | str):
    make_anvil_custom_rpc_request(web3, "anvil_stopImpersonatingAccount", [address])


def mine(web3: Web3, timestamp: Optional[int] = None):
    """Mine a block, optionally with the given absolute timestamp."""
    make_anvil_custom_rpc_request(web3, "evm_mine", [timestamp] if timestamp is not None else None)


def increase_time(web3: Web3, seconds: int):
    """Leap the clock forward and mine a block.

    Tenderly forks do not support ``evm_mine`` with a timestamp,
    but support ``evm_increaseTime``.
    """
    assert seconds > 0, f"Cannot increase time by {seconds}"
    make_anvil_custom_rpc_request(web3, "evm_increaseTime", [hex(seconds)])
    make_anvil_custom_rpc_request(web3, "evm_mine")
