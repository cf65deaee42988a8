"""Take over a deployed Safe multisig on a forked chain.

Safe source code:

- https://github.com/safe-global/safe-smart-account/blob/main/contracts/Safe.sol
"""

import logging
import time

from eth_typing import HexAddress
from safe_eth.eth import EthereumClient
from safe_eth.safe.safe import SafeV141
from web3 import Web3


logger = logging.getLogger(__name__)


def create_fork_ethereum_client(web3: Web3, attempts=5, sleep=3.0) -> EthereumClient:
    """Create safe-eth-py client talking to the same fork as ``web3``.

    ``EthereumClient`` reads the chain in its constructor,
    and a fork that was just started may not answer yet.
    """
    url = web3.provider.endpoint_uri
    for attempts_left in range(attempts - 1, -1, -1):
        try:
            return EthereumClient(url, retry_count=attempts)
        except Exception as e:
            if not attempts_left:
                raise
            logger.warning("Safe client could not connect %s, attempts left %d: %s", url, attempts_left, e)
            time.sleep(sleep)


def fetch_safe_deployment(
    web3: Web3,
    address: HexAddress | str,
) -> SafeV141:
    """Wrap Safe contract as Safe Python proxy object"""
    return SafeV141(Web3.to_checksum_address(address), create_fork_ethereum_client(web3))


def encode_pre_validated_signature(owner: HexAddress | str) -> bytes:
    """Create a Safe signature that needs no private key.

    Safe accepts ``v = 1`` signatures where ``r`` is the owner address,
    if the owner itself is the ``msg.sender`` of ``execTransaction()``.

    See ``Safe.checkNSignatures()``.

    :return:
        65 bytes r + s + v
    """
    owner_bytes = bytes.fromhex(Web3.to_checksum_address(owner)[2:])
    r = owner_bytes.rjust(32, b"\x00")
    s = b"\x00" * 32
    return r + s + b"\x01"
