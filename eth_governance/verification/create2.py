"""Deterministic deployment address resolution.

``address = keccak256(0xff ++ factory ++ salt ++ keccak256(initcode))[12:]``

See `EIP-1014 <https://eips.ethereum.org/EIPS/eip-1014>`__.
"""

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3


#: EIP-1014 prefix byte
CREATE2_PREFIX = b"\xff"


class AddressResolutionError(Exception):
    """Malformed CREATE2 input."""


def resolve_create2_address(
    factory: HexAddress | str | bytes,
    salt: bytes | HexBytes,
    initcode: bytes | HexBytes,
) -> HexAddress:
    """Calculate the address a CREATE2 factory deploys the init code to.

    Pure function, no RPC calls.

    Example:

    .. code-block:: python

        address = resolve_create2_address(
            "0x4e59b44847b379578588920cA78FbF26c0B4956C",
            b"\x00" * 32,
            bytes.fromhex("6080..."),
        )

    :param factory:
        Factory contract address, 20 bytes

    :param salt:
        32 bytes

    :param initcode:
        Creation bytecode including constructor arguments

    :return:
        Checksummed address

    :raise AddressResolutionError:
        Factory or salt has a wrong length
    """
    factory_bytes = bytes(HexBytes(factory))
    salt = bytes(salt)

    if len(factory_bytes) != 20:
        raise AddressResolutionError(f"Factory address must be 20 bytes, got {len(factory_bytes)}: {factory}")

    if len(salt) != 32:
        raise AddressResolutionError(f"Salt must be 32 bytes, got {len(salt)}")

    initcode_hash = Web3.keccak(bytes(initcode))
    digest = Web3.keccak(CREATE2_PREFIX + factory_bytes + salt + initcode_hash)
    return Web3.to_checksum_address(digest[12:])
