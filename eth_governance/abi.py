"""ABI encode/decode helpers.

We do not implement any hashing or ABI codec ourselves. Everything
here is a thin wrapper around :py:mod:`eth_abi`, :py:mod:`eth_utils`
and :py:func:`web3.Web3.keccak`.
"""

from typing import Sequence

import eth_abi
from eth_utils import function_signature_to_4byte_selector
from hexbytes import HexBytes
from web3 import Web3


#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def get_selector_from_signature(function_signature: str) -> bytes:
    """Get 4-byte Solidity function selector from a human readable signature.

    Example:

    .. code-block:: python

        selector = get_selector_from_signature("deploy(bytes32,bytes)")
        assert len(selector) == 4

    :param function_signature:
        Canonical signature like ``transfer(address,uint256)``.
        No spaces, no argument names.
    """
    assert "(" in function_signature and function_signature.endswith(")"), f"Not a function signature: {function_signature}"
    return function_signature_to_4byte_selector(function_signature)


def get_signature_arg_types(function_signature: str) -> list[str]:
    """Extract argument types from a human readable function signature.

    Does not handle tuple arguments.
    """
    selector_text = function_signature[function_signature.find("(") + 1 : function_signature.rfind(")")]
    if not selector_text:
        return []
    return selector_text.split(",")


def encode_with_signature(function_signature: str, args: Sequence) -> bytes:
    """Mimic Solidity's abi.encodeWithSignature() in Python.

    Example:

    .. code-block:: python

            payload = encode_with_signature("init(address)", [my_address])
            assert type(payload) == bytes

    :param function_signature:
        Solidity function signature that can be hashed to a selector.

        ABI fill be extractd from this signature.

    :param args:
        Argument values to be encoded.
    """

    assert type(args) in (tuple, list)

    function_selector = Web3.keccak(text=function_signature)[0:4]
    arg_types = get_signature_arg_types(function_signature)
    encoded_args = eth_abi.encode(arg_types, args)
    return function_selector + encoded_args


def get_constructor_arg_types(abi: list[dict]) -> list[str]:
    """Read constructor argument types from a contract ABI.

    Tuples are expanded to their canonical ``(type,type)`` form
    so the result can be fed directly to :py:func:`eth_abi.decode`.

    :return:
        Empty list if the contract has no explicit constructor.
    """
    constructor = next((a for a in abi if a.get("type") == "constructor"), None)
    if constructor is None:
        return []
    return [_collapse_type(i) for i in constructor.get("inputs", [])]


def _collapse_type(abi_input: dict) -> str:
    abi_type = abi_input["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(_collapse_type(c) for c in abi_input["components"])
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def decode_reencode(arg_types: list[str], data: bytes) -> tuple[tuple, bytes]:
    """Decode ABI payload and encode the result again.

    Used to check that a byte string is the canonical encoding
    of some argument list and nothing else.

    :return:
        Tuple (decoded values, re-encoded payload)
    """
    decoded = eth_abi.decode(arg_types, data)
    return decoded, eth_abi.encode(arg_types, decoded)


def hex_to_bytes(value: str | bytes | None) -> bytes:
    """Convert a 0x-prefixed or bare hex string to bytes.

    ``None`` and ``"0x"`` become empty bytes.
    """
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return bytes(HexBytes(value))
