"""Compare deployed init code against compiled bytecode.

Solidity appends CBOR encoded metadata (auxdata) to the bytecode.
The last two bytes give the length of the CBOR blob:

.. code-block:: text

    <code> a2 64 'ipfs' 58 22 <34 bytes> 64 'solc' 43 <3 bytes> 0033

With ``bytecode_hash = "none"`` the hash entry is left out,
but the compiler version entry stays:

.. code-block:: text

    <code> a1 64 'solc' 43 <3 bytes> 000a

The metadata hash depends on file paths and comments, so the same
source compiled in different checkouts can differ in these trailing bytes.
See `Solidity metadata <https://docs.soliditylang.org/en/latest/metadata.html>`__.
"""

import enum
import logging
from dataclasses import dataclass


logger = logging.getLogger(__name__)


#: CBOR text string keys of metadata hash entries
METADATA_HASH_KEYS = (
    b"\x64ipfs",
    b"\x65bzzr0",
    b"\x65bzzr1",
)

#: CBOR map header for 1-3 items, the first byte of Solidity auxdata
CBOR_MAP_HEADERS = (0xA1, 0xA2, 0xA3)


class ComparisonBranch(enum.Enum):
    """Which comparison rule matched."""

    #: Init code is artifact bytecode + manifest constructor arguments, byte by byte
    identical = "identical"

    #: Code matches once the metadata trailers are removed from both sides
    metadata_stripped = "metadata_stripped"

    #: Neither rule matched
    mismatch = "mismatch"


@dataclass(slots=True, frozen=True)
class BytecodeComparison:
    """Result of :py:func:`compare_initcode`."""

    branch: ComparisonBranch

    #: Whether the compiled artifact carries a metadata hash
    has_metadata_hash: bool

    #: Constructor arguments recovered from the init code tail, ``None`` on mismatch
    constructor_args: bytes | None

    #: Longest common prefix of the init code and the expected bytes
    common_prefix_length: int


def get_auxdata_length(code: bytes) -> int:
    """Get the length of the trailing CBOR metadata, including the 2 length bytes.

    :return:
        0 if the code does not end with something that looks like Solidity auxdata
    """
    if len(code) < 2:
        return 0

    cbor_length = int.from_bytes(code[-2:], "big")
    total = cbor_length + 2
    if cbor_length == 0 or total > len(code):
        return 0

    if code[-total] not in CBOR_MAP_HEADERS:
        return 0

    return total


def strip_auxdata(code: bytes) -> bytes:
    """Remove trailing Solidity CBOR metadata."""
    code = bytes(code)
    length = get_auxdata_length(code)
    if length == 0:
        return code
    return code[:-length]


def has_metadata_hash(code: bytes) -> bool:
    """Does the bytecode end with auxdata containing an IPFS or Swarm hash."""
    code = bytes(code)
    length = get_auxdata_length(code)
    if length == 0:
        return False
    auxdata = code[-length:]
    return any(key in auxdata for key in METADATA_HASH_KEYS)


def common_prefix_length(a: bytes, b: bytes) -> int:
    """How many leading bytes two blobs share."""
    limit = min(len(a), len(b))
    for i in range(limit):
        if a[i] != b[i]:
            return i
    return limit


def compare_initcode(initcode: bytes, artifact_bytecode: bytes, encoded_constructor_args: bytes) -> BytecodeComparison:
    """Compare CREATE2 init code against a compiled artifact.

    - Identical to ``artifact_bytecode + encoded_constructor_args``:
      constructor arguments are the bytes after the artifact bytecode

    - Otherwise split the constructor arguments off the init code tail,
      strip the metadata trailer from both code parts and require
      the init code to start with the stripped artifact code

    :param encoded_constructor_args:
        Constructor arguments as recorded in the manifest.
        Only their length is used to split the init code in the fallback rule.
    """
    initcode = bytes(initcode)
    artifact_bytecode = bytes(artifact_bytecode)
    encoded_constructor_args = bytes(encoded_constructor_args)

    expected = artifact_bytecode + encoded_constructor_args
    prefix = common_prefix_length(initcode, expected)
    metadata_hash = has_metadata_hash(artifact_bytecode)

    if len(artifact_bytecode) == 0:
        logger.warning("Artifact has no creation bytecode, abstract contract or interface?")
        return BytecodeComparison(ComparisonBranch.mismatch, metadata_hash, None, prefix)

    if initcode == expected:
        return BytecodeComparison(
            ComparisonBranch.identical,
            metadata_hash,
            initcode[len(artifact_bytecode) :],
            prefix,
        )

    args_length = len(encoded_constructor_args)
    if args_length > len(initcode):
        return BytecodeComparison(ComparisonBranch.mismatch, metadata_hash, None, prefix)

    split = len(initcode) - args_length
    initcode_core = strip_auxdata(initcode[:split])
    artifact_core = strip_auxdata(artifact_bytecode)

    if len(artifact_core) > 0 and initcode_core.startswith(artifact_core):
        logger.info(
            "Init code matches after removing metadata, code %d bytes, artifact %d bytes",
            len(initcode_core),
            len(artifact_core),
        )
        return BytecodeComparison(
            ComparisonBranch.metadata_stripped,
            metadata_hash,
            initcode[split:],
            prefix,
        )

    return BytecodeComparison(ComparisonBranch.mismatch, metadata_hash, None, prefix)
