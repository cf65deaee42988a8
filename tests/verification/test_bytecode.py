"""Init code comparison with Solidity metadata trailers."""

import pytest

from eth_governance.verification.bytecode import (
    ComparisonBranch,
    common_prefix_length,
    compare_initcode,
    get_auxdata_length,
    has_metadata_hash,
    strip_auxdata,
)


CODE = bytes.fromhex("608060405234801561001057600080fd5b50")

#: a2 64 'ipfs' 58 22 <34 bytes> 64 'solc' 43 0.8.17 0033
IPFS_AUXDATA = bytes.fromhex("a264697066735822" + "12" * 34 + "64736f6c6343000811" + "0033")

#: a1 64 'solc' 43 0.8.17 000a, built with bytecode_hash = "none"
SOLC_ONLY_AUXDATA = bytes.fromhex("a164736f6c6343000811" + "000a")

ARGS = bytes(31) + b"\x2a"


@pytest.mark.parametrize("auxdata", [IPFS_AUXDATA, SOLC_ONLY_AUXDATA])
def test_strip_auxdata(auxdata):
    assert get_auxdata_length(CODE + auxdata) == len(auxdata)
    assert strip_auxdata(CODE + auxdata) == CODE


def test_strip_no_auxdata():
    assert strip_auxdata(CODE) == CODE
    assert strip_auxdata(b"") == b""
    assert strip_auxdata(b"\x00\x01") == b"\x00\x01"


def test_has_metadata_hash():
    assert has_metadata_hash(CODE + IPFS_AUXDATA)
    assert not has_metadata_hash(CODE + SOLC_ONLY_AUXDATA)
    assert not has_metadata_hash(CODE)


def test_common_prefix_length():
    assert common_prefix_length(b"\xaa\xbb\xcc", b"\xaa\xbb\xdd") == 2
    assert common_prefix_length(b"\xaa\xbb", b"\xaa\xbb\xcc") == 2
    assert common_prefix_length(b"", b"\xaa") == 0


def test_compare_identical():
    """0xAABB + CCDD == 0xAABBCCDD"""
    result = compare_initcode(bytes.fromhex("aabbccdd"), bytes.fromhex("aabb"), bytes.fromhex("ccdd"))
    assert result.branch == ComparisonBranch.identical
    assert result.constructor_args == bytes.fromhex("ccdd")
    assert not result.has_metadata_hash
    assert result.common_prefix_length == 4


def test_compare_extra_metadata_suffix():
    """0xAABB + CCDD vs 0xAABBEEFFCCDD where EEFF is a trailer the build lacks."""
    result = compare_initcode(bytes.fromhex("aabbeeffccdd"), bytes.fromhex("aabb"), bytes.fromhex("ccdd"))
    assert result.branch == ComparisonBranch.metadata_stripped
    assert result.constructor_args == bytes.fromhex("ccdd")
    assert result.common_prefix_length == 2


def test_compare_identical_with_metadata_hash():
    artifact = CODE + IPFS_AUXDATA
    result = compare_initcode(artifact + ARGS, artifact, ARGS)
    assert result.branch == ComparisonBranch.identical
    assert result.has_metadata_hash
    assert result.constructor_args == ARGS


def test_compare_different_metadata():
    """Deployed with an IPFS hash, rebuilt without one."""
    result = compare_initcode(CODE + IPFS_AUXDATA + ARGS, CODE + SOLC_ONLY_AUXDATA, ARGS)
    assert result.branch == ComparisonBranch.metadata_stripped
    assert not result.has_metadata_hash
    assert result.constructor_args == ARGS


def test_compare_code_mismatch():
    other_code = CODE[:-1] + b"\x51"
    result = compare_initcode(other_code + SOLC_ONLY_AUXDATA + ARGS, CODE + SOLC_ONLY_AUXDATA, ARGS)
    assert result.branch == ComparisonBranch.mismatch
    assert result.constructor_args is None
    assert result.common_prefix_length == len(CODE) - 1


def test_compare_initcode_too_short():
    result = compare_initcode(b"\xaa", bytes.fromhex("aabb"), bytes.fromhex("ccdd"))
    assert result.branch == ComparisonBranch.mismatch


def test_compare_empty_artifact():
    """Interfaces and abstract contracts have no creation code."""
    result = compare_initcode(ARGS, b"", ARGS)
    assert result.branch == ComparisonBranch.mismatch
