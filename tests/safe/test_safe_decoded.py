"""Parsing Safe Transaction Service decoded call trees."""

import datetime

import pytest
from web3 import Web3

from eth_governance.safe.decoded import CallKind, DecodedCall, DecodedCallError, PendingTransaction, parse_submission_date


def test_parse_opaque_call():
    """Service could not decode the call data."""
    call = DecodedCall.parse(
        {
            "to": "0x4ebdf703948ddcea3b11f675b4d1fba9d2414a14",
            "value": "1000",
            "data": "0xdeadbeef",
            "operation": 0,
            "dataDecoded": None,
        }
    )
    assert call.kind == CallKind.opaque
    assert call.method is None
    assert call.value == 1000
    assert call.data == bytes.fromhex("deadbeef")
    assert call.to == Web3.to_checksum_address("0x4ebdf703948ddcea3b11f675b4d1fba9d2414a14")


def test_parse_plain_eth_transfer():
    """No data at all."""
    call = DecodedCall.parse({"to": "0x4ebdf703948ddcea3b11f675b4d1fba9d2414a14", "value": "1", "data": None, "operation": 0})
    assert call.kind == CallKind.opaque
    assert call.data == b""


def test_parse_leaf_call(timelock_call):
    call = DecodedCall.parse(timelock_call("queueTransaction", eta=1000))
    assert call.kind == CallKind.leaf
    assert call.method == "queueTransaction"
    assert len(call.parameters) == 5
    assert call.parameters[4].name == "eta"
    assert int(call.get_parameter_value(4)) == 1000
    assert call.nested_calls == ()


def test_parse_batch_call(timelock_call, multisend_call):
    payload = multisend_call(
        [
            timelock_call("queueTransaction", eta=1000),
            timelock_call("executeTransaction", eta=900),
        ]
    )
    call = DecodedCall.parse(payload)
    assert call.kind == CallKind.batch
    assert call.operation == 1
    assert [c.method for c in call.nested_calls] == ["queueTransaction", "executeTransaction"]
    assert all(c.kind == CallKind.leaf for c in call.nested_calls)


def test_parse_batch_wrong_parameter_count(timelock_call, multisend_call):
    payload = multisend_call([timelock_call("queueTransaction", eta=1000)])
    payload["dataDecoded"]["parameters"].append({"name": "extra", "type": "uint256", "value": "1"})
    with pytest.raises(DecodedCallError):
        DecodedCall.parse(payload)


def test_parse_batch_wrong_parameter_name(timelock_call, multisend_call):
    payload = multisend_call([timelock_call("queueTransaction", eta=1000)])
    payload["dataDecoded"]["parameters"][0]["name"] = "txs"
    with pytest.raises(DecodedCallError):
        DecodedCall.parse(payload)


def test_parse_empty_batch(timelock_call, multisend_call):
    payload = multisend_call([timelock_call("queueTransaction", eta=1000)])
    payload["dataDecoded"]["parameters"][0]["valueDecoded"] = []
    with pytest.raises(DecodedCallError):
        DecodedCall.parse(payload)


def test_parse_nested_multisend_is_leaf(timelock_call, multisend_call):
    """Batches are unwrapped only one level."""
    inner = multisend_call([timelock_call("queueTransaction", eta=1000)])
    inner["operation"] = 0
    call = DecodedCall.parse(multisend_call([inner]))
    assert call.kind == CallKind.batch
    assert call.nested_calls[0].kind == CallKind.leaf
    assert call.nested_calls[0].method == "multiSend"


def test_parse_submission_date():
    assert parse_submission_date("2023-01-05T12:00:00.123456Z") == datetime.datetime(2023, 1, 5, 12, 0, 0, 123456, tzinfo=datetime.timezone.utc)
    assert parse_submission_date("2023-01-05T12:00:00").tzinfo == datetime.timezone.utc


def test_parse_pending_transaction(timelock_call, pending_tx):
    data = pending_tx(timelock_call("executeTransaction", eta=1000), nonce=7, safe_tx_hash="0xabcd")
    tx = PendingTransaction.parse(data)
    assert tx.safe_tx_hash == "0xabcd"
    assert tx.nonce == 7
    assert not tx.is_executed
    assert tx.call.method == "executeTransaction"
    assert tx.raw["safeTxHash"] == "0xabcd"
