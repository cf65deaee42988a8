"""Safe Transaction Service payload factories shared by the tests.

Payloads mimic what ``/api/v1/multisig-transactions/`` returns:
raw call data together with the service's ``dataDecoded`` tree.
"""

import datetime

import pytest

from eth_governance.abi import encode_with_signature
from eth_governance.safe.timelock import TIMELOCK_ARGS, ReplayableTransaction, encode_multisend


#: Compound style timelock
TIMELOCK_ADDRESS = "0xa133c9a92fb8ddb962af1cbae58b2723a0bdf23b"

#: Safe MultiSendCallOnly v1.3.0
MULTISEND_ADDRESS = "0x40a2accbd92bca938b02010e17a5b8929b49130d"

#: Some contract the timelock calls
TARGET_ADDRESS = "0x4ebdf703948ddcea3b11f675b4d1fba9d2414a14"


def _timelock_call(
    method: str,
    eta: int,
    target: str = TARGET_ADDRESS,
    signature: str = "setLimit(uint256)",
    data: bytes = (1000).to_bytes(32, "big"),
) -> dict:
    call_data = encode_with_signature(method + TIMELOCK_ARGS, [target, 0, signature, data, eta])
    return {
        "to": TIMELOCK_ADDRESS,
        "value": "0",
        "data": "0x" + call_data.hex(),
        "operation": 0,
        "dataDecoded": {
            "method": method,
            "parameters": [
                {"name": "target", "type": "address", "value": target},
                {"name": "value", "type": "uint256", "value": "0"},
                {"name": "signature", "type": "string", "value": signature},
                {"name": "data", "type": "bytes", "value": "0x" + data.hex()},
                {"name": "eta", "type": "uint256", "value": str(eta)},
            ],
        },
    }


def _multisend_call(inner: list[dict]) -> dict:
    calls = [
        ReplayableTransaction(
            to=i["to"],
            value=int(i["value"]),
            data=bytes.fromhex(i["data"][2:]),
            operation=i["operation"],
        )
        for i in inner
    ]
    call_data = encode_multisend(calls)
    return {
        "to": MULTISEND_ADDRESS,
        "value": "0",
        "data": "0x" + call_data.hex(),
        "operation": 1,
        "dataDecoded": {
            "method": "multiSend",
            "parameters": [
                {
                    "name": "transactions",
                    "type": "bytes",
                    "value": "0x" + call_data[4:].hex(),
                    "valueDecoded": inner,
                }
            ],
        },
    }


def _pending_tx(
    call: dict,
    nonce: int,
    safe_tx_hash: str | None = None,
    submission_date: datetime.datetime = datetime.datetime(2023, 10, 1, tzinfo=datetime.timezone.utc),
    is_executed=False,
) -> dict:
    if safe_tx_hash is None:
        safe_tx_hash = "0x" + f"{nonce:064x}"
    return call | {
        "safeTxHash": safe_tx_hash,
        "nonce": nonce,
        "submissionDate": submission_date.isoformat().replace("+00:00", "Z"),
        "isExecuted": is_executed,
    }


@pytest.fixture()
def timelock_call():
    """Factory for ``queueTransaction()`` / ``executeTransaction()`` payloads."""
    return _timelock_call


@pytest.fixture()
def multisend_call():
    """Factory for ``multiSend()`` batch payloads."""
    return _multisend_call


@pytest.fixture()
def pending_tx():
    """Factory for multisig transaction records."""
    return _pending_tx
