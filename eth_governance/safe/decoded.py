"""Decoded Safe multisig transaction model.

The Safe Transaction Service returns transactions together with
a best-effort ``dataDecoded`` tree. The tree is loosely shaped JSON:
decoding may be missing altogether, and ``multiSend`` batches carry
their inner calls in ``valueDecoded`` of the ``transactions`` parameter.

We parse this JSON exactly once, in :py:meth:`DecodedCall.parse`, into
one of the three call kinds in :py:class:`CallKind`. The rest of the code
only looks at the kind and never pokes the raw JSON.

Example of a batch payload:

.. code-block:: json

    {
        "to": "0x40A2aCCbd92BCA938b02010E17A5b8929b49130D",
        "value": "0",
        "data": "0x8d80ff0a...",
        "operation": 1,
        "dataDecoded": {
            "method": "multiSend",
            "parameters": [
                {
                    "name": "transactions",
                    "type": "bytes",
                    "value": "0x00...",
                    "valueDecoded": [
                        {"operation": 0, "to": "0x...", "value": "0", "data": "0x3a66f901...", "dataDecoded": {...}}
                    ]
                }
            ]
        }
    }
"""

import datetime
import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from eth_typing import HexAddress
from web3 import Web3

from eth_governance.abi import hex_to_bytes


logger = logging.getLogger(__name__)


#: Safe MultiSend entry point name in decoded data
MULTISEND_METHOD = "multiSend"

#: The only parameter of multiSend()
MULTISEND_PARAMETER = "transactions"


class DecodedCallError(Exception):
    """Decoded call tree does not have the shape we expect."""


class CallKind(enum.Enum):
    """What kind of a call we are dealing with."""

    #: Custody service could not decode the call data
    opaque = "opaque"

    #: ``multiSend()`` wrapping one or more inner calls
    batch = "batch"

    #: A single decoded contract call
    leaf = "leaf"


@dataclass(slots=True, frozen=True)
class DecodedParameter:
    """One decoded function argument."""

    #: Argument name in the ABI
    name: str

    #: Solidity type
    type: str

    #: Value as presented by the custody service, usually a string
    value: Any


@dataclass(slots=True, frozen=True)
class DecodedCall:
    """A call with its optional decoding.

    Use :py:meth:`parse` to construct.
    """

    #: Call target
    to: HexAddress

    #: ETH attached, in wei
    value: int

    #: Raw call data
    data: bytes

    #: Safe operation: 0 = CALL, 1 = DELEGATECALL
    operation: int

    #: What kind of a call this is
    kind: CallKind

    #: Decoded function name, ``None`` for opaque calls
    method: str | None = None

    #: Decoded arguments, empty for opaque calls
    parameters: tuple[DecodedParameter, ...] = ()

    #: Inner calls, only for batch calls
    nested_calls: tuple["DecodedCall", ...] = ()

    def __repr__(self):
        return f"<DecodedCall {self.kind.name} {self.method or '?'}() to {self.to}>"

    def get_parameter_value(self, index: int) -> Any:
        """Get a decoded argument value by its position."""
        assert self.kind == CallKind.leaf, f"Only leaf calls have parameters: {self}"
        return self.parameters[index].value

    @classmethod
    def parse(cls, data: dict) -> "DecodedCall":
        """Parse custody service JSON to a call tree.

        - Nested calls inside a batch are parsed with the same rules,
          but a batch cannot nest another batch

        :raise DecodedCallError:
            ``multiSend`` batch is malformed: wrong parameter count,
            wrong parameter name, or no inner calls.
        """
        return cls._parse(data, allow_batch=True)

    @classmethod
    def _parse(cls, data: dict, allow_batch: bool) -> "DecodedCall":
        to = Web3.to_checksum_address(data["to"])
        value = int(data.get("value") or 0)
        raw_data = hex_to_bytes(data.get("data"))
        operation = int(data.get("operation") or 0)

        decoded = data.get("dataDecoded")
        method = decoded.get("method") if decoded else None

        # Some transactions in Safe tx service have null dataDecoded
        if not method:
            return DecodedCall(
                to=to,
                value=value,
                data=raw_data,
                operation=operation,
                kind=CallKind.opaque,
            )

        raw_parameters = decoded.get("parameters") or []

        parameters = tuple(
            DecodedParameter(
                name=p.get("name", ""),
                type=p.get("type", ""),
                value=p.get("value"),
            )
            for p in raw_parameters
        )

        if method == MULTISEND_METHOD and allow_batch:
            if len(raw_parameters) != 1:
                raise DecodedCallError(f"Expected multiSend transaction with 1 parameter, got {len(raw_parameters)}")

            if raw_parameters[0].get("name") != MULTISEND_PARAMETER:
                raise DecodedCallError(f"Expected multiSend parameter {MULTISEND_PARAMETER}, got {raw_parameters[0].get('name')}")

            inner = raw_parameters[0].get("valueDecoded") or []
            if len(inner) == 0:
                raise DecodedCallError("Expected multiSend with at least one transaction")

            nested_calls = tuple(cls._parse(i, allow_batch=False) for i in inner)
            return DecodedCall(
                to=to,
                value=value,
                data=raw_data,
                operation=operation,
                kind=CallKind.batch,
                method=method,
                parameters=parameters,
                nested_calls=nested_calls,
            )

        return DecodedCall(
            to=to,
            value=value,
            data=raw_data,
            operation=operation,
            kind=CallKind.leaf,
            method=method,
            parameters=parameters,
        )


def parse_submission_date(value: str) -> datetime.datetime:
    """Parse Safe tx service timestamp.

    Service gives ``2023-01-05T12:00:00.123456Z``.
    Timezone naive timestamps are assumed to be UTC.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


@dataclass(slots=True, frozen=True)
class PendingTransaction:
    """A Safe multisig transaction waiting for the execution."""

    #: Safe transaction hash, the identifier in the custody service
    safe_tx_hash: str

    #: Safe nonce. Resubmissions share the nonce.
    nonce: int

    #: When the transaction was proposed
    submission_date: datetime.datetime

    #: Has this already been executed onchain
    is_executed: bool

    #: The outer call
    call: DecodedCall

    #: The original custody service JSON
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def parse(cls, data: dict) -> "PendingTransaction":
        """Parse Safe tx service ``multisig-transactions`` entry."""
        return cls(
            safe_tx_hash=data["safeTxHash"],
            nonce=int(data["nonce"]),
            submission_date=parse_submission_date(data["submissionDate"]),
            is_executed=bool(data.get("isExecuted")),
            call=DecodedCall.parse(data),
            raw=data,
        )
