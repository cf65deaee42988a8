"""Timelock queue/execute transaction classification.

Governance actions go through a Compound-style timelock:

- ``queueTransaction(target, value, signature, data, eta)`` schedules an action

- ``executeTransaction(target, value, signature, data, eta)`` performs it once
  the block timestamp is past ``eta``

Both share the same argument list, so an execute call can be derived from
a queue call by swapping the 4-byte selector. We call such a locally
derived execute a *shadow execute*.
"""

import logging
from dataclasses import dataclass

import eth_abi
from eth_abi.exceptions import DecodingError
from eth_typing import HexAddress
from safe_eth.safe.multi_send import MultiSendOperation, MultiSendTx

from eth_governance.abi import encode_with_signature, get_selector_from_signature, get_signature_arg_types
from eth_governance.safe.decoded import CallKind, DecodedCall, DecodedCallError, PendingTransaction


logger = logging.getLogger(__name__)


QUEUE_METHOD = "queueTransaction"

EXECUTE_METHOD = "executeTransaction"

CANCEL_METHOD = "cancelTransaction"

#: All timelock entry points share these arguments
TIMELOCK_ARGS = "(address,uint256,string,bytes,uint256)"

QUEUE_SIGNATURE = QUEUE_METHOD + TIMELOCK_ARGS

EXECUTE_SIGNATURE = EXECUTE_METHOD + TIMELOCK_ARGS

#: 0x3a66f901
QUEUE_SELECTOR = get_selector_from_signature(QUEUE_SIGNATURE)

#: 0x0825f38f
EXECUTE_SELECTOR = get_selector_from_signature(EXECUTE_SIGNATURE)

TIMELOCK_ARG_TYPES = get_signature_arg_types(TIMELOCK_ARGS)

#: target, value, signature, data, eta
TIMELOCK_PARAMETER_COUNT = 5

#: Position of eta in the timelock arguments
ETA_INDEX = 4


class ReplayValidationError(Exception):
    """Pending transaction cannot be replayed as is."""


@dataclass(slots=True, frozen=True)
class TxClassification:
    """What a pending transaction does with the timelock."""

    #: Transaction is a multiSend batch
    multisend: bool

    #: Any call queues a timelock action
    is_queue: bool

    #: Any call executes a timelock action
    is_execute: bool

    #: Max eta over all timelock calls, 0 if there are none
    eta: int

    def describe(self) -> str:
        """Human readable label for log output."""
        parts = ["multisend" if self.multisend else "single"]
        if self.is_queue:
            parts.append("queue")
        if self.is_execute:
            parts.append("execute")
        if not (self.is_queue or self.is_execute):
            parts.append("plain")
        return " ".join(parts)


@dataclass(slots=True, frozen=True)
class ReplayableTransaction:
    """A Safe transaction payload we can execute on the fork."""

    to: HexAddress

    value: int

    data: bytes

    #: Safe operation: 0 = CALL, 1 = DELEGATECALL
    operation: int = 0

    @classmethod
    def from_call(cls, call: DecodedCall) -> "ReplayableTransaction":
        return cls(to=call.to, value=call.value, data=call.data, operation=call.operation)


@dataclass(slots=True, frozen=True)
class ShadowExecute:
    """Locally derived execute for a queued timelock transaction."""

    #: Payload to execute through the Safe
    transaction: ReplayableTransaction

    #: Timelock eta of the queued actions
    eta: int

    #: Queue transaction this was derived from
    source_safe_tx_hash: str


def _read_timelock_eta(call: DecodedCall) -> int:
    if len(call.parameters) != TIMELOCK_PARAMETER_COUNT:
        raise DecodedCallError(f"Expected {call.method} with {TIMELOCK_PARAMETER_COUNT} parameters, got {len(call.parameters)}")
    return int(call.get_parameter_value(ETA_INDEX))


def classify_transaction(call: DecodedCall, timestamp: int) -> TxClassification:
    """Tag a Safe transaction as plain, queue or execute.

    - For batches, queue/execute is set if any inner call matches
      and eta is the maximum over matching inner calls

    - A queue transaction must have eta in the future

    :param timestamp:
        Latest block timestamp of the fork

    :raise DecodedCallError:
        Timelock call with wrong argument count

    :raise ReplayValidationError:
        Queue eta is not after ``timestamp``
    """

    match call.kind:
        case CallKind.batch:
            eta = 0
            is_queue = is_execute = False
            for idx, inner in enumerate(call.nested_calls):
                if inner.kind == CallKind.opaque:
                    logger.warning("Inner call #%d to %s has no decoded data", idx, inner.to)
                    continue

                if inner.method in (QUEUE_METHOD, EXECUTE_METHOD):
                    eta = max(eta, _read_timelock_eta(inner))
                    is_queue = is_queue or inner.method == QUEUE_METHOD
                    is_execute = is_execute or inner.method == EXECUTE_METHOD

            if eta and is_queue and eta <= timestamp:
                raise ReplayValidationError(f"ETA is outdated: {eta} <= {timestamp}")

            return TxClassification(multisend=True, is_queue=is_queue, is_execute=is_execute, eta=eta)

        case CallKind.leaf if call.method in (QUEUE_METHOD, EXECUTE_METHOD):
            if not any(p.name == "eta" for p in call.parameters):
                raise ReplayValidationError(f"eta parameter not found in {call.method}")

            eta = _read_timelock_eta(call)
            is_queue = call.method == QUEUE_METHOD
            if is_queue and eta <= timestamp:
                raise ReplayValidationError(f"ETA is outdated: {eta} <= {timestamp}")

            return TxClassification(multisend=False, is_queue=is_queue, is_execute=not is_queue, eta=eta)

        case CallKind.leaf:
            return TxClassification(multisend=False, is_queue=False, is_execute=False, eta=0)

        case CallKind.opaque:
            logger.warning("Transaction to %s has no decoded data, replaying as a plain transaction", call.to)
            return TxClassification(multisend=False, is_queue=False, is_execute=False, eta=0)

        case _:
            raise NotImplementedError(f"Unknown call kind: {call.kind}")


def substitute_execute_selector(data: bytes) -> bytes:
    """Turn queueTransaction() call data to executeTransaction() call data.

    - Anything not starting with the queue selector is returned as is,
      so applying this twice is the same as applying once

    - Arguments are decoded and encoded again under the execute signature

    :raise DecodedCallError:
        Queue arguments are not in canonical ABI encoding.
        Swapping the selector would then change more than the called function.
    """
    data = bytes(data)
    if data[0:4] != QUEUE_SELECTOR:
        return data

    try:
        args = eth_abi.decode(TIMELOCK_ARG_TYPES, data[4:])
    except DecodingError as e:
        raise DecodedCallError(f"Cannot decode queueTransaction() arguments: {data.hex()}") from e

    encoded = encode_with_signature(EXECUTE_SIGNATURE, list(args))
    if encoded[4:] != data[4:]:
        raise DecodedCallError(f"queueTransaction() arguments are not canonically encoded, refusing to derive execute: {data.hex()}")
    return encoded


def encode_multisend(calls: list[ReplayableTransaction]) -> bytes:
    """Encode a list of calls as ``multiSend(bytes)`` call data."""
    assert len(calls) > 0, "Cannot encode an empty multiSend"
    packed = b"".join(
        MultiSendTx(
            MultiSendOperation(c.operation),
            c.to,
            c.value,
            c.data,
        ).encoded_data
        for c in calls
    )
    return encode_with_signature("multiSend(bytes)", [packed])


def derive_shadow_execute(tx: PendingTransaction, classification: TxClassification) -> ShadowExecute:
    """Build the execute counterpart of a queue transaction.

    - For a single call, swap the selector of the call itself

    - For a batch, swap the selector in every queueTransaction() inner call,
      keep other inner calls as is, and encode a new multiSend with the same
      target and operation as the original batch

    :param classification:
        Result of :py:func:`classify_transaction` for ``tx``
    """
    assert classification.is_queue, f"Not a queue transaction: {tx.safe_tx_hash}"
    call = tx.call

    if classification.multisend:
        inner = [
            ReplayableTransaction(
                to=c.to,
                value=c.value,
                data=substitute_execute_selector(c.data),
                operation=c.operation,
            )
            for c in call.nested_calls
        ]
        transaction = ReplayableTransaction(
            to=call.to,
            value=call.value,
            data=encode_multisend(inner),
            operation=call.operation,
        )
    else:
        transaction = ReplayableTransaction(
            to=call.to,
            value=call.value,
            data=substitute_execute_selector(call.data),
            operation=call.operation,
        )

    logger.info(
        "Created timelock execute for %s safe tx %s, eta %d",
        classification.describe(),
        tx.safe_tx_hash,
        classification.eta,
    )

    return ShadowExecute(transaction=transaction, eta=classification.eta, source_safe_tx_hash=tx.safe_tx_hash)
