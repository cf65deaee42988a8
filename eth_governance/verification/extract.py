"""Find deterministic deployments inside governance transactions.

Deployments are done by timelocked calls to the CREATE2 factory
``deploy(bytes32 salt, bytes initcode)``. The factory call is wrapped
in the ``data`` argument of a ``queueTransaction()``,
``executeTransaction()`` or ``cancelTransaction()`` call, usually inside
a ``multiSend()`` batch.

We accept three input shapes:

- :py:class:`eth_governance.safe.decoded.DecodedCall` from the Safe Transaction Service

- Safe Transaction Builder batch export (``batch.json``)

- A flat list of ``{"target", "signature", "data"}`` dicts
"""

import logging
from dataclasses import dataclass
from typing import Iterable

import eth_abi
from eth_abi.exceptions import DecodingError
from eth_typing import HexAddress
from web3 import Web3

from eth_governance.abi import get_selector_from_signature, get_signature_arg_types, hex_to_bytes
from eth_governance.safe.decoded import CallKind, DecodedCall
from eth_governance.safe.timelock import CANCEL_METHOD, EXECUTE_METHOD, QUEUE_METHOD, TIMELOCK_PARAMETER_COUNT


logger = logging.getLogger(__name__)


#: The only entry point of the deterministic deployment factory
DEPLOY_SIGNATURE = "deploy(bytes32,bytes)"

DEPLOY_SELECTOR = get_selector_from_signature(DEPLOY_SIGNATURE)

DEPLOY_ARG_TYPES = get_signature_arg_types(DEPLOY_SIGNATURE)

#: Timelock entry points sharing (target, value, signature, data, eta) arguments
TIMELOCK_METHODS = (QUEUE_METHOD, EXECUTE_METHOD, CANCEL_METHOD)


@dataclass(slots=True, frozen=True)
class DeploymentCandidate:
    """One CREATE2 factory deployment."""

    #: 32 bytes
    salt: bytes

    #: Creation bytecode with the constructor arguments appended
    initcode: bytes

    def __repr__(self):
        return f"<DeploymentCandidate salt {self.salt.hex()} initcode {len(self.initcode)} bytes>"


@dataclass(slots=True, frozen=True)
class TimelockAction:
    """Call a timelock performs on its target."""

    target: HexAddress

    #: Human readable function signature, may be empty
    signature: str

    #: ABI encoded arguments, without the selector when ``signature`` is given
    data: bytes

    def get_call_data(self) -> bytes:
        """Reconstruct the full call data the timelock sends.

        Compound timelock prefixes ``data`` with the selector of ``signature``,
        unless the signature is empty.
        """
        if not self.signature:
            return self.data
        if "(" not in self.signature or not self.signature.endswith(")"):
            raise ValueError(f"Not a function signature: {self.signature}")
        return get_selector_from_signature(self.signature) + self.data


def decode_deploy_call(target: str, call_data: bytes, factory: str) -> DeploymentCandidate | None:
    """Decode a factory ``deploy()`` call.

    :return:
        ``None`` if this is not a call to the factory ``deploy()``

    :raise eth_abi.exceptions.DecodingError:
        The call has the deploy selector, but garbage arguments
    """
    if target.lower() != factory.lower():
        return None

    if call_data[0:4] != DEPLOY_SELECTOR:
        return None

    salt, initcode = eth_abi.decode(DEPLOY_ARG_TYPES, call_data[4:])
    return DeploymentCandidate(salt=bytes(salt), initcode=bytes(initcode))


def _get_timelock_action(call: DecodedCall) -> TimelockAction | None:
    if call.kind != CallKind.leaf or call.method not in TIMELOCK_METHODS:
        return None

    if len(call.parameters) != TIMELOCK_PARAMETER_COUNT:
        logger.warning("Skipping %s() to %s with %d parameters", call.method, call.to, len(call.parameters))
        return None

    return TimelockAction(
        target=Web3.to_checksum_address(call.get_parameter_value(0)),
        signature=call.get_parameter_value(2) or "",
        data=hex_to_bytes(call.get_parameter_value(3)),
    )


def _extract_from_actions(actions: Iterable[TimelockAction], factory: str) -> list[DeploymentCandidate]:
    candidates = []
    for idx, action in enumerate(actions):
        try:
            candidate = decode_deploy_call(action.target, action.get_call_data(), factory)
        except (DecodingError, ValueError) as e:
            logger.warning("Skipping call #%d to %s, could not decode deploy(): %s", idx, action.target, e)
            continue

        if candidate is not None:
            candidates.append(candidate)
    return candidates


def extract_deployments(call: DecodedCall, factory: HexAddress | str) -> list[DeploymentCandidate]:
    """Get CREATE2 deployments out of a Safe transaction.

    - Batches are unwrapped one level

    - Timelock calls are unwrapped to the call the timelock makes

    - A direct call to the factory is accepted as is

    Never raises for calls that do not look like deployments.

    :param factory:
        CREATE2 factory address

    :return:
        Deployments in the transaction order
    """
    match call.kind:
        case CallKind.batch:
            calls = list(call.nested_calls)
        case CallKind.leaf | CallKind.opaque:
            calls = [call]
        case _:
            raise NotImplementedError(f"Unknown call kind: {call.kind}")

    actions = []
    for idx, inner in enumerate(calls):
        try:
            action = _get_timelock_action(inner)
        except ValueError as e:
            logger.warning("Skipping call #%d to %s, bad timelock arguments: %s", idx, inner.to, e)
            continue

        if action is not None:
            actions.append(action)
        elif inner.to.lower() == factory.lower():
            actions.append(TimelockAction(target=inner.to, signature="", data=inner.data))

    candidates = _extract_from_actions(actions, factory)
    logger.info("Found %d deployments in %d calls", len(candidates), len(calls))
    return candidates


def extract_deployments_from_batch_file(batch: dict, factory: HexAddress | str) -> list[DeploymentCandidate]:
    """Get CREATE2 deployments out of a Safe Transaction Builder export.

    Each transaction in the batch is a timelock call whose arguments
    are in ``contractInputsValues``:

    .. code-block:: json

        {
            "to": "0xa133C9A92Fb8dDB962Af1cbae58b2723A0bdF23b",
            "value": "0",
            "contractMethod": {"name": "queueTransaction", ...},
            "contractInputsValues": {
                "target": "0x4e59b44847b379578588920cA78FbF26c0B4956C",
                "value": "0",
                "signature": "deploy(bytes32,bytes)",
                "data": "0x...",
                "eta": "1700000000"
            }
        }
    """
    actions = []
    for idx, tx in enumerate(batch.get("transactions", [])):
        values = tx.get("contractInputsValues") or {}
        if "target" not in values:
            logger.warning("Skipping batch transaction #%d without timelock inputs", idx)
            continue
        try:
            actions.append(
                TimelockAction(
                    target=Web3.to_checksum_address(values["target"]),
                    signature=values.get("signature") or "",
                    data=hex_to_bytes(values.get("data")),
                )
            )
        except ValueError as e:
            logger.warning("Skipping batch transaction #%d: %s", idx, e)
    return _extract_from_actions(actions, factory)


def extract_deployments_from_actions(entries: list[dict], factory: HexAddress | str) -> list[DeploymentCandidate]:
    """Get CREATE2 deployments out of a flat ``{target, signature, data}`` list.

    Entries without a valid target are skipped with a warning.
    """
    actions = []
    for idx, e in enumerate(entries):
        try:
            actions.append(
                TimelockAction(
                    target=Web3.to_checksum_address(e["target"]),
                    signature=e.get("signature") or "",
                    data=hex_to_bytes(e.get("data")),
                )
            )
        except (KeyError, ValueError) as ex:
            logger.warning("Skipping action #%d: %s", idx, ex)
    return _extract_from_actions(actions, factory)
