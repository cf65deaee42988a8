"""Replay pending Safe governance transactions on a forked chain.

- Pending transactions are executed strictly in nonce order

- Timelock executes get the simulated clock moved past their eta first

- Queued timelock actions get a locally derived execute
  (see :py:func:`eth_governance.safe.timelock.derive_shadow_execute`) which is
  replayed after all pending transactions, unless the pending set already
  contains a real execute

The chain is driven through a :py:class:`ChainBackend`, so the replay
logic can be tested without a node.

Example:

.. code-block:: python

    config = ReplayConfig.from_env()
    service = SafeTransactionService(config.safe_api)
    pending = get_transactions_to_execute(service.fetch_pending_transactions(config.safe_address))

    web3 = Web3(HTTPProvider(config.json_rpc_url))
    backend = AnvilSafeBackend(web3, config.safe_address, tenderly=config.tenderly)
    engine = ReplayEngine(backend)
    executed = engine.run(pending)
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from hexbytes import HexBytes

from eth_governance.safe.decoded import PendingTransaction
from eth_governance.safe.timelock import (
    ReplayValidationError,
    ReplayableTransaction,
    ShadowExecute,
    classify_transaction,
    derive_shadow_execute,
)


logger = logging.getLogger(__name__)


class TransactionFailed(Exception):
    """Replayed transaction did not succeed."""


class ChainNotReady(Exception):
    """Node did not give us the latest block."""


@dataclass(slots=True, frozen=True)
class BlockInfo:
    """Chain head we care about."""

    number: int

    #: UNIX timestamp
    timestamp: int


class ChainBackend(ABC):
    """Blockchain collaborator of the replay engine.

    - State changing calls are never retried

    - :py:meth:`get_latest_block` may retry, as the node
      can still be catching up after a fork
    """

    @abstractmethod
    def setup_impersonation(self):
        """Take over the Safe so we can execute transactions without owner keys.

        Must complete before any transaction is executed.
        """

    @abstractmethod
    def get_latest_block(self) -> BlockInfo:
        """Read the chain head.

        :raise ChainNotReady:
            Node did not respond within the retry budget
        """

    @abstractmethod
    def mine_at(self, timestamp: int):
        """Mine a block with the given timestamp.

        Only called with a timestamp after the latest block.
        """

    @abstractmethod
    def execute(self, tx: ReplayableTransaction) -> HexBytes:
        """Send a transaction through the Safe.

        :return:
            Transaction hash
        """

    @abstractmethod
    def wait_for_receipt(self, tx_hash: HexBytes) -> dict:
        """Wait until a transaction is mined.

        :return:
            Receipt with ``status`` key
        """


class ReplayEventKind(enum.Enum):
    """What happened during the replay."""

    impersonated = "impersonated"
    time_warped = "time_warped"
    time_warp_skipped = "time_warp_skipped"
    executed = "executed"
    shadow_created = "shadow_created"
    shadow_executed = "shadow_executed"
    shadow_skipped = "shadow_skipped"


@dataclass(slots=True, frozen=True)
class ReplayEvent:
    """Trace record of a replay step."""

    kind: ReplayEventKind

    safe_tx_hash: str | None = None

    nonce: int | None = None

    eta: int | None = None

    #: Human readable details
    detail: str = ""


def advance_time(backend: ChainBackend, target: int) -> BlockInfo | None:
    """Move the simulated clock forward to at least ``target``.

    - Never moves backwards: if the chain is already at or past
      ``target`` nothing is sent to the node

    :return:
        New chain head, or ``None`` if we did not need to mine

    :raise ChainNotReady:
        The node mined, but the clock did not reach ``target``
    """
    current = backend.get_latest_block()
    if target <= current.timestamp:
        logger.info("Not warping time to %d, chain is already at %d", target, current.timestamp)
        return None

    backend.mine_at(target)
    block = backend.get_latest_block()
    if block.timestamp < target:
        raise ChainNotReady(f"Time warp to {target} not honoured, latest block #{block.number} at {block.timestamp}")
    logger.info("Warped time, latest block #%d at %d", block.number, block.timestamp)
    return block


class ReplayEngine:
    """Execute pending Safe transactions on a fork, in nonce order."""

    def __init__(self, backend: ChainBackend, run_id: str | None = None):
        self.backend = backend
        self.run_id = run_id

        #: Trace of what we did, in order
        self.events: list[ReplayEvent] = []

    def _emit(self, kind: ReplayEventKind, **kwargs) -> ReplayEvent:
        event = ReplayEvent(kind, **kwargs)
        self.events.append(event)
        logger.info("Run %s: %s %s %s", self.run_id or "-", kind.value, event.safe_tx_hash or "", event.detail)
        return event

    def _warp(self, target: int, safe_tx_hash: str | None):
        block = advance_time(self.backend, target)
        if block is None:
            self._emit(ReplayEventKind.time_warp_skipped, safe_tx_hash=safe_tx_hash, eta=target)
        else:
            self._emit(ReplayEventKind.time_warped, safe_tx_hash=safe_tx_hash, eta=target, detail=f"block {block.number} at {block.timestamp}")

    def _execute(self, tx: ReplayableTransaction, label: str):
        tx_hash = self.backend.execute(tx)
        receipt = self.backend.wait_for_receipt(tx_hash)
        if receipt.get("status") != 1:
            raise TransactionFailed(f"Failed to execute {label}, tx {HexBytes(tx_hash).hex()}, receipt {receipt}")

    def run(self, pending: list[PendingTransaction]) -> list[str]:
        """Replay all transactions.

        :param pending:
            Output of :py:func:`eth_governance.safe.api.get_transactions_to_execute`

        :return:
            Safe tx hashes executed, in execution order

        :raise ReplayValidationError:
            Already executed, out of order, or stale queue transaction

        :raise TransactionFailed:
            Any transaction reverted
        """

        nonces = [tx.nonce for tx in pending]
        if any(a >= b for a, b in zip(nonces, nonces[1:])):
            raise ReplayValidationError(f"Pending transactions must be in strictly ascending nonce order, got {nonces}")

        self.backend.setup_impersonation()
        self._emit(ReplayEventKind.impersonated)

        executed = []
        has_real_execute = False
        shadows: list[ShadowExecute] = []

        for tx in pending:
            if tx.is_executed:
                raise ReplayValidationError(f"Safe tx already executed: {tx.safe_tx_hash} with nonce {tx.nonce}")

            block = self.backend.get_latest_block()
            info = classify_transaction(tx.call, block.timestamp)

            if info.is_execute:
                has_real_execute = True
                self._warp(info.eta + 1, tx.safe_tx_hash)

            logger.info("Executing %s %s with nonce %d and eta %d", info.describe(), tx.safe_tx_hash, tx.nonce, info.eta)
            self._execute(ReplayableTransaction.from_call(tx.call), f"safe tx {tx.safe_tx_hash}")
            executed.append(tx.safe_tx_hash)
            self._emit(ReplayEventKind.executed, safe_tx_hash=tx.safe_tx_hash, nonce=tx.nonce, eta=info.eta, detail=info.describe())

            if info.is_queue:
                shadows.append(derive_shadow_execute(tx, info))
                self._emit(ReplayEventKind.shadow_created, safe_tx_hash=tx.safe_tx_hash, nonce=tx.nonce, eta=info.eta)

        # If there are no real pending executeTransaction() transactions,
        # execute the ones we derived from queueTransaction()
        for shadow in shadows:
            if has_real_execute:
                self._emit(ReplayEventKind.shadow_skipped, safe_tx_hash=shadow.source_safe_tx_hash, eta=shadow.eta, detail="real execute pending")
                continue

            self._warp(shadow.eta + 1, shadow.source_safe_tx_hash)
            self._execute(shadow.transaction, f"timelock execute derived from {shadow.source_safe_tx_hash}")
            self._emit(ReplayEventKind.shadow_executed, safe_tx_hash=shadow.source_safe_tx_hash, eta=shadow.eta)

        return executed
