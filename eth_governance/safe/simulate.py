"""Perform Safe transactions on a forked chain when you do not have the owner keys.

- We use Anvil (or Tenderly) to take over the Safe contract as an EOA address

- The Safe adds our own delegate account as an owner and lowers the threshold to 1

- After that, every pending transaction is executed with ``execTransaction()``
  sent by the delegate, with a pre-validated signature
"""

import logging
import time

from eth_typing import HexAddress
from hexbytes import HexBytes
from safe_eth.safe.safe import SafeV141
from web3 import Web3

from eth_governance.abi import ZERO_ADDRESS
from eth_governance.config import DEFAULT_GAS_LIMIT
from eth_governance.provider.anvil import impersonate_account, increase_time, mine, stop_impersonating_account
from eth_governance.safe.deployment import encode_pre_validated_signature, fetch_safe_deployment
from eth_governance.safe.replay import BlockInfo, ChainBackend, ChainNotReady, TransactionFailed
from eth_governance.safe.timelock import ReplayableTransaction


logger = logging.getLogger(__name__)


class AnvilSafeBackend(ChainBackend):
    """Drive a Safe on Anvil or Tenderly fork.

    Example:

    .. code-block:: python

        web3 = Web3(HTTPProvider("http://127.0.0.1:8545"))
        backend = AnvilSafeBackend(web3, safe_address)
        backend.setup_impersonation()
        tx_hash = backend.execute(ReplayableTransaction(to=..., value=0, data=...))
        assert backend.wait_for_receipt(tx_hash)["status"] == 1
    """

    def __init__(
        self,
        web3: Web3,
        safe_address: HexAddress | str,
        delegate: HexAddress | str | None = None,
        tenderly=False,
        gas_limit=DEFAULT_GAS_LIMIT,
        receipt_timeout=120,
        block_retries=5,
        block_retry_sleep=3.0,
    ):
        """
        :param delegate:
            Account we add as a Safe owner.

            Defaults to the first unlocked node account.

        :param tenderly:
            Tenderly forks accept transactions from any account
            and do not support ``evm_mine`` with a timestamp.

        :param block_retries:
            How many times we try to read the chain head before giving up.
        """
        self.web3 = web3
        self.safe_address = Web3.to_checksum_address(safe_address)
        self.delegate = Web3.to_checksum_address(delegate) if delegate else None
        self.tenderly = tenderly
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.block_retries = block_retries
        self.block_retry_sleep = block_retry_sleep
        self.safe: SafeV141 | None = None

    def __repr__(self):
        return f"<AnvilSafeBackend safe {self.safe_address} delegate {self.delegate} tenderly {self.tenderly}>"

    def _check_success(self, tx_hash: HexBytes, label: str):
        receipt = self.wait_for_receipt(tx_hash)
        if receipt["status"] != 1:
            raise TransactionFailed(f"{label} failed in tx {tx_hash.hex()}")

    def setup_impersonation(self):
        """Add the delegate as a Safe owner with threshold 1.

        - Impersonate the Safe

        - Safe calls ``addOwnerWithThreshold(delegate, 1)`` on itself

        - Stop impersonating the Safe
        """
        web3 = self.web3

        if self.delegate is None:
            self.delegate = web3.eth.accounts[0]

        self.safe = fetch_safe_deployment(web3, self.safe_address)

        if not self.tenderly:
            impersonate_account(web3, self.safe_address)
            if self.delegate not in web3.eth.accounts:
                impersonate_account(web3, self.delegate)

        func = self.safe.contract.functions.addOwnerWithThreshold(self.delegate, 1)
        tx_hash = func.transact({"from": self.safe_address, "gas": self.gas_limit})
        self._check_success(tx_hash, "Adding owner to Safe")

        owners = self.safe.retrieve_owners()
        assert self.delegate in owners, f"Owner {self.delegate} was not added to Safe {self.safe_address}: {owners}"
        logger.info("Added owner %s to Safe %s and set threshold to 1", self.delegate, self.safe_address)

        if not self.tenderly:
            stop_impersonating_account(web3, self.safe_address)

    def get_latest_block(self) -> BlockInfo:
        """Read the latest block, retry with a constant backoff.

        A freshly forked node may not give us the block yet.
        """
        last_exception = None
        for attempt in range(self.block_retries, 0, -1):
            try:
                block = self.web3.eth.get_block("latest")
                if block is not None:
                    return BlockInfo(number=block["number"], timestamp=block["timestamp"])
            except Exception as e:
                last_exception = e
            logger.warning("Could not read the latest block, attempts left %d", attempt - 1)
            if attempt > 1:
                time.sleep(self.block_retry_sleep)

        raise ChainNotReady(f"Could not read the latest block after {self.block_retries} attempts") from last_exception

    def mine_at(self, timestamp: int):
        if self.tenderly:
            current = self.get_latest_block()
            increase_time(self.web3, timestamp - current.timestamp)
        else:
            mine(self.web3, timestamp)

    def execute(self, tx: ReplayableTransaction) -> HexBytes:
        """Execute a transaction through Safe.execTransaction().

        Zero safeTxGas and gas price means the Safe reverts
        if the inner call reverts.
        """
        assert self.safe is not None, "setup_impersonation() not called"

        func = self.safe.contract.functions.execTransaction(
            tx.to,
            tx.value,
            tx.data,
            tx.operation,
            0,  # safeTxGas
            0,  # baseGas
            0,  # gasPrice
            ZERO_ADDRESS,  # gasToken
            ZERO_ADDRESS,  # refundReceiver
            encode_pre_validated_signature(self.delegate),
        )
        return func.transact({"from": self.delegate, "gas": self.gas_limit})

    def wait_for_receipt(self, tx_hash: HexBytes) -> dict:
        return self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
