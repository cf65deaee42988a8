"""Replay pending Safe transactions on an Anvil or Tenderly fork.

- Reads all pending multisig transactions from Safe Transaction Service

- Takes over the Safe on the fork by adding our own owner with threshold 1

- Executes the transactions in nonce order, moving the fork clock
  past timelock etas as needed

- If only queueTransaction() calls are pending, also executes
  the matching executeTransaction() calls after the eta

To run against a local Anvil mainnet fork:

.. code-block:: shell

    anvil --fork-url $JSON_RPC_ETHEREUM &
    export SAFE_API=https://safe-transaction-mainnet.safe.global
    export MULTISIG=0xA7D5DDc1b8557914F158076b228AA91eF613f1D5
    export JSON_RPC_URL=http://127.0.0.1:8545
    python scripts/governance/replay-pending-safe-transactions.py

For Tenderly forks set ``TENDERLY=true``.
"""

import logging
import sys

from web3 import HTTPProvider, Web3

from eth_governance.config import ConfigurationError, ReplayConfig
from eth_governance.safe.api import SafeTransactionService, get_transactions_to_execute
from eth_governance.safe.replay import ReplayEngine
from eth_governance.safe.simulate import AnvilSafeBackend
from eth_governance.utils import setup_console_logging


logger = logging.getLogger(__name__)


def main():
    setup_console_logging(default_log_level="info")

    try:
        config = ReplayConfig.from_env()
    except ConfigurationError as e:
        logger.error("%s", e)
        sys.exit(1)

    service = SafeTransactionService(config.safe_api)
    pending = get_transactions_to_execute(service.fetch_pending_transactions(config.safe_address))
    if not pending:
        print(f"No pending transactions for Safe {config.safe_address}")
        return

    web3 = Web3(HTTPProvider(config.json_rpc_url, request_kwargs={"timeout": 120}))
    backend = AnvilSafeBackend(
        web3,
        config.safe_address,
        tenderly=config.tenderly,
        gas_limit=config.gas_limit,
    )

    engine = ReplayEngine(backend, run_id=config.run_id)
    executed = engine.run(pending)

    print(f"Executed {len(executed)} Safe transactions on {config.json_rpc_url}:")
    for safe_tx_hash in executed:
        print(f"  {safe_tx_hash}")


if __name__ == "__main__":
    main()
