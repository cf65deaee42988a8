"""Verify CREATE2 deployments in Safe transactions against their sources.

Clones the source repositories recorded in the deployment manifest,
builds them with forge and compares the deployed init code against
the compiled bytecode. Needs ``git``, ``yarn`` and ``forge`` in ``PATH``.

Verify all pending transactions of a Safe:

.. code-block:: shell

    export SAFE_API=https://safe-transaction-mainnet.safe.global
    export MULTISIG=0xA7D5DDc1b8557914F158076b228AA91eF613f1D5
    python scripts/governance/verify-safe-deployment.py

Verify given Safe transactions:

.. code-block:: shell

    python scripts/governance/verify-safe-deployment.py 0x1234... 0x5678...

Verify a Safe Transaction Builder export against a manifest, no Safe API needed:

.. code-block:: shell

    python scripts/governance/verify-safe-deployment.py batch.json manifest.json

Per-contract logs are written to ``$SANDBOX/<address>.log``.
Mismatches are reported, but do not fail the script.
"""

import logging
import sys

from eth_governance.config import ConfigurationError, VerificationConfig
from eth_governance.foundry.forge import ForgeBuildCollaborator
from eth_governance.safe.api import SafeTransactionService
from eth_governance.utils import setup_console_logging
from eth_governance.verification.run import format_results_table, is_file_mode, run_verification


logger = logging.getLogger(__name__)


def main():
    setup_console_logging(default_log_level="info")

    args = sys.argv[1:]

    try:
        config = VerificationConfig.from_env(require_safe=not is_file_mode(args))
    except ConfigurationError as e:
        logger.error("%s", e)
        sys.exit(1)

    service = SafeTransactionService(config.safe_api) if config.safe_api else None
    collaborator = ForgeBuildCollaborator(bytecode_hash=config.bytecode_hash)

    results = run_verification(config, args, collaborator, service)

    print(format_results_table(results))


if __name__ == "__main__":
    main()
