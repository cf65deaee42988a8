"""Verification entry points.

``run_verification()`` accepts the same arguments as the command line:

- No arguments: verify all pending transactions of the Safe

- One or more Safe transaction hashes: verify these transactions

- ``batch.json manifest.json``: verify a Safe Transaction Builder export
  against a manifest file, without talking to the Safe Transaction Service

For Safe transactions the manifest is looked up from the cloned
deploy repositories by the Safe transaction hash.
"""

import json
import logging
from pathlib import Path

from joblib import Parallel, delayed
from tabulate import tabulate

from eth_governance.config import VerificationConfig
from eth_governance.foundry.forge import BuildCollaborator
from eth_governance.safe.api import SafeTransactionService, get_transactions_to_execute
from eth_governance.safe.decoded import PendingTransaction
from eth_governance.verification.extract import extract_deployments, extract_deployments_from_batch_file
from eth_governance.verification.manifest import RepoDescriptor, find_manifest, load_manifest
from eth_governance.verification.verifier import DeploymentVerifier, VerificationResult, clear_checkouts, clear_sandbox


logger = logging.getLogger(__name__)


def is_file_mode(args: list[str]) -> bool:
    """Are we given a batch file and a manifest file."""
    return len(args) == 2 and all(a.endswith(".json") for a in args)


def clone_deploy_repos(config: VerificationConfig, collaborator: BuildCollaborator):
    """Check out the repositories holding deployment manifests at their default branch."""
    repos = [RepoDescriptor(repo=f"{config.allowed_org}/{name}", commit=None, forge_flags="") for name in config.deploy_repos]
    Parallel(n_jobs=config.max_workers, backend="threading")(delayed(collaborator.fetch_source)(r, config.sandbox) for r in repos)


def verify_safe_transaction(
    tx: PendingTransaction,
    config: VerificationConfig,
    collaborator: BuildCollaborator,
) -> list[VerificationResult]:
    """Verify deployments in one Safe transaction.

    - Removes repository checkouts left by the previous transaction,
      logs of earlier transactions stay

    - Saves the transaction as ``<sandbox>/<safeTxHash>.tx.json``

    - Finds the manifest in the deploy repositories
    """
    logger.info("Verifying Safe tx %s with nonce %d", tx.safe_tx_hash, tx.nonce)

    config.sandbox.mkdir(parents=True, exist_ok=True)
    clear_checkouts(config.sandbox)
    (config.sandbox / f"{tx.safe_tx_hash}.tx.json").write_text(json.dumps(tx.raw, indent=2), encoding="utf-8")

    clone_deploy_repos(config, collaborator)
    entries = find_manifest(tx.safe_tx_hash, config.sandbox, config.deploy_repos)
    candidates = extract_deployments(tx.call, config.create2_factory)

    verifier = DeploymentVerifier(config, collaborator)
    return verifier.verify(candidates, entries)


def verify_batch_file(
    batch_file: Path,
    manifest_file: Path,
    config: VerificationConfig,
    collaborator: BuildCollaborator,
) -> list[VerificationResult]:
    """Verify a Safe Transaction Builder export against a manifest file."""
    logger.info("Verifying batch %s against %s", batch_file, manifest_file)

    batch = json.loads(batch_file.read_text(encoding="utf-8"))
    entries = load_manifest(manifest_file)

    candidates = extract_deployments_from_batch_file(batch, config.create2_factory)

    verifier = DeploymentVerifier(config, collaborator)
    return verifier.verify(candidates, entries)


def run_verification(
    config: VerificationConfig,
    args: list[str],
    collaborator: BuildCollaborator,
    service: SafeTransactionService | None = None,
) -> dict[str, list[VerificationResult]]:
    """Verify deployments.

    Mismatches are reported in the results. Only errors that make
    the verification impossible are raised.

    :param args:
        Command line arguments, see the module documentation

    :param service:
        Needed unless verifying files

    :return:
        Safe tx hash or batch file name -> results
    """
    # One sandbox per run, diagnostic logs of all transactions end up here
    clear_sandbox(config.sandbox)

    if is_file_mode(args):
        batch_file, manifest_file = Path(args[0]), Path(args[1])
        return {batch_file.name: verify_batch_file(batch_file, manifest_file, config, collaborator)}

    assert service is not None, "Safe Transaction Service needed to verify Safe transactions"

    if args:
        transactions = [service.fetch_transaction(h) for h in args]
    else:
        assert config.safe_address, "Safe address needed to verify pending transactions"
        transactions = get_transactions_to_execute(service.fetch_pending_transactions(config.safe_address))

    results = {}
    for tx in transactions:
        results[tx.safe_tx_hash] = verify_safe_transaction(tx, config, collaborator)
    return results


def format_results_table(results: dict[str, list[VerificationResult]]) -> str:
    """Human readable verdict table of :py:func:`run_verification` output."""
    rows = []
    for label, contracts in results.items():
        if not contracts:
            rows.append([label, "-", "-", "-", "no CREATE2 deployments found"])
        for r in contracts:
            rows.append([label, r.address, r.contract_name, r.verdict.value, r.reason])

    headers = ["Transaction", "Address", "Contract", "Verdict", "Reason"]
    return tabulate(rows, headers=headers, tablefmt="grid")
