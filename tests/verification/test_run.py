"""End-to-end verification runs with a fake custody service and build."""

import json

import pytest
from fake_build import CODE, CONSTRUCTOR_ARGS, IPFS_AUXDATA, FakeArtifact, FakeBuildCollaborator, make_manifest_entry

from eth_governance.abi import encode_with_signature
from eth_governance.config import DEFAULT_CREATE2_FACTORY, VerificationConfig
from eth_governance.safe.decoded import PendingTransaction
from eth_governance.verification.extract import DEPLOY_SIGNATURE
from eth_governance.verification.manifest import ManifestError
from eth_governance.verification.run import format_results_table, is_file_mode, run_verification
from eth_governance.verification.verifier import VerificationVerdict


SOURCE = "contracts/core/ContractsRegister.sol"

SALT = bytes.fromhex("01" * 32)

INITCODE = CODE + IPFS_AUXDATA + CONSTRUCTOR_ARGS


class FakeService:
    """Custody service holding canned transactions."""

    def __init__(self, transactions: list[PendingTransaction]):
        self.transactions = {tx.safe_tx_hash: tx for tx in transactions}

    def fetch_transaction(self, safe_tx_hash: str) -> PendingTransaction:
        return self.transactions[safe_tx_hash]

    def fetch_pending_transactions(self, safe_address) -> list[PendingTransaction]:
        return list(self.transactions.values())


@pytest.fixture()
def manifest() -> dict:
    return {
        "ContractsRegister": make_manifest_entry(
            "ContractsRegister",
            "@gearbox-protocol/core-v3/" + SOURCE,
            INITCODE,
            SALT,
            CONSTRUCTOR_ARGS,
        )
    }


@pytest.fixture()
def deploy_call(timelock_call) -> dict:
    """Queue a CREATE2 factory deploy through the timelock."""
    data = encode_with_signature(DEPLOY_SIGNATURE, [SALT, INITCODE])[4:]
    return timelock_call("queueTransaction", eta=1_700_000_000, target=DEFAULT_CREATE2_FACTORY.lower(), signature=DEPLOY_SIGNATURE, data=data)


def _collaborator(manifests: dict[str, dict] | None = None) -> FakeBuildCollaborator:
    """Build produces the deployed contract, deploy-v3 holds the manifests."""
    files = {"deploy-v3": {f"deploys/{h}.json": json.dumps(m) for h, m in (manifests or {}).items()}}
    return FakeBuildCollaborator({"core-v3": [FakeArtifact(SOURCE, "ContractsRegister", CODE + IPFS_AUXDATA)]}, files)


def test_is_file_mode():
    assert is_file_mode(["batch.json", "manifest.json"])
    assert not is_file_mode(["0x" + "ab" * 32])
    assert not is_file_mode(["batch.json"])
    assert not is_file_mode([])


def test_verify_safe_transaction(verification_config: VerificationConfig, deploy_call, pending_tx, manifest):
    tx = PendingTransaction.parse(pending_tx(deploy_call, nonce=5))
    collaborator = _collaborator({tx.safe_tx_hash: manifest})

    results = run_verification(verification_config, [tx.safe_tx_hash], collaborator, FakeService([tx]))

    assert list(results) == [tx.safe_tx_hash]
    [r] = results[tx.safe_tx_hash]
    assert r.verdict == VerificationVerdict.exact

    # Transaction is saved for inspection
    saved = json.loads((verification_config.sandbox / f"{tx.safe_tx_hash}.tx.json").read_text())
    assert saved["safeTxHash"] == tx.safe_tx_hash

    # Deploy repositories are cloned at their default branch
    fetched = {repo.repo: repo.commit for repo in collaborator.fetched}
    assert fetched["@gearbox-protocol/deploy-v2"] is None
    assert fetched["@gearbox-protocol/deploy-v3"] is None
    assert fetched["@gearbox-protocol/core-v3"] == "5324a48a9e4144d5f3fa0f83e5d788e1d7336de0"


def test_verify_pending_transactions(verification_config: VerificationConfig, deploy_call, pending_tx, manifest):
    """Without arguments all pending transactions are verified in nonce order."""
    config = VerificationConfig(sandbox=verification_config.sandbox, max_workers=1, safe_address="0xa133c9a92fb8ddb962af1cbae58b2723a0bdf23b")
    txs = [
        PendingTransaction.parse(pending_tx(deploy_call, nonce=7)),
        PendingTransaction.parse(pending_tx(deploy_call, nonce=6)),
    ]
    collaborator = _collaborator({tx.safe_tx_hash: manifest for tx in txs})

    results = run_verification(config, [], collaborator, FakeService(txs))

    assert list(results) == [txs[1].safe_tx_hash, txs[0].safe_tx_hash]
    assert all(r.matched for rs in results.values() for r in rs)


def test_verify_safe_transaction_no_manifest(verification_config: VerificationConfig, deploy_call, pending_tx):
    tx = PendingTransaction.parse(pending_tx(deploy_call, nonce=5))
    with pytest.raises(ManifestError):
        run_verification(verification_config, [tx.safe_tx_hash], _collaborator(), FakeService([tx]))


def test_verify_batch_file(tmp_path, verification_config: VerificationConfig, manifest):
    """Transaction Builder export and a manifest file, no custody service."""
    data = encode_with_signature(DEPLOY_SIGNATURE, [SALT, INITCODE])[4:]
    batch = {
        "version": "1.0",
        "chainId": "1",
        "transactions": [
            {
                "to": "0xa133c9a92fb8ddb962af1cbae58b2723a0bdf23b",
                "value": "0",
                "contractMethod": {"name": "queueTransaction", "inputs": [], "payable": False},
                "contractInputsValues": {
                    "target": DEFAULT_CREATE2_FACTORY,
                    "value": "0",
                    "signature": DEPLOY_SIGNATURE,
                    "data": "0x" + data.hex(),
                    "eta": "1700000000",
                },
            }
        ],
    }
    batch_file = tmp_path / "batch.json"
    batch_file.write_text(json.dumps(batch))
    manifest_file = tmp_path / "manifest.json"
    manifest_file.write_text(json.dumps(manifest))

    collaborator = _collaborator()
    results = run_verification(verification_config, [str(batch_file), str(manifest_file)], collaborator)

    [r] = results["batch.json"]
    assert r.matched
    assert r.contract_name == "ContractsRegister"
    # Deploy repositories are not needed
    assert [repo.repo for repo in collaborator.fetched] == ["@gearbox-protocol/core-v3"]


def test_verify_pending_transactions_keep_logs(verification_config: VerificationConfig, timelock_call, pending_tx):
    """Logs and saved transactions of earlier transactions survive later ones."""
    config = VerificationConfig(sandbox=verification_config.sandbox, max_workers=1, safe_address="0xa133c9a92fb8ddb962af1cbae58b2723a0bdf23b")

    txs = []
    manifests = {}
    for nonce, salt in ((1, bytes.fromhex("01" * 32)), (2, bytes.fromhex("02" * 32))):
        data = encode_with_signature(DEPLOY_SIGNATURE, [salt, INITCODE])[4:]
        call = timelock_call("queueTransaction", eta=1_700_000_000, target=DEFAULT_CREATE2_FACTORY.lower(), signature=DEPLOY_SIGNATURE, data=data)
        tx = PendingTransaction.parse(pending_tx(call, nonce=nonce))
        txs.append(tx)
        manifests[tx.safe_tx_hash] = {
            "ContractsRegister": make_manifest_entry("ContractsRegister", "@gearbox-protocol/core-v3/" + SOURCE, INITCODE, salt, CONSTRUCTOR_ARGS),
        }

    results = run_verification(config, [], _collaborator(manifests), FakeService(txs))

    all_results = [r for rs in results.values() for r in rs]
    assert len(all_results) == 2
    assert all_results[0].address != all_results[1].address
    for r in all_results:
        assert r.verdict == VerificationVerdict.exact
        assert r.log_path.exists()
    for tx in txs:
        assert (config.sandbox / f"{tx.safe_tx_hash}.tx.json").exists()


def test_verify_clears_previous_run(verification_config: VerificationConfig, deploy_call, pending_tx, manifest):
    """Leftovers of an earlier run are removed."""
    stale = verification_config.sandbox / "stale.log"
    stale.parent.mkdir(parents=True)
    stale.write_text("old")

    tx = PendingTransaction.parse(pending_tx(deploy_call, nonce=5))
    run_verification(verification_config, [tx.safe_tx_hash], _collaborator({tx.safe_tx_hash: manifest}), FakeService([tx]))

    assert not stale.exists()


def test_format_results_table(verification_config: VerificationConfig, deploy_call, pending_tx, manifest):
    tx = PendingTransaction.parse(pending_tx(deploy_call, nonce=5))
    results = run_verification(verification_config, [tx.safe_tx_hash], _collaborator({tx.safe_tx_hash: manifest}), FakeService([tx]))
    results["0x" + "00" * 32] = []

    table = format_results_table(results)

    lines = table.splitlines()
    assert "Verdict" in lines[1]
    [row] = [line for line in lines if tx.safe_tx_hash in line]
    assert "ContractsRegister" in row
    assert "exact" in row
    assert "no CREATE2 deployments found" in table
