"""Verify CREATE2 deployments against rebuilt sources.

For every deployment found in a governance transaction we

- compute the CREATE2 address

- find the manifest entry recorded for that address

- rebuild the entry's repository at the pinned commit

- compare the deployed init code against the compiled bytecode
  plus the manifest constructor arguments

- check the constructor arguments decode and encode back to the same bytes

A bytecode mismatch is a verdict, not an error. Missing manifest entries
or build artifacts mean the transaction and the manifest do not belong
together, and abort the run.
"""

import enum
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from eth_abi.exceptions import DecodingError
from eth_typing import HexAddress
from joblib import Parallel, delayed

from eth_governance.abi import decode_reencode, get_constructor_arg_types, hex_to_bytes
from eth_governance.config import VerificationConfig
from eth_governance.foundry.forge import BuildCollaborator, get_artifact_key, index_forge_artifacts
from eth_governance.verification.bytecode import BytecodeComparison, ComparisonBranch, compare_initcode
from eth_governance.verification.create2 import resolve_create2_address
from eth_governance.verification.extract import DeploymentCandidate
from eth_governance.verification.manifest import ManifestEntry, RepoDescriptor, validate_manifest


logger = logging.getLogger(__name__)


class VerificationError(Exception):
    """Deployment transaction and manifest do not belong together."""


class VerificationVerdict(enum.Enum):
    """Outcome for one deployed contract."""

    #: Byte identical and the compiler metadata hash pins the sources
    exact = "exact"

    #: Code matches, but trailing metadata could not be compared
    partial = "partial"

    mismatch = "mismatch"


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Verdict for one CREATE2 deployment."""

    address: HexAddress

    contract_name: str

    verdict: VerificationVerdict

    #: Which bytecode comparison rule decided the verdict
    branch: ComparisonBranch

    #: Human readable explanation for mismatches
    reason: str = ""

    #: Diagnostic log with both bytecode blobs
    log_path: Path | None = None

    @property
    def matched(self) -> bool:
        return self.verdict != VerificationVerdict.mismatch


def clear_sandbox(sandbox: Path):
    """Empty the scratch workspace.

    The workspace belongs to a single verification run.
    """
    if sandbox.exists():
        logger.info("Clearing sandbox %s", sandbox)
        shutil.rmtree(sandbox)
    sandbox.mkdir(parents=True)


def clear_checkouts(sandbox: Path):
    """Remove repository checkouts, keep logs and saved transactions.

    Each Safe transaction pins its own commits, so sources are cloned again.
    """
    for path in sandbox.iterdir():
        if path.is_dir():
            shutil.rmtree(path)


def write_diagnostic_log(
    path: Path,
    initcode: bytes,
    expected: bytes,
    encoded_constructor_args: bytes,
    comparison: BytecodeComparison,
):
    """Write both blobs for offline diffing."""
    match_len = comparison.common_prefix_length
    log = f"""MATCH === {initcode == expected}
BRANCH: {comparison.branch.value}

CREATE2 LENGTH: {len(initcode)}
FORGE BYTECODE + CONSTRUCTOR LENGTH: {len(expected)}
CONSTRUCTOR ARGS LENGTH: {len(encoded_constructor_args)}
MATCH LEN: {match_len}

----------- CREATE2 BYTECODE TAIL -----------------
{initcode[match_len:].hex()}

----------- FORGE BYTECODE TAIL -----------------
{expected[match_len:].hex()}

----------- CREATE2 TRANSACTION BYTECODE -----------------
{initcode.hex()}

----------- FORGE BYTECODE -----------------
{expected.hex()}

----------- CONSTRUCTOR ARGS -----------------
{encoded_constructor_args.hex()}
"""
    path.write_text(log, encoding="utf-8")


class DeploymentVerifier:
    """Rebuild manifest sources and verify deployments against them.

    Example:

    .. code-block:: python

        config = VerificationConfig.from_env()
        verifier = DeploymentVerifier(config, ForgeBuildCollaborator(config.bytecode_hash))
        results = verifier.verify(candidates, load_manifest(Path("manifest.json")))
        for r in results:
            print(r.address, r.contract_name, r.verdict.value)
    """

    def __init__(self, config: VerificationConfig, build_collaborator: BuildCollaborator):
        self.config = config
        self.build_collaborator = build_collaborator

    def _fetch_and_build(self, repo: RepoDescriptor) -> Path:
        self.build_collaborator.fetch_source(repo, self.config.sandbox)
        return self.build_collaborator.build(repo, self.config.sandbox)

    def prepare(self, entries: list[ManifestEntry]) -> dict[str, Path]:
        """Build every repository the manifest refers to.

        Repositories are independent, so they are cloned and built in parallel.

        :return:
            Artifact key -> forge JSON file
        """
        repos = validate_manifest(entries, self.config.allowed_org, self.config.allowed_repos)
        logger.info("Building %d repositories: %s", len(repos), ", ".join(r.repo for r in repos))

        out_dirs = Parallel(n_jobs=self.config.max_workers, backend="threading")(delayed(self._fetch_and_build)(r) for r in repos)

        artifacts: dict[str, Path] = {}
        for repo, out_dir in zip(repos, out_dirs):
            index_forge_artifacts(repo.repo + "/", out_dir, artifacts)
        return artifacts

    def verify_candidate(
        self,
        candidate: DeploymentCandidate,
        entries: list[ManifestEntry],
        artifacts: dict[str, Path],
    ) -> VerificationResult:
        """Verify one deployment.

        :raise VerificationError:
            No manifest entry for the address, or no artifact for the entry
        """
        address = resolve_create2_address(self.config.create2_factory, candidate.salt, candidate.initcode)

        entry = next((e for e in entries if e.contract_address.lower() == address.lower()), None)
        if entry is None:
            raise VerificationError(f"Manifest entry not found for CREATE2 deployment at {address}")

        artifact_path = artifacts.get(get_artifact_key(entry.source, entry.contract_name))
        if artifact_path is None:
            raise VerificationError(f"Forge artifact not found for {entry.contract_name} in {entry.source}")

        artifact = json.loads(artifact_path.read_text(encoding="utf-8"))
        try:
            artifact_bytecode = hex_to_bytes(artifact["bytecode"]["object"])
        except ValueError as e:
            raise VerificationError(f"Cannot read bytecode of {artifact_path}, unlinked libraries?") from e

        comparison = compare_initcode(candidate.initcode, artifact_bytecode, entry.encoded_constructor_args)

        log_path = self.config.sandbox / f"{address}.log"
        write_diagnostic_log(
            log_path,
            candidate.initcode,
            artifact_bytecode + entry.encoded_constructor_args,
            entry.encoded_constructor_args,
            comparison,
        )

        def _result(verdict: VerificationVerdict, reason: str = "") -> VerificationResult:
            logger.info("%s at %s: %s %s", entry.contract_name, address, verdict.value, reason)
            return VerificationResult(
                address=address,
                contract_name=entry.contract_name,
                verdict=verdict,
                branch=comparison.branch,
                reason=reason,
                log_path=log_path,
            )

        if comparison.branch == ComparisonBranch.mismatch:
            return _result(VerificationVerdict.mismatch, f"bytecode differs after {comparison.common_prefix_length} bytes")

        if comparison.constructor_args != entry.encoded_constructor_args:
            return _result(VerificationVerdict.mismatch, "constructor arguments differ from the manifest")

        arg_types = get_constructor_arg_types(artifact.get("abi", []))
        try:
            _, reencoded = decode_reencode(arg_types, comparison.constructor_args)
        except (DecodingError, ValueError) as e:
            return _result(VerificationVerdict.mismatch, f"constructor arguments do not decode as ({','.join(arg_types)}): {e}")

        if reencoded != comparison.constructor_args:
            return _result(VerificationVerdict.mismatch, "constructor arguments are not canonically encoded")

        if comparison.branch == ComparisonBranch.identical and comparison.has_metadata_hash:
            return _result(VerificationVerdict.exact)

        return _result(VerificationVerdict.partial)

    def verify(self, candidates: list[DeploymentCandidate], entries: list[ManifestEntry]) -> list[VerificationResult]:
        """Build sources and verify all deployments.

        :return:
            One result per candidate, in the candidate order
        """
        if not candidates:
            logger.warning("No CREATE2 deployments to verify")
            return []

        self.config.sandbox.mkdir(parents=True, exist_ok=True)
        artifacts = self.prepare(entries)
        results = Parallel(n_jobs=self.config.max_workers, backend="threading")(delayed(self.verify_candidate)(c, entries, artifacts) for c in candidates)

        matched = sum(1 for r in results if r.matched)
        logger.info("Verified %d deployments, %d matched", len(results), matched)
        return results
