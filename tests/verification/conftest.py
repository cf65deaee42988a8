"""Verification test fixtures."""

import pytest
from fake_build import CODE, CONSTRUCTOR_ARGS, IPFS_AUXDATA

from eth_governance.config import VerificationConfig
from eth_governance.verification.extract import DeploymentCandidate


@pytest.fixture()
def verification_config(tmp_path) -> VerificationConfig:
    return VerificationConfig(sandbox=tmp_path / "sandbox", max_workers=2)


@pytest.fixture()
def deployment() -> DeploymentCandidate:
    """A deployment whose build carries a metadata hash."""
    return DeploymentCandidate(salt=bytes.fromhex("01" * 32), initcode=CODE + IPFS_AUXDATA + CONSTRUCTOR_ARGS)
