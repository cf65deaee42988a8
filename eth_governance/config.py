"""Run configuration.

Both pipelines take an explicit configuration object.
The environment is read only once, in the ``from_env()`` constructors,
at the process start.

Environment variables:

- ``SAFE_API``: Safe Transaction Service base URL, e.g. ``https://safe-transaction-mainnet.safe.global``
- ``MULTISIG``: Safe multisig address
- ``JSON_RPC_URL``: Anvil or Tenderly fork JSON-RPC, defaults to ``http://127.0.0.1:8545``
- ``RUN_ID``: Optional label for log output
- ``TENDERLY``: Set to ``true`` when running against a Tenderly fork
- ``SANDBOX``: Scratch workspace for cloned repositories
- ``CREATE2_FACTORY``: Override deterministic deployment factory address
- ``MAX_WORKERS``: Parallel clone and build slots
- ``BYTECODE_HASH``: Set to ``true`` to keep compiler metadata hash in builds
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from eth_typing import HexAddress


#: Default local Anvil JSON-RPC
DEFAULT_JSON_RPC_URL = "http://127.0.0.1:8545"

#: Deterministic deployment factory used by the deploy repositories.
#:
#: Exposes a single ``deploy(bytes32 salt, bytes initcode)`` entry point.
DEFAULT_CREATE2_FACTORY = "0x4e59b44847b379578588920cA78FbF26c0B4956C"

#: Organisation all verified sources must come from
DEFAULT_ALLOWED_ORG = "@gearbox-protocol"

#: Source repositories we are willing to clone and build
DEFAULT_ALLOWED_REPOS = (
    "core-v2",
    "core-v3",
    "governance",
    "integrations-v2",
    "integrations-v3",
    "oracles-v3",
    "periphery-v3",
    "router-v3",
    "router",
)

#: Repositories holding ``deploys/<safeTxHash>.json`` manifests
DEFAULT_DEPLOY_REPOS = ("deploy-v2", "deploy-v3")

#: Gas limit for every replayed transaction
DEFAULT_GAS_LIMIT = 30_000_000


class ConfigurationError(Exception):
    """Required configuration value missing."""


def _read_required(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigurationError(f"Environment variable {name} is not set")
    return value


def _read_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _read_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"Environment variable {name} must be an integer, got {value!r}") from e


@dataclass(frozen=True, slots=True)
class ReplayConfig:
    """Configuration for replaying pending Safe transactions on a fork."""

    #: Safe Transaction Service base URL
    safe_api: str

    #: The multisig we replay
    safe_address: HexAddress

    #: Fork JSON-RPC
    json_rpc_url: str = DEFAULT_JSON_RPC_URL

    #: Tenderly forks do not need impersonation and use evm_increaseTime
    tenderly: bool = False

    #: Gas limit for replayed transactions
    gas_limit: int = DEFAULT_GAS_LIMIT

    #: Label for log output
    run_id: str | None = None

    @classmethod
    def from_env(cls) -> "ReplayConfig":
        """Read configuration from environment variables.

        :raise ConfigurationError:
            ``SAFE_API`` or ``MULTISIG`` missing
        """
        return cls(
            safe_api=_read_required("SAFE_API"),
            safe_address=_read_required("MULTISIG"),
            json_rpc_url=os.environ.get("JSON_RPC_URL", DEFAULT_JSON_RPC_URL),
            tenderly=_read_flag("TENDERLY"),
            run_id=os.environ.get("RUN_ID"),
        )


@dataclass(frozen=True, slots=True)
class VerificationConfig:
    """Configuration for verifying deterministic deployments."""

    #: Scratch workspace, cleared on every run
    sandbox: Path

    #: Deterministic deployment factory
    create2_factory: HexAddress = DEFAULT_CREATE2_FACTORY

    #: Organisation prefix of allowed sources
    allowed_org: str = DEFAULT_ALLOWED_ORG

    #: Repositories we are allowed to build
    allowed_repos: tuple[str, ...] = DEFAULT_ALLOWED_REPOS

    #: Repositories searched for deployment manifests
    deploy_repos: tuple[str, ...] = field(default=DEFAULT_DEPLOY_REPOS)

    #: Keep metadata hash in compiled bytecode
    bytecode_hash: bool = False

    #: Parallel clone/build slots
    max_workers: int = 4

    #: Safe Transaction Service base URL, not needed for file based verification
    safe_api: str | None = None

    #: The multisig whose transactions we verify
    safe_address: HexAddress | None = None

    @classmethod
    def from_env(cls, require_safe=True) -> "VerificationConfig":
        """Read configuration from environment variables.

        :param require_safe:
            Fail if ``SAFE_API`` and ``MULTISIG`` are not set.

            Verifying a batch file against a manifest file does not need them.

        :raise ConfigurationError:
            Required variable missing
        """
        if require_safe:
            safe_api = _read_required("SAFE_API")
            safe_address = _read_required("MULTISIG")
        else:
            safe_api = os.environ.get("SAFE_API")
            safe_address = os.environ.get("MULTISIG")

        return cls(
            sandbox=Path(os.environ.get("SANDBOX", "sandbox")).resolve(),
            create2_factory=os.environ.get("CREATE2_FACTORY", DEFAULT_CREATE2_FACTORY),
            bytecode_hash=_read_flag("BYTECODE_HASH"),
            max_workers=_read_int("MAX_WORKERS", 4),
            safe_api=safe_api,
            safe_address=safe_address,
        )
